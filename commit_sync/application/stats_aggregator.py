"""Per-author commit statistics."""

import logging
from typing import Dict, FrozenSet, Iterable, List, Mapping

from commit_sync.domain.identity import AuthorIdentity
from commit_sync.domain.repository import Commit
from commit_sync.domain.stats import UserStats

logger = logging.getLogger(__name__)

# Messages containing any of these are merge or pull-request commits
MERGE_MARKERS = ("merge", "pull request", "pr #")


def is_merge_commit(commit: Commit) -> bool:
    message = commit.message.lower()
    return any(marker in message for marker in MERGE_MARKERS)


def exclude_merge_commits(commits: Iterable[Commit]) -> List[Commit]:
    return [commit for commit in commits if not is_merge_commit(commit)]


def aggregate(
    commits: Iterable[Commit],
    membership: Mapping[str, FrozenSet[str]],
    repository: str,
) -> Dict[AuthorIdentity, UserStats]:
    """
    Fold the commits of one repository into per-author statistics.

    Args:
        commits: Commits of the repository, in any order
        membership: Branch names per commit sha, as returned by resolve_branches
        repository: Repository name the counters are filed under

    Returns:
        Statistics keyed by author identity
    """
    stats: Dict[AuthorIdentity, UserStats] = {}
    skipped = 0

    for commit in commits:
        if is_merge_commit(commit):
            skipped += 1
            continue

        user = stats.setdefault(commit.author, UserStats())
        user.total_commits += 1

        repo_stats = user.repo(repository)
        repo_stats.commits += 1
        repo_stats.branches |= membership.get(commit.sha, frozenset())
        day = commit.date_bucket
        repo_stats.commit_dates[day] = repo_stats.commit_dates.get(day, 0) + 1

    if skipped:
        logger.debug(f"Excluded {skipped} merge/pull-request commits from {repository}")
    return stats


def merge_stats(
    into: Dict[AuthorIdentity, UserStats],
    other: Mapping[AuthorIdentity, UserStats],
) -> Dict[AuthorIdentity, UserStats]:
    """Add the counters of other into into, in place, and return it."""
    for author, user_stats in other.items():
        into.setdefault(author, UserStats()).merge(user_stats)
    return into
