"""Branch membership of commits via ancestry traversal."""

from collections import deque
from typing import Dict, FrozenSet, Iterable, Set

from commit_sync.domain.repository import Branch, Commit


def resolve_branches(branches: Iterable[Branch], commits: Iterable[Commit]) -> Dict[str, FrozenSet[str]]:
    """
    Compute which branches contain each commit.

    Walks breadth-first from every branch head through parent shas. A parent
    that is not among the fetched commits ends that path, so history outside
    the fetched window is never resolved.

    Args:
        branches: Branch heads of one repository
        commits: Commits fetched for that repository

    Returns:
        Mapping of every fetched commit sha to the names of the branches
        reaching it; unreachable commits map to an empty set
    """
    by_sha = {commit.sha: commit for commit in commits}
    membership: Dict[str, Set[str]] = {sha: set() for sha in by_sha}

    for branch in branches:
        if branch.head_sha not in by_sha:
            continue
        visited: Set[str] = set()
        queue = deque([branch.head_sha])
        while queue:
            sha = queue.popleft()
            if sha in visited:
                continue
            visited.add(sha)
            membership[sha].add(branch.name)
            for parent in by_sha[sha].parents:
                if parent in by_sha and parent not in visited:
                    queue.append(parent)

    return {sha: frozenset(names) for sha, names in membership.items()}
