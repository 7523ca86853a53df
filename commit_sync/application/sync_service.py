"""Application service synchronizing an organization's commit history."""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import requests

from commit_sync.application.branch_resolver import resolve_branches
from commit_sync.application.stats_aggregator import aggregate, exclude_merge_commits, merge_stats
from commit_sync.domain.errors import NoRepositories, SyncError
from commit_sync.domain.identity import AuthorIdentity, KnownAuthor
from commit_sync.domain.repository import Branch, Commit, Repository
from commit_sync.domain.stats import UserStats
from commit_sync.infrastructure.cache_store import CacheStore
from commit_sync.infrastructure.github_client import GitHubRestClient, format_timestamp

logger = logging.getLogger(__name__)


class SyncPhase(Enum):
    IDLE = "idle"
    FETCHING_REPOS = "fetching_repos"
    FETCHING_COMMITS = "fetching_commits"
    AGGREGATING = "aggregating"
    COMPLETE = "complete"
    ERRORED = "errored"


@dataclass(frozen=True)
class DateWindow:
    """Commit date bounds requested by the caller; None means open."""

    since: Optional[datetime] = None
    until: Optional[datetime] = None


@dataclass(frozen=True)
class CacheStatus:
    """Progress event for the presentation layer."""

    category: str
    org: str
    timestamp: datetime
    item_count: int
    source: str


@dataclass
class RepositorySnapshot:
    repository: Repository
    branches: List[Branch] = field(default_factory=list)
    commits: List[Commit] = field(default_factory=list)
    error: Optional[Exception] = None


@dataclass
class SyncResult:
    org: str
    commits: List[Commit]
    user_stats: Dict[AuthorIdentity, UserStats]
    watermark: Optional[datetime] = None
    failed_repositories: List[str] = field(default_factory=list)
    employees: Dict[str, str] = field(default_factory=dict)

    def stats_by_key(self) -> Dict[str, Dict[str, Any]]:
        """User stats keyed by login, or by "~" plus the free-text name of unattributed authors."""
        return {author.key: stats.to_dict() for author, stats in self.user_stats.items()}

    def display_name(self, author: AuthorIdentity) -> str:
        """Resolved employee name for linked authors, the recorded name otherwise."""
        if isinstance(author, KnownAuthor):
            return self.employees.get(author.login, author.login)
        return author.name


def _auth_flag(token: Optional[str]) -> str:
    return "auth" if token else "noauth"


def _bound(value: Optional[datetime]) -> str:
    return format_timestamp(value) if value is not None else "none"


class SyncOrchestrator:
    """Synchronizes an organization's repositories, branches and commits into statistics."""

    BATCH_SIZE = 5  # repositories fetched concurrently
    BATCH_DELAY_SECONDS = 1.0
    LOOKBACK_DAYS = 30
    MAX_BRANCH_CONCURRENCY = 5
    EMPLOYEE_BATCH_SIZE = 10
    EMPLOYEE_BATCH_DELAY_SECONDS = 1.0

    def __init__(
        self,
        github_client: GitHubRestClient,
        cache_store: CacheStore,
        state_repository: Any,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY_SECONDS,
        lookback_days: int = LOOKBACK_DAYS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize sync orchestrator.

        Args:
            github_client: GitHub REST client
            cache_store: Look-aside cache shared by every run
            state_repository: Watermark store with get_watermark(org) and
                advance_watermark(org, watermark), e.g. SyncStateRepository
            batch_size: Repositories synchronized concurrently
            batch_delay: Pause between repository batches in seconds
            lookback_days: Default window when neither a since bound nor a watermark exists
            clock: Returns the current aware UTC datetime
            sleep: Coroutine used for inter-batch delays
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.github_client = github_client
        self.cache_store = cache_store
        self.state_repository = state_repository
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.lookback_days = lookback_days
        self.clock = clock
        self.sleep = sleep
        self.phases: Dict[str, SyncPhase] = {}
        self._listeners: List[Callable[[CacheStatus], None]] = []

    def subscribe(self, listener: Callable[[CacheStatus], None]) -> Callable[[], None]:
        """Register a progress listener; returns a function that unregisters it."""
        self._listeners.append(listener)
        return functools.partial(self._listeners.remove, listener)

    def phase(self, org: str) -> SyncPhase:
        return self.phases.get(org, SyncPhase.IDLE)

    def _set_phase(self, org: str, phase: SyncPhase) -> None:
        self.phases[org] = phase
        logger.debug(f"Sync of {org} entered {phase.value}")

    def _emit(self, category: str, org: str, item_count: int, source: str) -> None:
        status = CacheStatus(
            category=category,
            org=org,
            timestamp=self.clock(),
            item_count=item_count,
            source=source,
        )
        for listener in list(self._listeners):
            listener(status)

    async def synchronize(
        self,
        org: str,
        token: Optional[str] = None,
        window: Optional[DateWindow] = None,
        repo_filter: Optional[Sequence[str]] = None,
        resolve_names: bool = False,
    ) -> SyncResult:
        """
        Synchronize one organization and aggregate its contributor statistics.

        Args:
            org: Organization login
            token: GitHub token; defaults to the client's token
            window: Requested commit date bounds
            repo_filter: Repository names to include; empty means all
            resolve_names: Also look up display names of linked authors

        Returns:
            Commits and statistics of this run

        Raises:
            NotFound, Unauthorized, RateLimited, UpstreamServerError: When the
                repository listing itself fails
            NoRepositories: When there is nothing to synchronize
        """
        org = org.strip()
        if not org:
            raise ValueError("Organization name cannot be empty")
        if token is None:
            token = self.github_client.token
        window = window or DateWindow()

        logger.info(f"Starting sync for {org}")
        try:
            self._set_phase(org, SyncPhase.FETCHING_REPOS)
            repositories = await self._load_repositories(org, token, repo_filter)

            watermark = await asyncio.to_thread(self.state_repository.get_watermark, org)
            since, until = self._effective_window(window, watermark)
            logger.info(
                f"Fetching commits for {len(repositories)} repositories of {org} "
                f"since {_bound(since)} until {_bound(until)}"
            )

            self._set_phase(org, SyncPhase.FETCHING_COMMITS)
            self._emit("commits", org, 0, "fetching")
            snapshots = await self._fetch_in_batches(repositories, token, since, until)

            self._set_phase(org, SyncPhase.AGGREGATING)
            result, latest = self._aggregate(org, snapshots, watermark)

            if resolve_names:
                result.employees = await self._resolve_employee_names(result.user_stats, token)

            result.watermark = watermark
            if result.failed_repositories:
                # Failed repositories are refetched from the old watermark next run
                logger.warning(
                    f"Keeping the watermark of {org} at {_bound(watermark)}: "
                    f"{len(result.failed_repositories)} repositories failed"
                )
            elif latest is not None and (watermark is None or latest > watermark):
                result.watermark = await asyncio.to_thread(self.state_repository.advance_watermark, org, latest)

            self._set_phase(org, SyncPhase.COMPLETE)
            self._emit("commits", org, len(result.commits), "complete")
            logger.info(
                f"Sync for {org} completed: {len(result.commits)} commits from "
                f"{len(result.user_stats)} authors, {len(result.failed_repositories)} repositories failed"
            )
            return result
        except Exception as e:
            self._set_phase(org, SyncPhase.ERRORED)
            logger.error(f"Sync for {org} failed: {e}")
            raise

    def _effective_window(
        self, window: DateWindow, watermark: Optional[datetime]
    ) -> Tuple[datetime, Optional[datetime]]:
        since = window.since
        if watermark is not None and (since is None or watermark > since):
            since = watermark
        if since is None:
            # Truncated to the day; this bound is part of the commits cache key
            since = (self.clock() - timedelta(days=self.lookback_days)).replace(
                hour=0, minute=0, second=0, microsecond=0
            )
        return since, window.until

    async def _load_repositories(
        self, org: str, token: Optional[str], repo_filter: Optional[Sequence[str]]
    ) -> List[Repository]:
        payloads, cached = await self.cache_store.get_or_fetch(
            "repositories",
            f"{org}:{_auth_flag(token)}",
            functools.partial(self.github_client.fetch_org_repositories, org, token),
        )
        repositories = [Repository.from_api(payload) for payload in payloads]
        self._emit("repositories", org, len(repositories), "cache" if cached else "api")

        wanted = {name.strip() for name in repo_filter or [] if name.strip()}
        if wanted:
            repositories = [repo for repo in repositories if repo.name in wanted]
            missing = wanted - {repo.name for repo in repositories}
            if missing:
                logger.warning(f"Repositories not found in {org}: {', '.join(sorted(missing))}")

        if not repositories:
            raise NoRepositories(org)
        return repositories

    async def _fetch_in_batches(
        self,
        repositories: List[Repository],
        token: Optional[str],
        since: datetime,
        until: Optional[datetime],
    ) -> List[RepositorySnapshot]:
        snapshots: List[RepositorySnapshot] = []
        batch_count = (len(repositories) + self.batch_size - 1) // self.batch_size

        for index, start in enumerate(range(0, len(repositories), self.batch_size), start=1):
            batch = repositories[start:start + self.batch_size]
            logger.info(f"Processing batch {index}/{batch_count}, size: {len(batch)}")
            snapshots.extend(
                await asyncio.gather(*(self._fetch_repository(repo, token, since, until) for repo in batch))
            )
            if start + self.batch_size < len(repositories):
                await self.sleep(self.batch_delay)

        return snapshots

    async def _fetch_repository(
        self,
        repository: Repository,
        token: Optional[str],
        since: datetime,
        until: Optional[datetime],
    ) -> RepositorySnapshot:
        try:
            branches = await self._load_branches(repository, token)
            commits = await self._load_commits(repository, branches, token, since, until)
        except Exception as e:
            logger.warning(f"Error fetching data for {repository.full_name}, skipping it: {type(e).__name__}: {e}")
            return RepositorySnapshot(repository=repository, error=e)

        logger.info(f"Fetched {len(commits)} commits on {len(branches)} branches of {repository.full_name}")
        return RepositorySnapshot(repository=repository, branches=branches, commits=commits)

    async def _load_branches(self, repository: Repository, token: Optional[str]) -> List[Branch]:
        payloads, _ = await self.cache_store.get_or_fetch(
            "branches",
            f"{repository.full_name}:{_auth_flag(token)}",
            functools.partial(self.github_client.fetch_branches, repository.full_name, token),
        )
        return [Branch.from_api(payload) for payload in payloads]

    async def _load_commits(
        self,
        repository: Repository,
        branches: List[Branch],
        token: Optional[str],
        since: datetime,
        until: Optional[datetime],
    ) -> List[Commit]:
        semaphore = asyncio.Semaphore(self.MAX_BRANCH_CONCURRENCY)

        async def load_branch(branch: Branch) -> List[Dict[str, Any]]:
            async with semaphore:
                payloads, _ = await self.cache_store.get_or_fetch(
                    "commits",
                    f"{repository.full_name}/{branch.name}/{_bound(since)}/{_bound(until)}",
                    functools.partial(
                        self.github_client.fetch_commits,
                        repository.full_name,
                        branch.name,
                        branch.head_sha,
                        token,
                        since,
                        until,
                    ),
                )
                return payloads

        tasks = [asyncio.ensure_future(load_branch(branch)) for branch in branches]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        # The same sha shows up once per branch containing it
        by_sha: Dict[str, Commit] = {}
        for payloads in results:
            for payload in payloads:
                commit = Commit.from_api(payload)
                by_sha[commit.sha] = commit
        return list(by_sha.values())

    def _aggregate(
        self,
        org: str,
        snapshots: Iterable[RepositorySnapshot],
        watermark: Optional[datetime],
    ) -> Tuple[SyncResult, Optional[datetime]]:
        commits: List[Commit] = []
        user_stats: Dict[AuthorIdentity, UserStats] = {}
        failed: List[str] = []
        latest: Optional[datetime] = None

        for snapshot in snapshots:
            if snapshot.error is not None:
                failed.append(snapshot.repository.full_name)
                continue

            membership = resolve_branches(snapshot.branches, snapshot.commits)
            new_commits = [
                commit for commit in snapshot.commits
                if watermark is None or commit.authored_at > watermark
            ]
            for commit in new_commits:
                if latest is None or commit.authored_at > latest:
                    latest = commit.authored_at

            merge_stats(user_stats, aggregate(new_commits, membership, snapshot.repository.name))
            commits.extend(exclude_merge_commits(new_commits))

        commits.sort(key=lambda commit: (commit.authored_at, commit.sha), reverse=True)
        result = SyncResult(org=org, commits=commits, user_stats=user_stats, failed_repositories=failed)
        return result, latest

    async def _resolve_employee_names(
        self, user_stats: Dict[AuthorIdentity, UserStats], token: Optional[str]
    ) -> Dict[str, str]:
        logins = sorted(author.login for author in user_stats if isinstance(author, KnownAuthor))
        names: Dict[str, str] = {}

        for start in range(0, len(logins), self.EMPLOYEE_BATCH_SIZE):
            batch = logins[start:start + self.EMPLOYEE_BATCH_SIZE]
            results = await asyncio.gather(*(self._employee_name(login, token) for login in batch))
            names.update(zip(batch, results))
            if start + self.EMPLOYEE_BATCH_SIZE < len(logins):
                await self.sleep(self.EMPLOYEE_BATCH_DELAY_SECONDS)

        logger.info(f"Resolved names for {len(names)} employees")
        return names

    async def _employee_name(self, login: str, token: Optional[str]) -> str:
        try:
            profile, _ = await self.cache_store.get_or_fetch(
                "employees",
                login,
                functools.partial(self.github_client.fetch_user, login, token),
            )
        except (SyncError, requests.RequestException) as e:
            logger.warning(f"Could not resolve name of {login}: {e}")
            return login
        return profile.get("name") or login
