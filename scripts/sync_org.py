#!/usr/bin/env python3
"""Script to synchronize an organization's commits and print contributor totals."""

import asyncio
import logging
import os
import sys

from commit_sync.application.sync_service import DateWindow, SyncOrchestrator
from commit_sync.config import SyncConfig
from commit_sync.domain.errors import SyncError, describe_failure
from commit_sync.domain.repository import parse_timestamp
from commit_sync.infrastructure.cache_store import CacheStore
from commit_sync.infrastructure.database import SyncStateRepository
from commit_sync.infrastructure.github_client import GitHubRestClient
from commit_sync.infrastructure.rate_limiter import RateLimiter

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def read_window() -> DateWindow:
    """Optional SYNC_SINCE / SYNC_UNTIL bounds, as ISO-8601 timestamps."""
    since = os.getenv("SYNC_SINCE")
    until = os.getenv("SYNC_UNTIL")
    return DateWindow(
        since=parse_timestamp(since) if since else None,
        until=parse_timestamp(until) if until else None,
    )


async def run(org: str, config: SyncConfig, state_repository: SyncStateRepository, cache: CacheStore) -> int:
    client = GitHubRestClient(
        token=config.github_token,
        base_url=config.github_api_url,
        rate_limiter=RateLimiter(max_wait=config.max_rate_limit_wait_seconds),
    )
    orchestrator = SyncOrchestrator(
        client,
        cache,
        state_repository,
        batch_size=config.batch_size,
        batch_delay=config.batch_delay_seconds,
        lookback_days=config.lookback_days,
    )
    orchestrator.subscribe(
        lambda status: logger.info(
            f"{status.category} data for {status.org}: {status.item_count} items ({status.source})"
        )
    )

    repo_filter = [name for name in os.getenv("SYNC_REPOS", "").split(",") if name.strip()]
    autosave = asyncio.create_task(cache.autosave(config.cache_autosave_seconds))
    try:
        result = await orchestrator.synchronize(
            org,
            window=read_window(),
            repo_filter=repo_filter,
            resolve_names=os.getenv("RESOLVE_NAMES", "1") != "0",
        )
    except SyncError as e:
        logger.error(describe_failure(e, org))
        return 1
    finally:
        autosave.cancel()

    if not result.commits:
        logger.info(f"No new commits for {org}")
    for author, stats in sorted(result.user_stats.items(), key=lambda item: -item[1].total_commits):
        display = result.display_name(author)
        repos = ", ".join(f"{name}={repo.commits}" for name, repo in sorted(stats.repositories.items()))
        print(f"{display}\t{stats.total_commits}\t{repos}")
    if result.failed_repositories:
        logger.warning(f"Repositories without data: {', '.join(result.failed_repositories)}")
    return 0


def main():
    """Synchronize the organization named by SYNC_ORG."""
    try:
        org = os.getenv("SYNC_ORG", "").strip()
        if not org:
            logger.error("SYNC_ORG is not set")
            return 1

        config = SyncConfig.from_env()
        if not config.github_token:
            logger.warning("GITHUB_TOKEN not found. Using unauthenticated requests (limited rate).")

        cache = CacheStore.load(config.cache_file, ttls=config.cache_ttls, max_bytes=config.cache_max_bytes)
        state_repository = SyncStateRepository(config.database_url)
        state_repository.connect()
        state_repository.initialize_schema()

        try:
            return asyncio.run(run(org, config, state_repository, cache))
        finally:
            cache.flush()
            state_repository.close()

    except Exception as e:
        logger.error(f"Sync failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
