#!/usr/bin/env python3
"""Script to report cache statistics after clearing expired entries."""

import json
import logging
import os
import sys

from commit_sync.config import SyncConfig
from commit_sync.infrastructure.cache_store import CacheStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Print per-category cache statistics; CLEAR_CACHE=1 empties the cache first."""
    try:
        config = SyncConfig.from_env()
        cache = CacheStore.load(config.cache_file, ttls=config.cache_ttls, max_bytes=config.cache_max_bytes)

        if os.getenv("CLEAR_CACHE") == "1":
            cache.clear()
            logger.info("Cache cleared")
        else:
            cache.evict_expired()

        print(json.dumps(cache.stats(), indent=2))
        cache.flush()
        return 0
    except Exception as e:
        logger.error(f"Cache report failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
