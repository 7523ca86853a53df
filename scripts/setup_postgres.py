#!/usr/bin/env python3
"""Script to initialize the PostgreSQL sync state schema."""

import logging
import sys

from commit_sync.infrastructure.database import SyncStateRepository

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Initialize database schema and list known organizations."""
    try:
        db_repo = SyncStateRepository()
        db_repo.connect()
        db_repo.initialize_schema()
        for org, watermark in db_repo.list_states():
            logger.info(f"{org}: synchronized up to {watermark.isoformat()}")
        db_repo.close()
        logger.info("Database schema setup completed successfully")
        return 0
    except Exception as e:
        logger.error(f"Failed to setup database schema: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
