"""Database connection and per-organization sync state storage."""

import logging
from psycopg2.pool import ThreadedConnectionPool
from datetime import datetime
from typing import Optional
import os

logger = logging.getLogger(__name__)


def connection_string_from_env() -> str:
    """Build a libpq connection string from the POSTGRES_* environment variables."""
    db_host = os.getenv("POSTGRES_HOST", "localhost")
    db_port = os.getenv("POSTGRES_PORT", "5432")
    db_name = os.getenv("POSTGRES_DB", "commit_sync")
    db_user = os.getenv("POSTGRES_USER", "postgres")
    db_password = os.getenv("POSTGRES_PASSWORD", "postgres")

    return (
        f"host={db_host} port={db_port} dbname={db_name} "
        f"user={db_user} password={db_password}"
    )


class SyncStateRepository:
    """Stores the incremental sync watermark of each organization in PostgreSQL."""

    def __init__(self, connection_string: Optional[str] = None):
        """
        Initialize sync state repository.

        Args:
            connection_string: PostgreSQL connection string. If None, uses env vars.
        """
        if connection_string is None:
            connection_string = connection_string_from_env()

        self.connection_string = connection_string
        self.pool: Optional[ThreadedConnectionPool] = None

    def connect(self):
        """Initialize connection pool."""
        try:
            self.pool = ThreadedConnectionPool(1, 5, self.connection_string)
            logger.info("Database connection pool created")
        except Exception as e:
            logger.error(f"Error creating connection pool: {e}")
            raise

    def close(self):
        """Close connection pool."""
        if self.pool:
            self.pool.closeall()
            logger.info("Database connection pool closed")

    def _get_connection(self):
        """Get a connection from the pool."""
        if not self.pool:
            self.connect()
        return self.pool.getconn()

    def _return_connection(self, conn):
        """Return a connection to the pool."""
        if self.pool:
            self.pool.putconn(conn)

    def initialize_schema(self):
        """Create the sync state table if it doesn't exist."""
        conn = self._get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS org_sync_state (
                        org VARCHAR(255) PRIMARY KEY,
                        watermark TIMESTAMPTZ NOT NULL,
                        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                    );
                """)
                conn.commit()
                logger.info("Database schema initialized")
        except Exception as e:
            conn.rollback()
            logger.error(f"Error initializing schema: {e}")
            raise
        finally:
            self._return_connection(conn)

    def get_watermark(self, org: str) -> Optional[datetime]:
        """Latest commit timestamp already synchronized for the organization, if any."""
        conn = self._get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT watermark FROM org_sync_state WHERE org = %s", (org,))
                row = cur.fetchone()
                return row[0] if row else None
        except Exception as e:
            logger.error(f"Error reading watermark for {org}: {e}")
            raise
        finally:
            self._return_connection(conn)

    def advance_watermark(self, org: str, watermark: datetime) -> datetime:
        """
        Move the organization's watermark forward.

        GREATEST keeps the stored value when the new one is older, so the
        watermark never regresses even with concurrent writers.

        Args:
            org: Organization login
            watermark: Latest commit timestamp observed by the run

        Returns:
            The watermark stored after the update
        """
        conn = self._get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO org_sync_state (org, watermark)
                    VALUES (%s, %s)
                    ON CONFLICT (org)
                    DO UPDATE SET
                        watermark = GREATEST(org_sync_state.watermark, EXCLUDED.watermark),
                        updated_at = CURRENT_TIMESTAMP
                    RETURNING watermark
                    """,
                    (org, watermark),
                )
                stored = cur.fetchone()[0]
                conn.commit()
                logger.info(f"Watermark for {org} is now {stored.isoformat()}")
                return stored
        except Exception as e:
            conn.rollback()
            logger.error(f"Error advancing watermark for {org}: {e}")
            raise
        finally:
            self._return_connection(conn)

    def list_states(self) -> list[tuple[str, datetime]]:
        """All organizations with their watermark, most recently synced first."""
        conn = self._get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT org, watermark FROM org_sync_state ORDER BY watermark DESC")
                return [(org, watermark) for org, watermark in cur.fetchall()]
        except Exception as e:
            logger.error(f"Error listing sync state: {e}")
            raise
        finally:
            self._return_connection(conn)
