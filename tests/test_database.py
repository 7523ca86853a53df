from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from commit_sync.infrastructure import database
from commit_sync.infrastructure.database import SyncStateRepository, connection_string_from_env

WATERMARK = datetime(2024, 5, 22, 10, tzinfo=timezone.utc)


@pytest.fixture
def pool(monkeypatch):
    pool = MagicMock()
    monkeypatch.setattr(database, "ThreadedConnectionPool", MagicMock(return_value=pool))
    return pool


@pytest.fixture
def conn(pool):
    return pool.getconn.return_value


@pytest.fixture
def cursor(conn):
    return conn.cursor.return_value.__enter__.return_value


@pytest.fixture
def repository(pool):
    repository = SyncStateRepository("dbname=test")
    repository.connect()
    return repository


def test_connection_string_from_env(monkeypatch):
    monkeypatch.setenv("POSTGRES_HOST", "db")
    monkeypatch.setenv("POSTGRES_DB", "sync")
    monkeypatch.delenv("POSTGRES_PORT", raising=False)

    dsn = connection_string_from_env()

    assert "host=db" in dsn
    assert "dbname=sync" in dsn
    assert "port=5432" in dsn


def test_initialize_schema_commits(repository, conn, cursor, pool):
    repository.initialize_schema()

    assert "CREATE TABLE IF NOT EXISTS org_sync_state" in cursor.execute.call_args[0][0]
    conn.commit.assert_called_once()
    pool.putconn.assert_called_once_with(conn)


def test_get_watermark(repository, cursor):
    cursor.fetchone.return_value = (WATERMARK,)

    assert repository.get_watermark("acme") == WATERMARK
    assert cursor.execute.call_args[0][1] == ("acme",)


def test_get_watermark_of_unknown_org(repository, cursor):
    cursor.fetchone.return_value = None

    assert repository.get_watermark("acme") is None


def test_advance_watermark_returns_stored_value(repository, conn, cursor):
    later = datetime(2024, 6, 1, tzinfo=timezone.utc)
    cursor.fetchone.return_value = (later,)

    stored = repository.advance_watermark("acme", WATERMARK)

    sql, params = cursor.execute.call_args[0]
    assert "GREATEST" in sql
    assert params == ("acme", WATERMARK)
    assert stored == later
    conn.commit.assert_called_once()


def test_advance_watermark_rolls_back_on_error(repository, conn, cursor, pool):
    cursor.execute.side_effect = RuntimeError("connection lost")

    with pytest.raises(RuntimeError):
        repository.advance_watermark("acme", WATERMARK)

    conn.rollback.assert_called_once()
    conn.commit.assert_not_called()
    pool.putconn.assert_called_once_with(conn)


def test_list_states(repository, cursor):
    cursor.fetchall.return_value = [("acme", WATERMARK)]

    assert repository.list_states() == [("acme", WATERMARK)]


def test_connects_lazily(pool):
    repository = SyncStateRepository("dbname=test")

    repository.get_watermark("acme")

    pool.getconn.assert_called_once()


def test_close_closes_pool(repository, pool):
    repository.close()
    pool.closeall.assert_called_once()
