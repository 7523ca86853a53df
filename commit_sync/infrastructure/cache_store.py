"""Persistent look-aside cache for GitHub API payloads.

The whole store is one JSON document with a map per category::

    {"repositories": {key: {"data": ..., "timestamp": ms, "expiresAt": ms}},
     "branches": {...}, "commits": {...}, "employees": {...}}

Entries expire lazily on read. The serialized document is kept under
``max_bytes`` by evicting the oldest entries across all categories, and
snapshots are written to a temporary file that is renamed over the previous
one so an interrupted write never damages the durable copy.
"""

import asyncio
import contextlib
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

from commit_sync.domain.errors import CacheCorrupt

logger = logging.getLogger(__name__)

CATEGORIES = ("repositories", "branches", "commits", "employees")

HOUR = 60 * 60
DEFAULT_TTLS = {
    "repositories": HOUR,
    "branches": HOUR,
    "commits": 24 * HOUR,
    "employees": 24 * HOUR,
}
DEFAULT_MAX_BYTES = 50 * 1024 * 1024


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


_SKELETON_SIZE = len(_dumps({category: {} for category in CATEGORIES}))


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    expires_at: float
    size: int = 0
    seq: int = 0

    def to_record(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "timestamp": int(self.timestamp * 1000),
            "expiresAt": int(self.expires_at * 1000),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "CacheEntry":
        return cls(
            data=record["data"],
            timestamp=record["timestamp"] / 1000,
            expires_at=record["expiresAt"] / 1000,
        )


class CacheStore:
    """Keyed, TTL-expiring, size-bounded cache with durable JSON persistence."""

    def __init__(
        self,
        path: Optional[Path] = None,
        ttls: Optional[Dict[str, float]] = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize an empty cache store.

        Args:
            path: Snapshot file; None keeps the store in memory only
            ttls: Per-category time-to-live in seconds, merged over DEFAULT_TTLS
            max_bytes: Ceiling for the serialized document size
            clock: Returns the current epoch time in seconds
        """
        self.path = Path(path) if path is not None else None
        self.ttls = dict(DEFAULT_TTLS)
        if ttls:
            self.ttls.update(ttls)
        self.max_bytes = max_bytes
        self.clock = clock

        self._mu = threading.RLock()
        self._data: Dict[str, Dict[str, CacheEntry]] = {category: {} for category in CATEGORIES}
        self._total_size = _SKELETON_SIZE
        self._seq = 0
        self._dirty = False
        self._key_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._key_lock_users: Dict[Tuple[str, str], int] = {}

    @classmethod
    def load(cls, path: Path, **kwargs: Any) -> "CacheStore":
        """Load the store from its snapshot, starting empty if it is missing or unreadable."""
        store = cls(path, **kwargs)
        path = Path(path)
        if not path.exists():
            logger.info(f"No cache snapshot at {path}, starting with an empty cache")
            return store

        try:
            document = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(document, dict):
                raise ValueError("top level is not an object")
        except (OSError, ValueError) as e:
            logger.warning(f"{CacheCorrupt(str(path), e)}; starting with an empty cache")
            return store

        loaded = 0
        with store._mu:
            for category in CATEGORIES:
                records = document.get(category) or {}
                if not isinstance(records, dict):
                    logger.warning(f"Ignoring malformed '{category}' section in {path}")
                    continue
                for key, record in records.items():
                    try:
                        entry = CacheEntry.from_record(record)
                    except (KeyError, TypeError) as e:
                        logger.warning(f"Skipping malformed cache entry {category}/{key}: {e}")
                        continue
                    store._insert(category, key, entry)
                    loaded += 1
            store._enforce_size_limit()
            store._dirty = False
        logger.info(f"Cache loaded from {path} ({loaded} entries)")
        return store

    def _check_category(self, category: str) -> None:
        if category not in self._data:
            raise ValueError(f"Unknown cache category: {category}")

    def _entry_size(self, key: str, entry: CacheEntry) -> int:
        # key, colon, record and a trailing comma
        return len(_dumps(key)) + len(_dumps(entry.to_record())) + 2

    def _insert(self, category: str, key: str, entry: CacheEntry) -> None:
        self._remove(category, key)
        self._seq += 1
        entry.seq = self._seq
        entry.size = self._entry_size(key, entry)
        self._data[category][key] = entry
        self._total_size += entry.size
        self._dirty = True

    def _remove(self, category: str, key: str) -> Optional[CacheEntry]:
        entry = self._data[category].pop(key, None)
        if entry is not None:
            self._total_size -= entry.size
            self._dirty = True
        return entry

    def get(self, category: str, key: str) -> Optional[Any]:
        """Return the cached payload, or None on a miss. Expired entries are deleted."""
        self._check_category(category)
        with self._mu:
            entry = self._data[category].get(key)
            if entry is None:
                return None
            if self.clock() >= entry.expires_at:
                self._remove(category, key)
                logger.debug(f"Cache entry {category}/{key} expired")
                return None
            return entry.data

    def put(self, category: str, key: str, data: Any) -> None:
        """Store a payload, overwriting any previous entry for the key."""
        self._check_category(category)
        now = self.clock()
        entry = CacheEntry(data=data, timestamp=now, expires_at=now + self.ttls[category])
        with self._mu:
            self._insert(category, key, entry)
            self._enforce_size_limit()

    def delete(self, category: str, key: str) -> bool:
        self._check_category(category)
        with self._mu:
            return self._remove(category, key) is not None

    def _enforce_size_limit(self) -> int:
        evicted = 0
        while self._total_size > self.max_bytes:
            oldest = self._oldest()
            if oldest is None:
                break
            self._remove(*oldest)
            evicted += 1
        if evicted:
            logger.info(f"Evicted {evicted} oldest cache entries to stay under {self.max_bytes} bytes")
        return evicted

    def _oldest(self) -> Optional[Tuple[str, str]]:
        oldest: Optional[Tuple[str, str]] = None
        oldest_rank: Optional[Tuple[float, int]] = None
        for category, entries in self._data.items():
            for key, entry in entries.items():
                rank = (entry.timestamp, entry.seq)
                if oldest_rank is None or rank < oldest_rank:
                    oldest, oldest_rank = (category, key), rank
        return oldest

    def evict_expired(self) -> int:
        """Delete every expired entry and return how many were removed."""
        now = self.clock()
        removed = 0
        with self._mu:
            for category, entries in self._data.items():
                for key in [k for k, entry in entries.items() if now >= entry.expires_at]:
                    self._remove(category, key)
                    removed += 1
        if removed:
            logger.info(f"Cleared {removed} expired cache entries")
        return removed

    def clear(self, category: Optional[str] = None) -> None:
        with self._mu:
            categories = [category] if category else list(CATEGORIES)
            for name in categories:
                self._check_category(name)
                for key in list(self._data[name]):
                    self._remove(name, key)

    @property
    def size(self) -> int:
        """Upper bound of the serialized document size in bytes."""
        return self._total_size

    def stats(self) -> Dict[str, Any]:
        with self._mu:
            return {
                "categories": {
                    category: {
                        "count": len(entries),
                        "size": sum(entry.size for entry in entries.values()),
                    }
                    for category, entries in self._data.items()
                },
                "totalSize": self._total_size,
            }

    def dumps(self) -> str:
        """Serialize the whole store to its JSON document."""
        with self._mu:
            return _dumps(
                {
                    category: {key: entry.to_record() for key, entry in entries.items()}
                    for category, entries in self._data.items()
                }
            )

    @contextlib.asynccontextmanager
    async def locked(self, category: str, key: str) -> AsyncIterator[None]:
        """Critical section for one key; writers of the same key never interleave."""
        lock_key = (category, key)
        lock = self._key_locks.setdefault(lock_key, asyncio.Lock())
        self._key_lock_users[lock_key] = self._key_lock_users.get(lock_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._key_lock_users[lock_key] -= 1
            if not self._key_lock_users[lock_key]:
                del self._key_lock_users[lock_key]
                del self._key_locks[lock_key]

    async def get_or_fetch(
        self,
        category: str,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
    ) -> Tuple[Any, bool]:
        """
        Look-aside read: serve from cache, otherwise fetch and store.

        Empty results are returned but not cached.

        Returns:
            Tuple of (payload, whether it came from the cache)
        """
        async with self.locked(category, key):
            cached = self.get(category, key)
            if cached is not None:
                logger.info(f"Using cached {category} for {key}")
                return cached, True
            data = await fetch()
            if data:
                self.put(category, key, data)
            return data, False

    def flush(self) -> bool:
        """Write the snapshot if anything changed. Returns True when a file was written."""
        if self.path is None:
            return False
        with self._mu:
            if not self._dirty:
                return False
            document = self.dumps()
            self._dirty = False
        try:
            self._write_atomically(document)
        except OSError:
            with self._mu:
                self._dirty = True
            raise
        return True

    def _write_atomically(self, document: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(document)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise
        logger.info(f"Cache saved to {self.path}")

    async def autosave(self, interval: float = 300.0) -> None:
        """Flush periodically until cancelled; evicts expired entries first."""
        while True:
            await asyncio.sleep(interval)
            self.evict_expired()
            try:
                await asyncio.to_thread(self.flush)
            except OSError as e:
                logger.error(f"Error saving cache to {self.path}: {e}")
