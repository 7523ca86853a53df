"""Runtime configuration read from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from commit_sync.infrastructure.cache_store import DEFAULT_MAX_BYTES, DEFAULT_TTLS
from commit_sync.infrastructure.database import connection_string_from_env


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


@dataclass(frozen=True)
class SyncConfig:
    github_token: Optional[str] = None
    github_api_url: str = "https://api.github.com"
    cache_file: Path = Path("cache") / "cache-data.json"
    cache_max_bytes: int = DEFAULT_MAX_BYTES
    cache_ttls: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_TTLS))
    cache_autosave_seconds: float = 300.0
    batch_size: int = 5
    batch_delay_seconds: float = 1.0
    lookback_days: int = 30
    max_rate_limit_wait_seconds: float = 900.0
    database_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Build configuration from the process environment."""
        ttls = {
            category: _env_float(f"CACHE_TTL_{category.upper()}_SECONDS", default)
            for category, default in DEFAULT_TTLS.items()
        }
        return cls(
            github_token=os.getenv("GITHUB_TOKEN") or None,
            github_api_url=os.getenv("GITHUB_API_URL", "https://api.github.com"),
            cache_file=Path(os.getenv("CACHE_FILE", str(Path("cache") / "cache-data.json"))),
            cache_max_bytes=_env_int("CACHE_MAX_BYTES", DEFAULT_MAX_BYTES),
            cache_ttls=ttls,
            cache_autosave_seconds=_env_float("CACHE_AUTOSAVE_SECONDS", 300.0),
            batch_size=_env_int("SYNC_BATCH_SIZE", 5),
            batch_delay_seconds=_env_float("SYNC_BATCH_DELAY_SECONDS", 1.0),
            lookback_days=_env_int("SYNC_LOOKBACK_DAYS", 30),
            max_rate_limit_wait_seconds=_env_float("MAX_RATE_LIMIT_WAIT_SECONDS", 900.0),
            database_url=connection_string_from_env(),
        )
