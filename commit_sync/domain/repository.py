"""Domain entities for GitHub repositories, branches and commits."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

from commit_sync.domain.identity import AuthorIdentity, identity_from_payload


def parse_timestamp(value: str) -> datetime:
    """Parse a GitHub ISO-8601 timestamp into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class Repository:
    """Immutable repository entity."""

    id: int
    name: str
    full_name: str

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Repository":
        return cls(
            id=payload["id"],
            name=payload["name"],
            full_name=payload["full_name"],
        )


@dataclass(frozen=True)
class Branch:
    """Immutable branch entity pointing at its head commit."""

    name: str
    head_sha: str

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Branch":
        return cls(name=payload["name"], head_sha=payload["commit"]["sha"])


@dataclass(frozen=True)
class Commit:
    """Immutable commit entity, unique by sha."""

    sha: str
    author: AuthorIdentity
    authored_at: datetime
    message: str
    parents: Tuple[str, ...] = ()

    @property
    def date_bucket(self) -> str:
        """Calendar date of the commit in UTC, as yyyy-MM-dd."""
        return self.authored_at.astimezone(timezone.utc).strftime("%Y-%m-%d")

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Commit":
        git_commit = payload.get("commit") or {}
        git_author = git_commit.get("author") or {}
        return cls(
            sha=payload["sha"],
            author=identity_from_payload(payload),
            authored_at=parse_timestamp(git_author["date"]),
            message=git_commit.get("message") or "",
            parents=tuple(parent["sha"] for parent in payload.get("parents") or []),
        )
