"""Commit author identities."""

from dataclasses import dataclass, field
from typing import Any, Dict, Union


@dataclass(frozen=True)
class KnownAuthor:
    """Author linked to a GitHub account."""

    login: str

    @property
    def key(self) -> str:
        return self.login


@dataclass(frozen=True)
class UnattributedAuthor:
    """Author known only by the free-text name recorded in the commit.

    A person who commits both from a linked account and from an unlinked
    e-mail shows up twice, once per identity. The two are never merged.
    """

    name: str
    email: str = field(default="", compare=False)

    # GitHub logins never contain "~", so this key cannot collide with one
    KEY_PREFIX = "~"

    @property
    def key(self) -> str:
        return f"{self.KEY_PREFIX}{self.name}"


AuthorIdentity = Union[KnownAuthor, UnattributedAuthor]


def identity_from_payload(payload: Dict[str, Any]) -> AuthorIdentity:
    """Pick the author identity of a REST commit payload."""
    account = payload.get("author") or {}
    login = account.get("login")
    if login:
        return KnownAuthor(login=login)

    git_author = (payload.get("commit") or {}).get("author") or {}
    return UnattributedAuthor(
        name=git_author.get("name") or "unknown",
        email=git_author.get("email") or "",
    )
