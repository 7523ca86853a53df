"""Shared fixtures: fake clock, fake HTTP session, fake GitHub client and payload builders."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from commit_sync.domain.errors import NotFound

API_ROOT = "https://api.github.com"


class FakeClock:
    """Epoch clock that only moves when something sleeps on it."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0)
        await asyncio.sleep(0)


def make_response(status: int = 200, body: Any = None, headers: Optional[Dict[str, str]] = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps([] if body is None else body).encode("utf-8")
    response.headers = CaseInsensitiveDict(headers or {})
    response.encoding = "utf-8"
    response.url = API_ROOT
    return response


def next_link(page: int) -> Dict[str, str]:
    return {"Link": f'<{API_ROOT}/resource?page={page}>; rel="next", <{API_ROOT}/resource?page=99>; rel="last"'}


class FakeSession:
    """Stands in for requests.Session; routes GETs by path.

    A route is either a callable taking the query params, or a list of
    responses served in order (the last one repeats). Exceptions in the list
    are raised instead of returned.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.routes: Dict[str, Any] = {}
        self.calls: List[Dict[str, Any]] = []

    def route(self, path: str, handler: Any) -> None:
        self.routes[path] = handler

    def get(self, url, params=None, headers=None, timeout=None):
        path = url[len(API_ROOT):] if url.startswith(API_ROOT) else url
        self.calls.append({
            "path": path,
            "params": dict(params or {}),
            "headers": dict(headers or {}),
            "at": self.clock() if self.clock else None,
        })
        handler = self.routes.get(path)
        if handler is None:
            return make_response(404, {"message": "Not Found"})
        if callable(handler):
            item = handler(dict(params or {}))
        else:
            item = handler.pop(0) if len(handler) > 1 else handler[0]
        if isinstance(item, Exception):
            raise item
        return item


def repo_payload(repo_id: int, name: str, org: str = "acme") -> Dict[str, Any]:
    return {"id": repo_id, "name": name, "full_name": f"{org}/{name}"}


def branch_payload(name: str, sha: str) -> Dict[str, Any]:
    return {"name": name, "commit": {"sha": sha}}


def commit_payload(
    sha: str,
    login: Optional[str] = None,
    name: str = "Dev",
    date: str = "2024-05-01T10:00:00Z",
    message: str = "Change things",
    parents: tuple = (),
) -> Dict[str, Any]:
    return {
        "sha": sha,
        "commit": {
            "author": {"name": name, "email": f"{name.lower()}@example.com", "date": date},
            "message": message,
        },
        "author": {"login": login} if login else None,
        "parents": [{"sha": parent} for parent in parents],
    }


class FakeGitHubClient:
    """In-memory replacement for GitHubRestClient used by orchestrator tests."""

    def __init__(self, token: Optional[str] = "token"):
        self.token = token
        self.repos: Dict[str, List[Dict[str, Any]]] = {}
        self.branches: Dict[str, List[Dict[str, Any]]] = {}
        self.commits: Dict[tuple, List[Dict[str, Any]]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}
        self.failing: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_org_repositories(self, org, token=None):
        self.calls.append(("repos", org))
        if org not in self.repos:
            raise NotFound(f"repositories for {org}")
        return list(self.repos[org])

    async def fetch_branches(self, full_name, token=None):
        self.calls.append(("branches", full_name))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if full_name in self.failing:
                raise self.failing[full_name]
            return list(self.branches.get(full_name, []))
        finally:
            self.in_flight -= 1

    async def fetch_commits(self, full_name, branch_name, head_sha, token=None, since=None, until=None):
        self.calls.append(("commits", full_name, branch_name, since, until))
        return list(self.commits.get((full_name, branch_name), []))

    async def fetch_user(self, login, token=None):
        self.calls.append(("user", login))
        if login not in self.users:
            raise NotFound(f"user {login}")
        return self.users[login]

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call[0] == kind)


class InMemorySyncState:
    """Watermark store with the SyncStateRepository interface."""

    def __init__(self):
        self.watermarks = {}
        self.advance_calls = []

    def get_watermark(self, org):
        return self.watermarks.get(org)

    def advance_watermark(self, org, watermark):
        self.advance_calls.append((org, watermark))
        current = self.watermarks.get(org)
        if current is None or watermark > current:
            self.watermarks[org] = watermark
        return self.watermarks[org]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session(clock) -> FakeSession:
    return FakeSession(clock)


@pytest.fixture
def fake_github() -> FakeGitHubClient:
    return FakeGitHubClient()


@pytest.fixture
def sync_state() -> InMemorySyncState:
    return InMemorySyncState()


@pytest.fixture
def payloads():
    """Builders for GitHub REST payloads."""

    class Builders:
        repo = staticmethod(repo_payload)
        branch = staticmethod(branch_payload)
        commit = staticmethod(commit_payload)

    return Builders


@pytest.fixture
def http() -> Callable:
    """Builders for HTTP responses."""

    class Builders:
        response = staticmethod(make_response)
        next_link = staticmethod(next_link)

    return Builders
