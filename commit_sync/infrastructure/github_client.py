"""GitHub REST API client with pagination, rate limiting and retry logic."""

import asyncio
import functools
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import requests

from commit_sync.domain.errors import ApiError, NotFound, Unauthorized, UpstreamServerError
from commit_sync.infrastructure.rate_limiter import RateLimiter, credential_key
from commit_sync.infrastructure.retry import RetryPolicy

logger = logging.getLogger(__name__)


def format_timestamp(value: datetime) -> str:
    """Render a datetime the way the GitHub API expects it (UTC, Z suffix)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class GitHubRestClient:
    """Client for the GitHub REST API with pagination, rate limiting and retries."""

    # Authenticated requests get 5,000 calls per hour, anonymous ones 60.
    # Every page counts as one call, so listings are capped at MAX_PAGES pages.

    API_ROOT = "https://api.github.com"
    PER_PAGE = 100
    MAX_PAGES = 10
    MAX_EMPTY_PAGES = 3
    REQUEST_TIMEOUT = 30
    RATE_LIMIT_FALLBACK_SECONDS = 60

    def __init__(
        self,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        base_url: Optional[str] = None,
        max_pages: int = MAX_PAGES,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize GitHub REST client.

        Args:
            token: Default GitHub token. If None, uses GITHUB_TOKEN env var.
            session: HTTP session; a new requests.Session when omitted
            retry_policy: Policy for transient failures
            rate_limiter: Limiter shared by every client using the same credentials
            base_url: API root, for GitHub Enterprise installs
            max_pages: Hard ceiling on pages fetched per listing
            clock: Returns the current epoch time in seconds
            sleep: Coroutine used for every wait
        """
        if token is None:
            token = os.getenv("GITHUB_TOKEN")

        self.token = token
        self.session = session if session is not None else requests.Session()
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter or RateLimiter(clock=clock, sleep=sleep)
        self.base_url = (base_url or self.API_ROOT).rstrip("/")
        self.max_pages = max_pages
        self.clock = clock
        self.sleep = sleep

    def _headers(self, token: Optional[str]) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def fetch_all(
        self,
        resource: str,
        token: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
        context: str = "data",
    ) -> List[Dict[str, Any]]:
        """
        Fetch every page of a collection resource.

        Pagination stops on an empty page, on a response without a
        rel="next" link, after max_pages pages, or after MAX_EMPTY_PAGES
        consecutive empty pages that still advertise a next page.

        Args:
            resource: API path such as "/orgs/acme/repos"
            token: Credential for this call; defaults to the client's token
            params: Extra query parameters
            context: Resource description used in errors and logs

        Returns:
            Items of all pages, in page order

        Raises:
            NotFound, Unauthorized, ApiError: Immediately, never retried
            UpstreamServerError: When server errors outlast the retry budget
            RateLimited: When the quota reset is further away than allowed
        """
        if token is None:
            token = self.token
        key = credential_key(token)

        items: List[Dict[str, Any]] = []
        consecutive_empty = 0
        page = 1

        while True:
            query = dict(params or {})
            query.update({"per_page": str(self.PER_PAGE), "page": str(page)})

            response = await self.retry_policy.run(
                functools.partial(self._get, resource, query, token, key, context),
                context=context,
                sleep=self.sleep,
            )
            data = response.json()
            if not isinstance(data, list):
                raise ApiError(context, response.status_code, "expected a JSON array")

            has_next = "next" in response.links
            logger.debug(f"Received {len(data)} items from page {page} of {context}")

            if data:
                consecutive_empty = 0
                items.extend(data)
            else:
                consecutive_empty += 1
                if not has_next or consecutive_empty >= self.MAX_EMPTY_PAGES:
                    break

            if not has_next:
                break
            if page >= self.max_pages:
                logger.warning(f"Stopped {context} at the {self.max_pages}-page ceiling")
                break
            page += 1

        logger.info(f"Finished fetching {context}. Total items: {len(items)}")
        return items

    async def fetch_one(self, resource: str, token: Optional[str] = None, context: str = "data") -> Dict[str, Any]:
        """Fetch a single, unpaginated resource."""
        if token is None:
            token = self.token
        key = credential_key(token)
        response = await self.retry_policy.run(
            functools.partial(self._get, resource, {}, token, key, context),
            context=context,
            sleep=self.sleep,
        )
        return response.json()

    async def _get(
        self,
        resource: str,
        params: Dict[str, str],
        token: Optional[str],
        key: str,
        context: str,
    ) -> requests.Response:
        """Issue one GET, waiting out rate limits until a non-throttled answer arrives."""
        url = resource if resource.startswith("http") else f"{self.base_url}{resource}"

        while True:
            await self.rate_limiter.wait(key, context)
            response = await asyncio.to_thread(
                self.session.get,
                url,
                params=params,
                headers=self._headers(token),
                timeout=self.REQUEST_TIMEOUT,
            )
            self._record_quota(key, response)

            if response.status_code < 300:
                return response

            if self._is_rate_limited(response):
                reset_at = self._reset_time(response)
                logger.warning(
                    f"Rate limit exceeded for {context}, retrying after {int(reset_at - self.clock())} seconds"
                )
                self.rate_limiter.exhaust(key, reset_at)
                continue

            self._raise_for_status(response, context)

    def _record_quota(self, key: str, response: requests.Response) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining is None or reset is None:
            return
        try:
            self.rate_limiter.update(key, int(remaining), float(reset))
        except ValueError:
            logger.debug(f"Ignoring malformed rate-limit headers: {remaining!r}, {reset!r}")

    def _is_rate_limited(self, response: requests.Response) -> bool:
        if response.status_code not in (403, 429):
            return False
        if response.headers.get("X-RateLimit-Remaining") == "0":
            return True
        return "Retry-After" in response.headers or response.status_code == 429

    def _reset_time(self, response: requests.Response) -> float:
        now = self.clock()
        retry_after = response.headers.get("Retry-After")
        reset = response.headers.get("X-RateLimit-Reset")
        try:
            if retry_after is not None:
                reset_at = now + float(retry_after)
            elif reset is not None:
                reset_at = float(reset)
            else:
                reset_at = now + self.RATE_LIMIT_FALLBACK_SECONDS
        except ValueError:
            reset_at = now + self.RATE_LIMIT_FALLBACK_SECONDS
        if reset_at <= now:
            reset_at = now + self.RATE_LIMIT_FALLBACK_SECONDS
        return reset_at

    def _raise_for_status(self, response: requests.Response, context: str) -> None:
        status = response.status_code
        if status == 401:
            raise Unauthorized(context)
        if status == 403:
            raise Unauthorized(context, detail=self._error_message(response))
        if status == 404:
            raise NotFound(context)
        if status >= 500:
            raise UpstreamServerError(context, status)
        raise ApiError(context, status, self._error_message(response))

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            return response.json().get("message", "")
        except ValueError:
            return response.text[:200]

    async def fetch_org_repositories(self, org: str, token: Optional[str] = None) -> List[Dict[str, Any]]:
        """Raw repository payloads of an organization."""
        return await self.fetch_all(f"/orgs/{org}/repos", token, {}, f"repositories for {org}")

    async def fetch_branches(self, full_name: str, token: Optional[str] = None) -> List[Dict[str, Any]]:
        """Raw branch payloads of a repository."""
        return await self.fetch_all(f"/repos/{full_name}/branches", token, {}, f"branches for {full_name}")

    async def fetch_commits(
        self,
        full_name: str,
        branch_name: str,
        head_sha: str,
        token: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Raw commit payloads reachable from a branch head, within [since, until]."""
        params = {"sha": head_sha}
        if since is not None:
            params["since"] = format_timestamp(since)
        if until is not None:
            params["until"] = format_timestamp(until)
        return await self.fetch_all(
            f"/repos/{full_name}/commits",
            token,
            params,
            f"commits for {full_name}/{branch_name}",
        )

    async def fetch_user(self, login: str, token: Optional[str] = None) -> Dict[str, Any]:
        """Raw profile payload of a GitHub user."""
        return await self.fetch_one(f"/users/{login}", token, f"user {login}")
