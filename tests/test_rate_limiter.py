import asyncio

import pytest

from commit_sync.domain.errors import RateLimited
from commit_sync.infrastructure.rate_limiter import RateLimiter, credential_key


@pytest.fixture
def limiter(clock):
    return RateLimiter(max_wait=900, clock=clock, sleep=clock.sleep)


def test_credential_key_hides_token():
    assert credential_key(None) == "anonymous"
    assert credential_key("") == "anonymous"
    key = credential_key("ghp_secret")
    assert "ghp_secret" not in key
    assert key == credential_key("ghp_secret")
    assert key != credential_key("ghp_other")


@pytest.mark.asyncio
async def test_unknown_credential_does_not_wait(limiter, clock):
    await limiter.wait("k", "items")
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_waits_until_reset_when_quota_is_low(limiter, clock):
    limiter.update("k", remaining=1, reset_at=clock.now + 42)

    await limiter.wait("k", "items")

    assert clock.sleeps == [42]
    assert limiter.quota("k") is None


@pytest.mark.asyncio
async def test_plenty_of_quota_does_not_wait(limiter, clock):
    limiter.update("k", remaining=10, reset_at=clock.now + 42)

    await limiter.wait("k", "items")

    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_past_reset_does_not_wait(limiter, clock):
    limiter.exhaust("k", reset_at=clock.now - 1)

    await limiter.wait("k", "items")

    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_siblings_share_a_single_sleep(limiter, clock):
    limiter.exhaust("k", reset_at=clock.now + 60)

    await asyncio.gather(*(limiter.wait("k", "items") for _ in range(5)))

    assert clock.sleeps == [60]


@pytest.mark.asyncio
async def test_credentials_are_throttled_independently(limiter, clock):
    limiter.exhaust("a", reset_at=clock.now + 60)

    await limiter.wait("b", "items")

    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_unreasonably_long_wait_raises(clock):
    limiter = RateLimiter(max_wait=10, clock=clock, sleep=clock.sleep)
    limiter.exhaust("k", reset_at=clock.now + 3600)

    with pytest.raises(RateLimited) as exc_info:
        await limiter.wait("k", "repositories for acme")

    assert exc_info.value.wait_seconds == pytest.approx(3600)
    assert clock.sleeps == []


def test_update_ignores_missing_headers(limiter):
    limiter.update("k", remaining=None, reset_at=None)
    assert limiter.quota("k") is None
