"""Tests for the multi-scope rate limiter.

Uses the limits in-memory storage with short windows; the window-reset
scenario sleeps just past a one-second window.
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest
from limits import parse
from limits.aio.storage import MemoryStorage, RedisStorage
from limits.errors import StorageError

from account_trust.core.config import Settings
from account_trust.services.rate_limiter import (
    NOTIFICATION,
    PRIVATE,
    PUBLIC,
    RateLimiter,
    RateLimitResult,
    RateLimitScope,
)

_IP = "203.0.113.7"
_OTHER_IP = "198.51.100.20"


def _limiter(rate: str = "3/second", *, fail_open: bool = False) -> RateLimiter:
    return RateLimiter(
        MemoryStorage(), [RateLimitScope(PUBLIC, parse(rate), fail_open=fail_open)]
    )


# =============================================================================
# Window behaviour
# =============================================================================


class TestWindow:
    """N attempts pass, the next is denied, and capacity returns with time."""

    async def test_n_allowed_then_denied_then_allowed_after_window(self) -> None:
        limiter = _limiter("3/second")

        first = [await limiter.attempt(PUBLIC, _IP) for _ in range(3)]
        denied = await limiter.attempt(PUBLIC, _IP)

        assert all(r.allowed for r in first)
        assert denied.allowed is False
        assert denied.remaining == 0

        await asyncio.sleep(1.1)
        again = [await limiter.attempt(PUBLIC, _IP) for _ in range(3)]
        assert all(r.allowed for r in again)

    async def test_remaining_counts_down(self) -> None:
        limiter = _limiter("3/minute")

        remaining = [(await limiter.attempt(PUBLIC, _IP)).remaining for _ in range(3)]

        assert remaining == [2, 1, 0]

    async def test_denied_attempts_do_not_consume_capacity(self) -> None:
        limiter = _limiter("2/second")
        start = time.monotonic()
        await limiter.attempt(PUBLIC, _IP)
        await limiter.attempt(PUBLIC, _IP)

        # Hammer while denied; none of these may be recorded.
        for _ in range(10):
            assert (await limiter.attempt(PUBLIC, _IP)).allowed is False

        await asyncio.sleep(max(0.0, 1.1 - (time.monotonic() - start)))
        assert (await limiter.attempt(PUBLIC, _IP)).allowed is True
        assert (await limiter.attempt(PUBLIC, _IP)).allowed is True

    async def test_identifiers_have_independent_windows(self) -> None:
        limiter = _limiter("1/minute")

        assert (await limiter.attempt(PUBLIC, _IP)).allowed is True
        assert (await limiter.attempt(PUBLIC, _IP)).allowed is False
        assert (await limiter.attempt(PUBLIC, _OTHER_IP)).allowed is True

    async def test_scopes_have_independent_windows(
        self, rate_limiter: RateLimiter
    ) -> None:
        target = "victim@example.com"

        assert (await rate_limiter.attempt(NOTIFICATION, target)).allowed is True
        assert (await rate_limiter.attempt(NOTIFICATION, target)).allowed is False
        assert (await rate_limiter.attempt(PRIVATE, target)).allowed is True

    async def test_reset_at_is_in_the_future_when_denied(self) -> None:
        limiter = _limiter("1/minute")
        await limiter.attempt(PUBLIC, _IP)

        denied = await limiter.attempt(PUBLIC, _IP)

        assert denied.reset_at > time.time()
        assert 1 <= denied.retry_after <= 60


# =============================================================================
# Storage failure policy
# =============================================================================


class TestStorageFailure:
    """Each scope decides whether an unreachable store allows or denies."""

    async def test_fail_closed_denies(self) -> None:
        limiter = _limiter("3/minute")
        limiter._strategy.hit = AsyncMock(
            side_effect=StorageError(ConnectionError("down"))
        )

        result = await limiter.attempt(PUBLIC, _IP)

        assert result.allowed is False
        assert result.remaining == 0
        assert result.retry_after >= 1

    async def test_fail_open_allows(self) -> None:
        limiter = _limiter("3/minute", fail_open=True)
        limiter._strategy.hit = AsyncMock(
            side_effect=StorageError(ConnectionError("down"))
        )

        result = await limiter.attempt(PUBLIC, _IP)

        assert result.allowed is True
        assert result.remaining == 3

    def test_built_in_scopes_fail_closed(self) -> None:
        limiter = RateLimiter.from_settings(Settings())

        for scope in (PUBLIC, PRIVATE, NOTIFICATION):
            assert limiter.scope(scope).fail_open is False


# =============================================================================
# Configuration
# =============================================================================


class TestConfiguration:
    async def test_unknown_scope_raises_key_error(self) -> None:
        limiter = _limiter()

        with pytest.raises(KeyError):
            await limiter.attempt("admin", _IP)

    async def test_disabled_limiter_always_allows(self) -> None:
        limiter = RateLimiter(
            MemoryStorage(), [RateLimitScope(PUBLIC, parse("1/minute"))], enabled=False
        )

        results = [await limiter.attempt(PUBLIC, _IP) for _ in range(5)]

        assert all(r.allowed for r in results)

    def test_from_settings_uses_configured_rates(self) -> None:
        config = Settings(
            rate_limit_public="20/minute",
            rate_limit_private="2/hour",
            rate_limit_notification="1/5 minutes",
        )

        limiter = RateLimiter.from_settings(config)

        assert limiter.scope(PUBLIC).limit.amount == 20
        assert limiter.scope(PRIVATE).limit.amount == 2
        assert limiter.scope(NOTIFICATION).limit.get_expiry() == 300

    def test_from_settings_accepts_redis_storage(self) -> None:
        """The async Redis backend is installed, not just the memory one."""
        config = Settings(rate_limit_storage_uri="async+redis://localhost:6379/1")

        limiter = RateLimiter.from_settings(config)

        assert isinstance(limiter._storage, RedisStorage)

    def test_retry_after_is_at_least_one_second(self) -> None:
        result = RateLimitResult(allowed=False, remaining=0, reset_at=time.time())

        assert result.retry_after == 1
