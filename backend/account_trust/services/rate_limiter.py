"""Multi-scope rate limiter.

Each scope is an independent moving window from the limits library (the
engine slowapi is built on), keyed by ``(scope, identifier)``:

- public: keyed by requester IP, guards anonymous endpoints
- private: keyed by authenticated user id, guards self-service actions
- notification: keyed by the target email/account, guards third parties
  from repeated reset/deletion emails regardless of who triggers them

The moving window only records a hit when capacity remains, so denied
attempts never consume capacity.

Storage failures follow the scope's ``fail_open`` flag. The built-in
scopes all gate authentication or outbound email and fail closed.
"""

import time
from collections.abc import Iterable
from dataclasses import dataclass

import structlog
from limits import RateLimitItem, parse
from limits.aio.storage import Storage
from limits.aio.strategies import MovingWindowRateLimiter
from limits.errors import StorageError
from limits.storage import storage_from_string

from account_trust.core.config import Settings

logger = structlog.get_logger()

PUBLIC = "public"
PRIVATE = "private"
NOTIFICATION = "notification"


@dataclass(frozen=True)
class RateLimitScope:
    """A named limit and its storage-failure policy."""

    name: str
    limit: RateLimitItem
    fail_open: bool = False


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one attempt.

    Attributes:
        allowed: Whether the attempt may proceed.
        remaining: Capacity left in the current window.
        reset_at: Epoch seconds when the window next frees capacity.
    """

    allowed: bool
    remaining: int
    reset_at: float

    @property
    def retry_after(self) -> int:
        """Whole seconds until a retry can succeed (at least 1)."""
        return max(1, int(self.reset_at - time.time() + 0.999))


class RateLimiter:
    """Moving-window limiter over a set of named scopes.

    Args:
        storage: Async limits storage (memory or Redis).
        scopes: Scope definitions.
        enabled: When False every attempt is allowed without touching storage.
    """

    def __init__(
        self,
        storage: Storage,
        scopes: Iterable[RateLimitScope],
        *,
        enabled: bool = True,
    ) -> None:
        self._storage = storage
        self._strategy = MovingWindowRateLimiter(storage)
        self._scopes = {scope.name: scope for scope in scopes}
        self.enabled = enabled

    @classmethod
    def from_settings(cls, config: Settings) -> "RateLimiter":
        """Build the limiter with the public, private and notification scopes."""
        storage = storage_from_string(
            config.rate_limit_storage_uri, wrap_exceptions=True
        )
        scopes = [
            RateLimitScope(PUBLIC, parse(config.rate_limit_public)),
            RateLimitScope(PRIVATE, parse(config.rate_limit_private)),
            RateLimitScope(NOTIFICATION, parse(config.rate_limit_notification)),
        ]
        return cls(storage, scopes, enabled=config.rate_limit_enabled)

    def scope(self, name: str) -> RateLimitScope:
        """Look up a scope definition.

        Raises:
            KeyError: Unknown scope name.
        """
        return self._scopes[name]

    async def attempt(self, scope: str, identifier: str) -> RateLimitResult:
        """Record one attempt for ``(scope, identifier)``.

        Args:
            scope: Scope name (public, private, notification).
            identifier: IP, user id or target address, depending on scope.

        Returns:
            RateLimitResult for this attempt.

        Raises:
            KeyError: Unknown scope name.
        """
        definition = self._scopes[scope]
        limit = definition.limit
        if not self.enabled:
            return RateLimitResult(
                allowed=True, remaining=limit.amount, reset_at=time.time()
            )

        try:
            allowed = await self._strategy.hit(limit, scope, identifier)
            reset_at, remaining = await self._strategy.get_window_stats(
                limit, scope, identifier
            )
        except StorageError as exc:
            logger.warning(
                "rate_limit_storage_unavailable",
                scope=scope,
                fail_open=definition.fail_open,
                error_type=type(exc.storage_error).__name__,
            )
            if definition.fail_open:
                return RateLimitResult(
                    allowed=True, remaining=limit.amount, reset_at=time.time()
                )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=time.time() + limit.get_expiry(),
            )

        if not allowed:
            logger.info("rate_limit_exceeded", scope=scope)
        return RateLimitResult(
            allowed=allowed, remaining=remaining, reset_at=float(reset_at)
        )

    async def reset(self) -> None:
        """Clear every window (maintenance and tests)."""
        await self._storage.reset()
