"""Activity tracking throttle.

Bounds how often a session's last-active timestamp is written to the
relational store: one ``SET session:activity:{id} 1 NX EX window`` per
check, so only the first caller in each window gets permission.
"""

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger()

ACTIVITY_KEY_PREFIX = "session:activity:"
DEFAULT_WINDOW_SECONDS = 300


class ActivityThrottle:
    """Per-session write throttle backed by Redis.

    Fails open: when Redis is unreachable the caller is told to track,
    trading a few extra liveness writes for not losing activity data.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
    ) -> None:
        self._client = client
        self.window_seconds = window_seconds

    async def should_track(self, session_id: str) -> bool:
        """Return True at most once per window for this session."""
        try:
            acquired = await self._client.set(
                f"{ACTIVITY_KEY_PREFIX}{session_id}",
                "1",
                nx=True,
                ex=self.window_seconds,
            )
        except RedisError as exc:
            logger.warning(
                "activity_throttle_unavailable",
                error_type=type(exc).__name__,
            )
            return True
        return bool(acquired)
