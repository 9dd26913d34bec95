"""Key-value store client construction.

The session revocation ledger and the activity throttle share one
``redis.asyncio.Redis`` client. It is built explicitly from settings and
handed to each component (no module-level singleton), so tests can pass an
isolated client per test.
"""

import redis.asyncio as aioredis

from account_trust.core.config import Settings


def create_redis_client(config: Settings) -> aioredis.Redis:
    """Build an async Redis client with explicit socket timeouts.

    The socket timeout is the only timeout applied to key-value calls;
    components add none of their own.

    Args:
        config: Application settings.

    Returns:
        Redis client with string responses.
    """
    return aioredis.from_url(
        config.redis_url,
        decode_responses=True,
        socket_timeout=config.redis_socket_timeout,
        socket_connect_timeout=config.redis_socket_timeout,
    )
