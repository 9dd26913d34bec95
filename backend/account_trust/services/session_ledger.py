"""Session revocation ledger.

A Redis set of revoked session identifiers (JTIs) read on every
authenticated request. The relational ``revoked_sessions`` table is the
authoritative copy; this set is the fast path and can be rebuilt from it
with ``sync``.

Failure semantics differ per operation:

- ``is_revoked`` never guesses. A failed lookup is ``UNKNOWN`` and the
  caller chooses its own policy.
- ``revoke`` and ``sync`` raise ``RedisError`` to the caller, which rolls
  back its pending database write for ``revoke``.
- ``health_check`` reports False instead of raising.

``sync`` writes the new contents to a scratch key and RENAMEs it over the
live key. RENAME is a single command, so readers see either the old set or
the new one and never an empty set in between.
"""

import uuid
from collections.abc import Iterable
from datetime import timedelta
from enum import StrEnum

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger()

REVOKED_SET_KEY = "session:revoked"
SYNC_KEY_PREFIX = "session:revoked:sync:"
HEALTH_KEY = "session:ledger:health"
DEFAULT_TTL = timedelta(days=30)

_SADD_BATCH_SIZE = 1000


class RevocationStatus(StrEnum):
    """Answer to "is this session revoked?"."""

    REVOKED = "revoked"
    ACTIVE = "active"
    UNKNOWN = "unknown"


class SessionRevocationLedger:
    """Distributed blacklist of revoked session identifiers.

    Args:
        client: Explicitly constructed Redis client.
        ttl: Rolling TTL re-applied to the whole set on every write. Must be
            at least the maximum natural session lifetime.
    """

    def __init__(self, client: aioredis.Redis, *, ttl: timedelta = DEFAULT_TTL):
        self._client = client
        self.ttl = ttl

    @property
    def _ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    async def revoke(self, session_ids: str | Iterable[str]) -> int:
        """Add one or more session ids to the blacklist.

        Idempotent: ids already present are left as they are. The TTL is
        refreshed even when nothing new was added.

        Args:
            session_ids: A single id or an iterable of ids.

        Returns:
            Number of ids newly added.

        Raises:
            RedisError: Ledger unreachable.
        """
        ids = [session_ids] if isinstance(session_ids, str) else list(session_ids)
        if not ids:
            return 0
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.sadd(REVOKED_SET_KEY, *ids)
            pipe.expire(REVOKED_SET_KEY, self._ttl_seconds)
            added, _ = await pipe.execute()
        logger.info("sessions_revoked", requested=len(ids), added=added)
        return int(added)

    async def is_revoked(self, session_id: str) -> RevocationStatus:
        """Check a session id against the blacklist.

        Returns:
            REVOKED or ACTIVE, or UNKNOWN when the lookup itself failed.
        """
        try:
            member = await self._client.sismember(REVOKED_SET_KEY, session_id)
        except RedisError as exc:
            logger.warning(
                "revocation_check_failed",
                error_type=type(exc).__name__,
            )
            return RevocationStatus.UNKNOWN
        return RevocationStatus.REVOKED if member else RevocationStatus.ACTIVE

    async def sync(self, revoked_ids: Iterable[str]) -> int:
        """Replace the blacklist wholesale with an authoritative set.

        Args:
            revoked_ids: Every session id that must be reported as revoked.

        Returns:
            Size of the new set.

        Raises:
            RedisError: Ledger unreachable. The live set is left untouched
                unless the final RENAME succeeded.
        """
        ids = sorted(set(revoked_ids))
        if not ids:
            await self._client.delete(REVOKED_SET_KEY)
            logger.info("revocation_ledger_synced", size=0)
            return 0

        scratch_key = f"{SYNC_KEY_PREFIX}{uuid.uuid4().hex}"
        try:
            async with self._client.pipeline(transaction=False) as pipe:
                for start in range(0, len(ids), _SADD_BATCH_SIZE):
                    pipe.sadd(scratch_key, *ids[start : start + _SADD_BATCH_SIZE])
                pipe.expire(scratch_key, self._ttl_seconds)
                await pipe.execute()
            await self._client.rename(scratch_key, REVOKED_SET_KEY)
        except RedisError:
            await self._discard(scratch_key)
            raise
        logger.info("revocation_ledger_synced", size=len(ids))
        return len(ids)

    async def _discard(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError:
            logger.warning("revocation_sync_cleanup_failed", key=key)

    async def health_check(self) -> bool:
        """Round-trip a short-lived write and read."""
        token = uuid.uuid4().hex
        try:
            await self._client.set(HEALTH_KEY, token, ex=10)
            return await self._client.get(HEALTH_KEY) == token
        except RedisError as exc:
            logger.warning("ledger_health_check_failed", error_type=type(exc).__name__)
            return False

    async def count(self) -> int:
        """Cardinality of the blacklist.

        Raises:
            RedisError: Ledger unreachable.
        """
        return int(await self._client.scard(REVOKED_SET_KEY))
