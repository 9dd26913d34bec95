"""Session management on top of the revocation ledger.

Revocation writes go to PostgreSQL (delete the active row, append the JTI to
``revoked_sessions``) and to the Redis ledger before the caller commits. A
ledger write failure propagates as ``RedisError`` so the caller rolls the
database back: a revoke either lands in both stores or in neither, and the
ledger never answers ACTIVE for a session the database considers revoked.
``is_session_revoked`` falls back to the table only when the ledger cannot
answer at all.
"""

import logging
import uuid
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from account_trust.models.user_session import UserSession
from account_trust.repositories.user_session_repository import (
    RevokedSessionRepository,
    UserSessionRepository,
)
from account_trust.services import single_use_tokens
from account_trust.services.activity_throttle import ActivityThrottle
from account_trust.services.session_ledger import (
    RevocationStatus,
    SessionRevocationLedger,
)

logger = logging.getLogger(__name__)


async def _revoke(
    db: AsyncSession,
    ledger: SessionRevocationLedger,
    sessions: Sequence[UserSession],
) -> int:
    if not sessions:
        return 0
    jtis = [s.jti for s in sessions]
    await RevokedSessionRepository.add_many(db, sessions)
    await UserSessionRepository.delete_by_ids(db, [s.id for s in sessions])
    # Raises RedisError; the caller must roll back instead of committing.
    await ledger.revoke(jtis)
    return len(jtis)


async def revoke_session(
    db: AsyncSession,
    ledger: SessionRevocationLedger,
    *,
    user_id: uuid.UUID,
    session_id: uuid.UUID,
) -> bool:
    """Revoke one of the user's own sessions.

    Args:
        db: Async database session. The caller commits.
        ledger: Revocation ledger.
        user_id: Authenticated user.
        session_id: UserSession primary key.

    Returns:
        False if no such session belongs to the user (nothing is changed).

    Raises:
        RedisError: Ledger write failed. The database changes are pending
            and must be rolled back.
    """
    session = await UserSessionRepository.get_for_user(
        db, session_id=session_id, user_id=user_id
    )
    if session is None:
        return False
    await _revoke(db, ledger, [session])
    logger.info("Session revoked", extra={"user_id": str(user_id)})
    return True


async def revoke_all_sessions(
    db: AsyncSession,
    ledger: SessionRevocationLedger,
    user_id: uuid.UUID,
    *,
    except_jti: str | None = None,
) -> int:
    """Revoke every session of a user, optionally keeping the current one.

    Returns:
        Number of sessions revoked.

    Raises:
        RedisError: Ledger write failed; roll back instead of committing.
    """
    sessions = await UserSessionRepository.list_for_user(
        db, user_id, except_jti=except_jti
    )
    revoked = await _revoke(db, ledger, sessions)
    logger.info(
        "Sessions revoked",
        extra={"user_id": str(user_id), "count": revoked},
    )
    return revoked


async def record_activity(
    db: AsyncSession, throttle: ActivityThrottle, jti: str
) -> bool:
    """Persist session liveness at most once per throttle window.

    Returns:
        True if last_active_at was written.
    """
    if not await throttle.should_track(jti):
        return False
    return await UserSessionRepository.touch(db, jti)


async def is_session_revoked(
    db: AsyncSession, ledger: SessionRevocationLedger, jti: str
) -> bool:
    """Check revocation, asking the database when the ledger cannot answer."""
    status = await ledger.is_revoked(jti)
    if status is RevocationStatus.UNKNOWN:
        logger.info("Revocation ledger unavailable, checking database")
        return await RevokedSessionRepository.is_revoked(db, jti)
    return status is RevocationStatus.REVOKED


async def rebuild_ledger(db: AsyncSession, ledger: SessionRevocationLedger) -> int:
    """Replace the ledger's contents with the unexpired blacklist rows.

    Returns:
        Size of the rebuilt ledger.

    Raises:
        RedisError: Ledger unreachable.
    """
    jtis = await RevokedSessionRepository.list_active_jtis(db)
    return await ledger.sync(jtis)


async def purge_expired(db: AsyncSession) -> dict[str, int]:
    """Delete expired tokens, sessions and blacklist rows.

    Returns:
        Deleted row counts keyed by table.
    """
    counts = {
        "single_use_tokens": await single_use_tokens.purge_expired(db),
        "user_sessions": await UserSessionRepository.delete_expired(db),
        "revoked_sessions": await RevokedSessionRepository.delete_expired(db),
    }
    logger.info("Expired rows purged", extra=counts)
    return counts
