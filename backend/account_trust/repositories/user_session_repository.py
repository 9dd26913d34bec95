"""Repositories for UserSession and the RevokedSession blacklist.

Revoking a session is two writes in the caller's transaction: the active row
is deleted from user_sessions and its JTI is appended to revoked_sessions.
The blacklist is append-only (ON CONFLICT DO NOTHING) so repeated revokes of
the same JTI are harmless.
"""

import uuid
from collections.abc import Iterable
from datetime import UTC, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from account_trust.models.user_session import RevokedSession, UserSession


class UserSessionRepository:
    """Stateless repository for UserSession table operations.

    All methods are static, no instance state.
    """

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        jti: str,
        expires_at: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> UserSession:
        """Record a new signed-in session.

        Args:
            db: Async database session.
            user_id: Owning user.
            jti: Session identifier from the session JWT.
            expires_at: Natural credential expiry.
            user_agent: Raw User-Agent header.
            ip_address: Client address.

        Returns:
            Created UserSession.
        """
        session = UserSession(
            user_id=user_id,
            jti=jti,
            expires_at=expires_at,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        db.add(session)
        await db.flush()
        await db.refresh(session)
        return session

    @staticmethod
    async def get_for_user(
        db: AsyncSession,
        *,
        session_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> UserSession | None:
        """Fetch a session only if it belongs to the given user.

        Args:
            db: Async database session.
            session_id: UserSession primary key.
            user_id: Expected owner.

        Returns:
            UserSession if it exists and is owned by user_id, None otherwise.
        """
        stmt = select(UserSession).where(
            UserSession.id == session_id,
            UserSession.user_id == user_id,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_for_user(
        db: AsyncSession,
        user_id: uuid.UUID,
        *,
        except_jti: str | None = None,
    ) -> list[UserSession]:
        """List a user's active sessions, optionally skipping one JTI."""
        stmt = select(UserSession).where(UserSession.user_id == user_id)
        if except_jti is not None:
            stmt = stmt.where(UserSession.jti != except_jti)
        result = await db.execute(stmt.order_by(UserSession.created_at.asc()))
        return list(result.scalars().all())

    @staticmethod
    async def delete_by_ids(
        db: AsyncSession, session_ids: Iterable[uuid.UUID]
    ) -> int:
        """Delete sessions by primary key.

        Returns:
            Number of deleted rows.
        """
        ids = list(session_ids)
        if not ids:
            return 0
        stmt = delete(UserSession).where(UserSession.id.in_(ids))
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count

    @staticmethod
    async def touch(db: AsyncSession, jti: str) -> bool:
        """Set last_active_at to now for the session with this JTI.

        Returns:
            True if the session exists.
        """
        stmt = (
            update(UserSession)
            .where(UserSession.jti == jti)
            .values(last_active_at=datetime.now(UTC))
        )
        result = await db.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]

    @staticmethod
    async def delete_expired(db: AsyncSession) -> int:
        """Delete sessions past their natural expiry (periodic cleanup)."""
        stmt = delete(UserSession).where(UserSession.expires_at < datetime.now(UTC))
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count


class RevokedSessionRepository:
    """Stateless repository for the revoked_sessions blacklist.

    All methods are static, no instance state.
    """

    @staticmethod
    async def add_many(
        db: AsyncSession,
        sessions: Iterable[UserSession],
    ) -> None:
        """Blacklist the JTIs of the given sessions.

        Already-blacklisted JTIs are skipped, not errors.

        Args:
            db: Async database session.
            sessions: Sessions being revoked.
        """
        rows = [
            {
                "jti": s.jti,
                "user_id": s.user_id,
                "expires_at": s.expires_at,
            }
            for s in sessions
        ]
        if not rows:
            return
        stmt = insert(RevokedSession).values(rows).on_conflict_do_nothing(
            index_elements=["jti"]
        )
        await db.execute(stmt)

    @staticmethod
    async def is_revoked(db: AsyncSession, jti: str) -> bool:
        """Check whether a JTI is on the blacklist."""
        stmt = select(RevokedSession.jti).where(RevokedSession.jti == jti)
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def list_active_jtis(db: AsyncSession) -> list[str]:
        """Return every blacklisted JTI whose credential has not yet expired.

        This is the authoritative set the key-value ledger is rebuilt from.
        """
        stmt = select(RevokedSession.jti).where(
            RevokedSession.expires_at > datetime.now(UTC)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def delete_expired(db: AsyncSession) -> int:
        """Drop blacklist rows whose credential would have expired anyway."""
        stmt = delete(RevokedSession).where(
            RevokedSession.expires_at <= datetime.now(UTC)
        )
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count
