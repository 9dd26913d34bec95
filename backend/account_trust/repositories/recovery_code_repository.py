"""Repository for RecoveryCode operations."""

import uuid
from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from account_trust.models.recovery_code import RecoveryCode


class RecoveryCodeRepository:
    """Stateless repository for RecoveryCode table operations.

    All methods are static, no instance state.
    """

    @staticmethod
    async def find_unused_for_user(
        db: AsyncSession, user_id: uuid.UUID
    ) -> list[RecoveryCode]:
        """Fetch a user's unused codes, oldest first."""
        stmt = (
            select(RecoveryCode)
            .where(RecoveryCode.user_id == user_id, RecoveryCode.used.is_(False))
            .order_by(RecoveryCode.created_at.asc(), RecoveryCode.id.asc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_for_user(
        db: AsyncSession, user_id: uuid.UUID
    ) -> list[RecoveryCode]:
        """Fetch all of a user's codes, oldest first."""
        stmt = (
            select(RecoveryCode)
            .where(RecoveryCode.user_id == user_id)
            .order_by(RecoveryCode.created_at.asc(), RecoveryCode.id.asc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def insert_codes(
        db: AsyncSession,
        user_id: uuid.UUID,
        code_hashes: Sequence[str],
    ) -> None:
        """Store a batch of hashed codes for a user.

        Args:
            db: Async database session.
            user_id: Owning user.
            code_hashes: bcrypt hashes, one per code.
        """
        db.add_all(
            RecoveryCode(user_id=user_id, code_hash=code_hash)
            for code_hash in code_hashes
        )
        await db.flush()

    @staticmethod
    async def delete_all_for_user(db: AsyncSession, user_id: uuid.UUID) -> int:
        """Hard-delete a user's entire code set.

        Returns:
            Number of deleted rows.
        """
        stmt = delete(RecoveryCode).where(RecoveryCode.user_id == user_id)
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count

    @staticmethod
    async def mark_used(db: AsyncSession, code_id: uuid.UUID) -> bool:
        """Flip a code to used, only if it is still unused.

        The WHERE clause carries the ``used = false`` condition, so of two
        concurrent callers for the same code exactly one updates a row.

        Args:
            db: Async database session.
            code_id: RecoveryCode primary key.

        Returns:
            True if this call spent the code.
        """
        stmt = (
            update(RecoveryCode)
            .where(RecoveryCode.id == code_id, RecoveryCode.used.is_(False))
            .values(used=True, used_at=datetime.now(UTC))
        )
        result = await db.execute(stmt)
        return result.rowcount == 1  # type: ignore[attr-defined]
