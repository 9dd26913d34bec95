"""Repository for SingleUseToken operations.

Tokens are stored as SHA-256 hashes with a unique (identifier, kind) pair.
replace() is the only write path: an upsert on that pair, so a concurrent
issuer racing on the same pair ends with one row instead of two.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from account_trust.models.single_use_token import SingleUseToken


class SingleUseTokenRepository:
    """Stateless repository for SingleUseToken table operations.

    All methods are static, no instance state.
    """

    @staticmethod
    async def find_by_token_hash(
        db: AsyncSession,
        token_hash: str,
    ) -> SingleUseToken | None:
        """Look up a token by its hash.

        Args:
            db: Async database session.
            token_hash: SHA-256 hash of the plain token.

        Returns:
            SingleUseToken if found, None otherwise.
        """
        stmt = select(SingleUseToken).where(SingleUseToken.token == token_hash)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def delete_by_identifier_and_kind(
        db: AsyncSession,
        *,
        identifier: str,
        kind: str,
    ) -> int:
        """Delete every token for an (identifier, kind) pair.

        Args:
            db: Async database session.
            identifier: Email address or user id.
            kind: Token kind.

        Returns:
            Number of deleted rows.
        """
        stmt = delete(SingleUseToken).where(
            SingleUseToken.identifier == identifier,
            SingleUseToken.kind == kind,
        )
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count

    @staticmethod
    async def replace(
        db: AsyncSession,
        *,
        identifier: str,
        kind: str,
        token_hash: str,
        expires: datetime,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """Insert a token, overwriting any live row for the same pair.

        Args:
            db: Async database session.
            identifier: Email address or user id.
            kind: Token kind.
            token_hash: SHA-256 hash of the new plain token.
            expires: Token expiry timestamp.
            payload: Kind-specific data.
        """
        stmt = insert(SingleUseToken).values(
            identifier=identifier,
            kind=kind,
            token=token_hash,
            expires=expires,
            payload=payload,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_single_use_tokens_identifier_kind",
            set_={
                "token": stmt.excluded.token,
                "expires": stmt.excluded.expires,
                "payload": stmt.excluded.payload,
                "created_at": datetime.now(UTC),
            },
        )
        await db.execute(stmt)

    @staticmethod
    async def delete(db: AsyncSession, token_hash: str) -> bool:
        """Delete a single token by hash.

        Args:
            db: Async database session.
            token_hash: SHA-256 hash of the plain token.

        Returns:
            True if a row was deleted. False means a concurrent consumer
            already took it.
        """
        stmt = delete(SingleUseToken).where(SingleUseToken.token == token_hash)
        result = await db.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]

    @staticmethod
    async def delete_expired(db: AsyncSession) -> int:
        """Delete all expired tokens (periodic cleanup).

        Args:
            db: Async database session.

        Returns:
            Number of deleted rows.
        """
        stmt = delete(SingleUseToken).where(
            SingleUseToken.expires < datetime.now(UTC),
        )
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count
