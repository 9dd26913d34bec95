"""Repository for User reads and account-trust mutations.

Provides database access for the users table. Email changes are kept out of
the generic update() so they can only happen through the confirmed
email-change flow.
"""

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from account_trust.models.user import User

# Fields that may be updated via UserRepository.update().
# Security: Never add 'id', 'email', 'created_at', or 'updated_at'.
# - id: primary key, immutable
# - email: unique identity, changed only via change_email()
# - created_at/updated_at: server-managed timestamps
_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {
        "name",
        "email_verified",
        "password_hash",
        "two_factor_enabled",
        "deletion_scheduled_at",
    }
)


class UserRepository:
    """Stateless repository for User table operations.

    All methods are static, no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def get_by_id(db: AsyncSession, user_id: uuid.UUID) -> User | None:
        """Fetch a user by primary key.

        Args:
            db: Async database session.
            user_id: UUID primary key.

        Returns:
            User if found, None otherwise.
        """
        return await db.get(User, user_id)

    @staticmethod
    async def get_by_email(db: AsyncSession, email: str) -> User | None:
        """Fetch a user by email address (case-insensitive).

        Args:
            db: Async database session.
            email: Email address to look up.

        Returns:
            User if found, None otherwise.
        """
        stmt = select(User).where(User.email == email.strip().lower())
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def update(
        db: AsyncSession,
        user_id: uuid.UUID,
        **kwargs: str | datetime | bool | None,
    ) -> User | None:
        """Update user fields.

        Only fields in _UPDATABLE_FIELDS are allowed. Unknown field names
        raise ValueError.

        Args:
            db: Async database session.
            user_id: UUID of the user to update.
            **kwargs: Field names and values to update.

        Returns:
            Updated User if found, None if user does not exist.

        Raises:
            ValueError: If an unknown field name is passed.
        """
        unknown = set(kwargs) - _UPDATABLE_FIELDS
        if unknown:
            msg = f"Unknown fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        user = await db.get(User, user_id)
        if user is None:
            return None

        for field, value in kwargs.items():
            setattr(user, field, value)

        await db.flush()
        await db.refresh(user)
        return user

    @staticmethod
    async def change_email(
        db: AsyncSession,
        user_id: uuid.UUID,
        *,
        new_email: str,
        verified_at: datetime,
    ) -> User | None:
        """Replace a user's email and mark it verified in one flush.

        Only called after an email-change token has been consumed, which
        proves control of the new address.

        Args:
            db: Async database session.
            user_id: UUID of the user.
            new_email: Confirmed new address (normalized to lowercase).
            verified_at: Verification timestamp for the new address.

        Returns:
            Updated User, or None if the user does not exist.

        Raises:
            sqlalchemy.exc.IntegrityError: If another account took the
                address after the conflict check.
        """
        user = await db.get(User, user_id)
        if user is None:
            return None
        user.email = new_email.strip().lower()
        user.email_verified = verified_at
        await db.flush()
        await db.refresh(user)
        return user
