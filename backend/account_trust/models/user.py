"""User model - the identity every token, code and session is scoped to.

Only the columns the account trust flows read or write are mapped here.
"""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from account_trust.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from account_trust.models.recovery_code import RecoveryCode
    from account_trust.models.user_session import UserSession

_CASCADE_ALL_DELETE_ORPHAN = "all, delete-orphan"


class User(Base, TimestampMixin):
    """User account.

    Attributes:
        id: UUID primary key.
        email: Unique email address (stored lowercase).
        name: Display name.
        email_verified: Timestamp when email was verified. NULL = unverified.
        password_hash: bcrypt hash. NULL for OAuth-only users.
        two_factor_enabled: Whether a second factor is required at sign-in.
        deletion_scheduled_at: Set once account deletion is confirmed.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    email_verified: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    password_hash: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    two_factor_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
        default=False,
    )
    deletion_scheduled_at: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )

    # Relationships
    recovery_codes: Mapped[list["RecoveryCode"]] = relationship(
        "RecoveryCode",
        back_populates="user",
        cascade=_CASCADE_ALL_DELETE_ORPHAN,
    )
    sessions: Mapped[list["UserSession"]] = relationship(
        "UserSession",
        back_populates="user",
        cascade=_CASCADE_ALL_DELETE_ORPHAN,
    )
