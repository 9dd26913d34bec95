"""Active session model and the relational revocation blacklist."""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, String, Text, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from account_trust.models.base import Base

if TYPE_CHECKING:
    from account_trust.models.user import User


class UserSession(Base):
    """A signed-in device.

    Attributes:
        id: UUID primary key (what account settings shows and revokes).
        user_id: Owning user.
        jti: Session identifier embedded in the session JWT.
        user_agent: Raw User-Agent header at sign-in.
        ip_address: Client address at sign-in.
        created_at: Sign-in time.
        last_active_at: Last throttled activity write.
        expires_at: Natural credential expiry.
    """

    __tablename__ = "user_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    jti: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
    )
    user_agent: Mapped[str | None] = mapped_column(Text(), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    last_active_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    user: Mapped["User"] = relationship("User", back_populates="sessions")


class RevokedSession(Base):
    """Authoritative record of a revoked session identifier.

    The key-value ledger is a cache of this table; ``sync`` rebuilds it
    from the rows whose ``expires_at`` is still in the future.

    Attributes:
        jti: Revoked session identifier (primary key, so inserts are
            idempotent with ON CONFLICT DO NOTHING).
        user_id: Owner at revocation time. Nullable so the row survives
            the user's deletion.
        revoked_at: Revocation time.
        expires_at: When the credential would have expired on its own.
    """

    __tablename__ = "revoked_sessions"

    jti: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    revoked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
