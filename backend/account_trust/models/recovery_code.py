"""Two-factor recovery code model.

Rows are the audit trail of backup-code use: a code flips to used exactly
once and is only ever deleted when the whole set is regenerated.
"""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, String, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from account_trust.models.base import Base

if TYPE_CHECKING:
    from account_trust.models.user import User


class RecoveryCode(Base):
    """One hashed backup code.

    Attributes:
        id: UUID primary key.
        user_id: Owning user.
        code_hash: bcrypt hash of the normalized code.
        used: Whether the code has been spent.
        used_at: When it was spent.
        created_at: Generation timestamp (codes are listed in this order).
    """

    __tablename__ = "recovery_codes"

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
    code_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    used: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
        default=False,
    )
    used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    user: Mapped["User"] = relationship("User", back_populates="recovery_codes")
