"""Single-use token model - verification, email change, reset, deletion.

At most one live token per (identifier, kind), enforced by a unique
constraint so that concurrent issuance cannot leave two rows behind.
The token column stores a SHA-256 hash; the plain value is never persisted.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from account_trust.models.base import Base

TOKEN_KINDS = ("verification", "email-change", "password-reset", "account-deletion")


class SingleUseToken(Base):
    """Ephemeral token gating one account flow.

    Attributes:
        token: SHA-256 hex digest of the plain token (primary key).
        identifier: Email address or user id the token is scoped to.
        kind: Flow the token belongs to (see TOKEN_KINDS).
        expires: Expiry timestamp.
        payload: Kind-specific data (e.g., ``{"new_email": ...}``).
        created_at: Issue timestamp.
    """

    __tablename__ = "single_use_tokens"
    __table_args__ = (
        UniqueConstraint(
            "identifier", "kind", name="uq_single_use_tokens_identifier_kind"
        ),
        CheckConstraint(
            "kind IN ('verification', 'email-change', 'password-reset', "
            "'account-deletion')",
            name="ck_single_use_tokens_kind",
        ),
    )

    token: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )
    identifier: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    expires: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    payload: Mapped[dict[str, Any] | None] = mapped_column(
        JSONB,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
