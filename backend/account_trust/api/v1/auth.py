"""Anonymous account trust endpoints.

Endpoints:
- GET /auth/verify: consume an emailed link (verification, email change,
  account deletion)
- POST /auth/password-reset/confirm: consume a reset link with the new
  password
- POST /auth/verification/resend: resend the verification email
- POST /auth/password-reset: request a reset email

All are gated by the public rate-limit scope (client IP). The request
endpoints are also gated per target address inside the router.
"""

from typing import Annotated, Literal

from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from account_trust.api.deps import DbSession, PublicRateLimit, Verifier
from account_trust.api.v1.results import respond
from account_trust.core.errors import ValidationError
from account_trust.core.responses import DataResponse

router = APIRouter(dependencies=[PublicRateLimit])

_LINK_TYPES = Literal["verification", "email-change", "account-deletion"]


# ===================================================================
# Request models
# ===================================================================


class EmailRequest(BaseModel):
    """Request body carrying only a target address."""

    model_config = ConfigDict(extra="forbid")

    email: EmailStr


class PasswordResetConfirmRequest(BaseModel):
    """Request body for POST /auth/password-reset/confirm."""

    model_config = ConfigDict(extra="forbid")

    token: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)


# ===================================================================
# GET /auth/verify
# ===================================================================


@router.get("/verify")
async def verify_link(
    db: DbSession,
    verifier: Verifier,
    token: Annotated[str, Query(max_length=128)] = "",
    link_type: Annotated[_LINK_TYPES | None, Query(alias="type")] = None,
) -> DataResponse[dict]:
    """Consume a single-use link.

    Password reset links are rejected here: they need a new password and
    go through POST /auth/password-reset/confirm.
    """
    if not token:
        raise ValidationError("Missing verification token.")
    result = await verifier.verify(db, token, link_type)
    return await respond(db, result)


# ===================================================================
# POST /auth/password-reset/confirm
# ===================================================================


@router.post("/password-reset/confirm")
async def confirm_password_reset(
    body: PasswordResetConfirmRequest,
    db: DbSession,
    verifier: Verifier,
) -> DataResponse[dict]:
    """Set a new password from a reset link and sign out every device."""
    result = await verifier.verify(
        db, body.token, "password-reset", new_password=body.new_password
    )
    return await respond(db, result)


# ===================================================================
# POST /auth/verification/resend
# ===================================================================


@router.post("/verification/resend")
async def resend_verification(
    body: EmailRequest,
    db: DbSession,
    verifier: Verifier,
) -> DataResponse[dict]:
    """Resend the verification link. Same response whether or not the
    account exists."""
    result = await verifier.request_verification_email(db, body.email)
    return await respond(db, result)


# ===================================================================
# POST /auth/password-reset
# ===================================================================


@router.post("/password-reset")
async def request_password_reset(
    body: EmailRequest,
    db: DbSession,
    verifier: Verifier,
) -> DataResponse[dict]:
    """Email a password reset link. Same response whether or not the
    account exists."""
    result = await verifier.request_password_reset(db, body.email)
    return await respond(db, result)
