"""Authenticated account security endpoints.

Endpoints:
- POST /account/email-change: send a confirmation link to a new address
- POST /account/password: change the password, sign out other devices
- POST /account/deletion-request: send an account deletion link
- GET /account/recovery-codes: recovery code status (never the codes)
- POST /account/recovery-codes/regenerate: replace the code set
- GET /account/sessions: the user's active sessions
- POST /account/sessions/{session_id}/revoke: sign out one device
- POST /account/sessions/revoke-all: sign out every other device
- POST /account/sessions/track: throttled last-active update
"""

import logging
import uuid
from dataclasses import asdict
from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from redis.exceptions import RedisError

from account_trust.api.deps import (
    CurrentSession,
    DbSession,
    Ledger,
    Limiter,
    Throttle,
    Verifier,
)
from account_trust.api.v1.results import respond
from account_trust.core.errors import (
    NotFoundError,
    RateLimitedError,
    ServiceUnavailableError,
)
from account_trust.core.responses import DataResponse
from account_trust.repositories.user_session_repository import (
    UserSessionRepository,
)
from account_trust.services import recovery_codes, session_service
from account_trust.services.rate_limiter import PRIVATE

logger = logging.getLogger(__name__)

router = APIRouter()

_SESSION_NOT_FOUND_MSG = "Session not found."


# ===================================================================
# Request models
# ===================================================================


class EmailChangeRequest(BaseModel):
    """Request body for POST /account/email-change."""

    model_config = ConfigDict(extra="forbid")

    new_email: EmailStr
    current_password: str = Field(..., min_length=1, max_length=128)


class PasswordChangeRequest(BaseModel):
    """Request body for POST /account/password.

    ``new_password`` strength is checked by the service so the message
    matches the password reset flow.
    """

    model_config = ConfigDict(extra="forbid")

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)


class DeletionRequest(BaseModel):
    """Request body for POST /account/deletion-request.

    ``password`` is required for accounts that have one.
    """

    model_config = ConfigDict(extra="forbid")

    password: str | None = Field(default=None, max_length=128)


# ===================================================================
# Email change / password / deletion
# ===================================================================


@router.post("/email-change")
async def request_email_change(
    body: EmailChangeRequest,
    session: CurrentSession,
    db: DbSession,
    verifier: Verifier,
) -> DataResponse[dict]:
    """Start an email change. The address changes only after the link in the
    confirmation email is used."""
    result = await verifier.request_email_change(
        db, session.user_id, body.new_email, body.current_password
    )
    return await respond(db, result)


@router.post("/password")
async def change_password(
    body: PasswordChangeRequest,
    session: CurrentSession,
    db: DbSession,
    verifier: Verifier,
) -> DataResponse[dict]:
    """Change the password. Every other device is signed out."""
    result = await verifier.change_password(
        db,
        session.user_id,
        body.current_password,
        body.new_password,
        current_jti=session.jti,
    )
    return await respond(db, result)


@router.post("/deletion-request")
async def request_account_deletion(
    body: DeletionRequest,
    session: CurrentSession,
    db: DbSession,
    verifier: Verifier,
) -> DataResponse[dict]:
    """Email a link that confirms account deletion."""
    result = await verifier.request_account_deletion(
        db, session.user_id, body.password
    )
    return await respond(db, result)


# ===================================================================
# Recovery codes
# ===================================================================


@router.get("/recovery-codes")
async def get_recovery_code_status(
    session: CurrentSession,
    db: DbSession,
) -> DataResponse[dict]:
    """Counts and slot status of the user's recovery codes."""
    status = await recovery_codes.status(db, session.user_id)
    return DataResponse(data=asdict(status))


@router.post("/recovery-codes/regenerate")
async def regenerate_recovery_codes(
    session: CurrentSession,
    db: DbSession,
    verifier: Verifier,
) -> DataResponse[dict]:
    """Replace every recovery code. The new codes are shown only once."""
    result = await verifier.regenerate_recovery_codes(db, session.user_id)
    return await respond(db, result)


# ===================================================================
# Sessions
# ===================================================================


@router.get("/sessions")
async def list_sessions(
    session: CurrentSession,
    db: DbSession,
) -> DataResponse[list[dict]]:
    """The user's unexpired sessions, oldest first. ``current`` marks the one
    making this request."""
    now = datetime.now(UTC)
    sessions = await UserSessionRepository.list_for_user(db, session.user_id)
    return DataResponse(
        data=[
            {
                "id": str(s.id),
                "user_agent": s.user_agent,
                "ip_address": s.ip_address,
                "created_at": s.created_at.isoformat(),
                "last_active_at": s.last_active_at.isoformat(),
                "expires_at": s.expires_at.isoformat(),
                "current": s.jti == session.jti,
            }
            for s in sessions
            if s.expires_at > now
        ]
    )


@router.post("/sessions/{session_id}/revoke")
async def revoke_session(
    session_id: uuid.UUID,
    session: CurrentSession,
    db: DbSession,
    ledger: Ledger,
) -> DataResponse[dict]:
    """Sign out one of the user's devices.

    Another user's session is reported as not found and left untouched.
    Nothing is committed unless the ledger accepted the revocation.
    """
    try:
        revoked = await session_service.revoke_session(
            db, ledger, user_id=session.user_id, session_id=session_id
        )
    except RedisError as exc:
        logger.error(
            "Session revoke failed",
            extra={"user_id": str(session.user_id), "error_type": type(exc).__name__},
        )
        await db.rollback()
        raise ServiceUnavailableError() from exc
    if not revoked:
        raise NotFoundError(_SESSION_NOT_FOUND_MSG)
    await db.commit()
    return DataResponse(data={"revoked": True})


@router.post("/sessions/revoke-all")
async def revoke_other_sessions(
    session: CurrentSession,
    db: DbSession,
    ledger: Ledger,
    limiter: Limiter,
) -> DataResponse[dict]:
    """Sign out every device except the current one."""
    limit = await limiter.attempt(PRIVATE, str(session.user_id))
    if not limit.allowed:
        raise RateLimitedError(
            "You are making too many requests. Please try again shortly.",
            retry_after=limit.retry_after,
        )
    try:
        count = await session_service.revoke_all_sessions(
            db, ledger, session.user_id, except_jti=session.jti
        )
    except RedisError as exc:
        logger.error(
            "Session revoke failed",
            extra={"user_id": str(session.user_id), "error_type": type(exc).__name__},
        )
        await db.rollback()
        raise ServiceUnavailableError() from exc
    await db.commit()
    return DataResponse(data={"revoked": count})


@router.post("/sessions/track")
async def track_activity(
    session: CurrentSession,
    db: DbSession,
    throttle: Throttle,
) -> DataResponse[dict]:
    """Record that the current session is active (at most once per window)."""
    tracked = await session_service.record_activity(db, throttle, session.jti)
    await db.commit()
    return DataResponse(data={"tracked": tracked})
