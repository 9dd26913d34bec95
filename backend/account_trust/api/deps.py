"""Shared dependencies for API endpoints.

Authentication: the session JWT lives in an httpOnly cookie and carries a
``jti``. Every authenticated request checks that JTI against the session
revocation ledger. When the ledger cannot answer (UNKNOWN), the
``revoked_sessions`` table decides instead, so a Redis outage neither lets
revoked sessions back in nor locks everybody out.

The ledger, throttle and rate limiter are built once in the application
lifespan and read from ``app.state``.
"""

import uuid
from dataclasses import dataclass
from typing import Annotated

import jwt
from fastapi import BackgroundTasks, Depends, Request
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from account_trust.core.auth import decode_jwt
from account_trust.core.config import settings
from account_trust.core.database import get_db
from account_trust.core.errors import RateLimitedError, UnauthorizedError
from account_trust.services import session_service
from account_trust.services.activity_throttle import ActivityThrottle
from account_trust.services.rate_limiter import PUBLIC, RateLimiter
from account_trust.services.session_ledger import SessionRevocationLedger
from account_trust.services.verification import VerificationRouter

_TOO_MANY_REQUESTS_MSG = "You are making too many requests. Please try again shortly."


@dataclass(frozen=True)
class SessionClaims:
    """Identity of the authenticated request."""

    user_id: uuid.UUID
    jti: str


def get_ledger(request: Request) -> SessionRevocationLedger:
    return request.app.state.ledger


def get_throttle(request: Request) -> ActivityThrottle:
    return request.app.state.throttle


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


DbSession = Annotated[AsyncSession, Depends(get_db)]
Ledger = Annotated[SessionRevocationLedger, Depends(get_ledger)]
Throttle = Annotated[ActivityThrottle, Depends(get_throttle)]
Limiter = Annotated[RateLimiter, Depends(get_rate_limiter)]


async def get_current_session(
    request: Request,
    db: DbSession,
    ledger: Ledger,
) -> SessionClaims:
    """Authenticate the request from its session cookie.

    Validation steps:
    1. Read JWT from cookie
    2. Decode + verify signature, exp, aud, iss (HS256)
    3. Extract sub as UUID and jti
    4. Reject if the jti is revoked (ledger, or database when the ledger
       is unavailable)

    Raises:
        UnauthorizedError: For any auth failure. The message never says why.
    """
    token = request.cookies.get(settings.auth_cookie_name)
    if not token:
        raise UnauthorizedError()

    try:
        payload = decode_jwt(token, settings.auth_secret.get_secret_value())
        user_id = uuid.UUID(payload["sub"])
        jti = str(payload["jti"])
    except (jwt.InvalidTokenError, KeyError, ValueError) as exc:
        raise UnauthorizedError() from exc

    if await session_service.is_session_revoked(db, ledger, jti):
        raise UnauthorizedError()

    return SessionClaims(user_id=user_id, jti=jti)


CurrentSession = Annotated[SessionClaims, Depends(get_current_session)]


async def enforce_public_rate_limit(request: Request, limiter: Limiter) -> None:
    """Gate an anonymous endpoint on the public scope, keyed by client IP.

    Raises:
        RateLimitedError: Window exhausted for this IP.
    """
    result = await limiter.attempt(PUBLIC, get_remote_address(request))
    if not result.allowed:
        raise RateLimitedError(_TOO_MANY_REQUESTS_MSG, retry_after=result.retry_after)


PublicRateLimit = Depends(enforce_public_rate_limit)


def get_verification_router(
    background_tasks: BackgroundTasks,
    ledger: Ledger,
    limiter: Limiter,
) -> VerificationRouter:
    """Router whose emails are sent as background tasks after the response."""
    return VerificationRouter(
        ledger=ledger,
        limiter=limiter,
        dispatch_email=background_tasks.add_task,
    )


Verifier = Annotated[VerificationRouter, Depends(get_verification_router)]
