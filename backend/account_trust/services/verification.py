"""Verification router: orchestration for the account trust flows.

Confirm side (a token from an emailed link):
- verification: mark the email verified, send a welcome email
- email-change: move the account to the new address, end every session
- password-reset: set the new password, end every session
- account-deletion: schedule deletion, end every session

Request side: resend verification, request a password reset, request an
email change, request account deletion, change the password of a signed-in
user (other sessions are signed out), and the recovery-code actions
(sign-in with a code, regenerate the set).

Every method returns a FlowResult. Business outcomes are never raised.
Store failures (SQLAlchemyError, RedisError) are caught at this boundary,
logged with the operation name, and turned into one generic TRANSIENT
result after rolling the session back.

Email is handed to ``dispatch_email(sender, **kwargs)``. The HTTP layer
passes ``BackgroundTasks.add_task`` so sending happens after the response.
"""

import functools
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from account_trust.core import email
from account_trust.core.auth import (
    check_password,
    hash_password,
    validate_password_strength,
)
from account_trust.core.errors import ErrorKind
from account_trust.repositories.recovery_code_repository import (
    RecoveryCodeRepository,
)
from account_trust.repositories.user_repository import UserRepository
from account_trust.services import recovery_codes, session_service, single_use_tokens
from account_trust.services.rate_limiter import (
    NOTIFICATION,
    PRIVATE,
    PUBLIC,
    RateLimiter,
    RateLimitResult,
)
from account_trust.services.session_ledger import SessionRevocationLedger
from account_trust.services.single_use_tokens import (
    ConsumedToken,
    TokenFailure,
    TokenKind,
)

logger = logging.getLogger(__name__)

EmailDispatch = Callable[..., Any]

# =============================================================================
# Messages
# =============================================================================

_TRANSIENT_MSG = "Something went wrong. Please try again."
_TOO_MANY_REQUESTS_MSG = "You are making too many requests. Please try again shortly."
_RECENTLY_REQUESTED_MSG = (
    "A verification link for this email was requested recently. Please wait."
)
_USER_NOT_FOUND_MSG = "User not found."
_INCORRECT_PASSWORD_MSG = "Incorrect password. Please try again."
_INVALID_TYPE_MSG = "Invalid verification type."

_TOKEN_FAILURE_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "Invalid verification link.",
    ErrorKind.NOT_FOUND: (
        "Invalid or used verification link. Please request a new one."
    ),
    ErrorKind.EXPIRED: "This verification link has expired. Please request a new one.",
    ErrorKind.IDENTITY_GONE: "User for this verification link not found.",
    ErrorKind.CONFLICT: "Email address has been taken. Please restart the process.",
}

_RECOVERY_FORMAT_MSG = "Invalid recovery code format."
_RECOVERY_INVALID_MSG = "Invalid recovery code."
_RECOVERY_NONE_LEFT_MSG = (
    "No recovery codes available. Please use your authenticator app."
)
_TWO_FACTOR_DISABLED_MSG = "Two-factor authentication is not enabled for this account."


@dataclass(frozen=True)
class FlowResult:
    """Typed outcome of a router operation.

    Attributes:
        ok: Whether the operation succeeded.
        message: User-safe message for either outcome.
        error: Failure kind, None on success.
        data: Extra fields for the caller (e.g., ``retry_after``, ``codes``).
    """

    ok: bool
    message: str
    error: ErrorKind | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, message: str, **data: Any) -> "FlowResult":
        return cls(ok=True, message=message, data=data)

    @classmethod
    def failure(cls, error: ErrorKind, message: str, **data: Any) -> "FlowResult":
        return cls(ok=False, message=message, error=error, data=data)

    @classmethod
    def rate_limited(cls, message: str, limit: RateLimitResult) -> "FlowResult":
        return cls.failure(
            ErrorKind.RATE_LIMITED, message, retry_after=limit.retry_after
        )


def _guarded(
    operation: str,
) -> Callable[
    [Callable[..., Awaitable[FlowResult]]], Callable[..., Awaitable[FlowResult]]
]:
    """Convert store failures inside a router method to a TRANSIENT result.

    The wrapped method must take the database session as its first
    argument after ``self``.
    """

    def decorator(
        func: Callable[..., Awaitable[FlowResult]],
    ) -> Callable[..., Awaitable[FlowResult]]:
        @functools.wraps(func)
        async def wrapper(
            self: "VerificationRouter", db: AsyncSession, *args: Any, **kwargs: Any
        ) -> FlowResult:
            try:
                return await func(self, db, *args, **kwargs)
            except (SQLAlchemyError, RedisError) as exc:
                logger.error(
                    "Account trust operation failed",
                    extra={"operation": operation, "error_type": type(exc).__name__},
                    exc_info=True,
                )
                await db.rollback()
                return FlowResult.failure(ErrorKind.TRANSIENT, _TRANSIENT_MSG)

        return wrapper

    return decorator


def _token_failure(failure: TokenFailure) -> FlowResult:
    return FlowResult.failure(failure.error, _TOKEN_FAILURE_MESSAGES[failure.error])


def _parse_flow(flow: str | None) -> TokenKind | None:
    if flow is None or flow == "":
        return TokenKind.VERIFICATION
    try:
        return TokenKind(flow)
    except ValueError:
        return None


class VerificationRouter:
    """Composes the token issuer, recovery vault, ledger and rate limiter.

    Args:
        ledger: Session revocation ledger.
        limiter: Multi-scope rate limiter.
        dispatch_email: ``dispatch_email(sender, **kwargs)`` schedules one of
            the senders in ``account_trust.core.email``.
    """

    def __init__(
        self,
        *,
        ledger: SessionRevocationLedger,
        limiter: RateLimiter,
        dispatch_email: EmailDispatch,
    ) -> None:
        self._ledger = ledger
        self._limiter = limiter
        self._dispatch_email = dispatch_email

    # =========================================================================
    # Confirm side
    # =========================================================================

    @_guarded("verify")
    async def verify(
        self,
        db: AsyncSession,
        token: str,
        flow: str | None = None,
        *,
        new_password: str | None = None,
    ) -> FlowResult:
        """Consume a token from an emailed link and apply its flow.

        Args:
            db: Async database session.
            token: Plain token from the link.
            flow: Link ``type``. None means email verification.
            new_password: Required for password-reset.

        Returns:
            FlowResult.
        """
        kind = _parse_flow(flow)
        if kind is None:
            return FlowResult.failure(ErrorKind.VALIDATION, _INVALID_TYPE_MSG)

        if kind is TokenKind.PASSWORD_RESET:
            reason = validate_password_strength(new_password or "")
            if reason is not None:
                return FlowResult.failure(ErrorKind.VALIDATION, reason)

        outcome = await single_use_tokens.consume(db, token, expected_kind=kind)
        if isinstance(outcome, TokenFailure):
            logger.info(
                "Token rejected",
                extra={"kind": kind.value, "reason": outcome.error.value},
            )
            return _token_failure(outcome)

        if kind is TokenKind.VERIFICATION:
            return await self._complete_verification(db, outcome)
        if kind is TokenKind.EMAIL_CHANGE:
            return await self._complete_email_change(db, outcome)
        if kind is TokenKind.PASSWORD_RESET:
            return await self._complete_password_reset(db, outcome, new_password or "")
        return await self._complete_account_deletion(db, outcome)

    async def _complete_verification(
        self, db: AsyncSession, consumed: ConsumedToken
    ) -> FlowResult:
        user = consumed.user
        if consumed.already_satisfied:
            return FlowResult.success("Your email is already verified.")
        await UserRepository.update(db, user.id, email_verified=datetime.now(UTC))
        self._dispatch_email(email.send_welcome_email, to_email=user.email, name=user.name)
        return FlowResult.success("Email successfully verified.")

    async def _complete_email_change(
        self, db: AsyncSession, consumed: ConsumedToken
    ) -> FlowResult:
        user = consumed.user
        new_email = str(consumed.payload["new_email"]).strip().lower()
        try:
            async with db.begin_nested():
                await UserRepository.change_email(
                    db, user.id, new_email=new_email, verified_at=datetime.now(UTC)
                )
        except IntegrityError:
            # Claimed between the conflict check and the update.
            return FlowResult.failure(
                ErrorKind.CONFLICT, _TOKEN_FAILURE_MESSAGES[ErrorKind.CONFLICT]
            )
        await session_service.revoke_all_sessions(db, self._ledger, user.id)
        self._dispatch_email(
            email.send_security_notification, to_email=new_email, event="email_changed"
        )
        return FlowResult.success(
            "Your email address has been updated. Please sign in again."
        )

    async def _complete_password_reset(
        self, db: AsyncSession, consumed: ConsumedToken, new_password: str
    ) -> FlowResult:
        user = consumed.user
        await UserRepository.update(
            db, user.id, password_hash=hash_password(new_password)
        )
        await session_service.revoke_all_sessions(db, self._ledger, user.id)
        self._dispatch_email(
            email.send_security_notification,
            to_email=user.email,
            event="password_changed",
        )
        return FlowResult.success(
            "Your password has been reset. Please sign in with your new password."
        )

    async def _complete_account_deletion(
        self, db: AsyncSession, consumed: ConsumedToken
    ) -> FlowResult:
        user = consumed.user
        await UserRepository.update(
            db, user.id, deletion_scheduled_at=datetime.now(UTC)
        )
        await session_service.revoke_all_sessions(db, self._ledger, user.id)
        self._dispatch_email(
            email.send_security_notification,
            to_email=user.email,
            event="deletion_scheduled",
        )
        return FlowResult.success("Your account has been scheduled for deletion.")

    # =========================================================================
    # Request side
    # =========================================================================

    @_guarded("request_verification_email")
    async def request_verification_email(
        self, db: AsyncSession, email_address: str
    ) -> FlowResult:
        """Resend the verification link.

        The same message is returned whether or not the account exists.
        """
        address = email_address.strip().lower()
        limit = await self._limiter.attempt(NOTIFICATION, address)
        if not limit.allowed:
            return FlowResult.rate_limited(_RECENTLY_REQUESTED_MSG, limit)

        user = await UserRepository.get_by_email(db, address)
        if user is not None and user.email_verified is None:
            issued = await single_use_tokens.issue(db, address, TokenKind.VERIFICATION)
            self._dispatch_email(
                email.send_verification_email, to_email=address, token=issued.token
            )
        return FlowResult.success(
            "If an unverified account exists for this email, "
            "a verification link has been sent."
        )

    @_guarded("request_password_reset")
    async def request_password_reset(
        self, db: AsyncSession, email_address: str
    ) -> FlowResult:
        """Email a password reset link.

        The same message is returned whether or not the account exists.
        """
        address = email_address.strip().lower()
        limit = await self._limiter.attempt(NOTIFICATION, address)
        if not limit.allowed:
            return FlowResult.rate_limited(_RECENTLY_REQUESTED_MSG, limit)

        user = await UserRepository.get_by_email(db, address)
        if user is not None:
            issued = await single_use_tokens.issue(
                db, address, TokenKind.PASSWORD_RESET
            )
            self._dispatch_email(
                email.send_password_reset_email, to_email=address, token=issued.token
            )
        return FlowResult.success(
            "If an account exists for this email, a password reset link has been sent."
        )

    @_guarded("request_email_change")
    async def request_email_change(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        new_email: str,
        current_password: str,
    ) -> FlowResult:
        """Send a confirmation link to a new address.

        The account's email changes only when that link is consumed.
        """
        limit = await self._limiter.attempt(PRIVATE, str(user_id))
        if not limit.allowed:
            return FlowResult.rate_limited(_TOO_MANY_REQUESTS_MSG, limit)

        user = await UserRepository.get_by_id(db, user_id)
        if user is None:
            return FlowResult.failure(ErrorKind.NOT_FOUND, _USER_NOT_FOUND_MSG)
        if not user.password_hash:
            return FlowResult.failure(
                ErrorKind.FORBIDDEN,
                "Email cannot be changed for accounts without a password.",
            )
        if not check_password(current_password, user.password_hash):
            return FlowResult.failure(ErrorKind.VALIDATION, _INCORRECT_PASSWORD_MSG)

        address = new_email.strip().lower()
        if address == user.email:
            return FlowResult.failure(
                ErrorKind.VALIDATION,
                "New email must be different from the current one.",
            )
        if await UserRepository.get_by_email(db, address) is not None:
            return FlowResult.failure(
                ErrorKind.CONFLICT, "This email address is already in use."
            )

        target_limit = await self._limiter.attempt(NOTIFICATION, address)
        if not target_limit.allowed:
            return FlowResult.rate_limited(_RECENTLY_REQUESTED_MSG, target_limit)

        issued = await single_use_tokens.issue(
            db, str(user.id), TokenKind.EMAIL_CHANGE, payload={"new_email": address}
        )
        self._dispatch_email(
            email.send_email_change_email, to_email=address, token=issued.token
        )
        return FlowResult.success(
            "A verification link has been sent to your new email address."
        )

    @_guarded("request_account_deletion")
    async def request_account_deletion(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        password: str | None = None,
    ) -> FlowResult:
        """Email a link that confirms account deletion.

        Accounts with a password must supply it. OAuth-only accounts rely on
        control of the mailbox alone.
        """
        limit = await self._limiter.attempt(NOTIFICATION, str(user_id))
        if not limit.allowed:
            return FlowResult.rate_limited(_TOO_MANY_REQUESTS_MSG, limit)

        user = await UserRepository.get_by_id(db, user_id)
        if user is None:
            return FlowResult.failure(ErrorKind.NOT_FOUND, _USER_NOT_FOUND_MSG)
        if user.deletion_scheduled_at is not None:
            return FlowResult.failure(
                ErrorKind.CONFLICT, "This account is already scheduled for deletion."
            )
        if user.password_hash:
            if not password:
                return FlowResult.failure(
                    ErrorKind.VALIDATION, "Password is required to delete this account."
                )
            if not check_password(password, user.password_hash):
                return FlowResult.failure(ErrorKind.VALIDATION, _INCORRECT_PASSWORD_MSG)

        issued = await single_use_tokens.issue(
            db, str(user.id), TokenKind.ACCOUNT_DELETION
        )
        self._dispatch_email(
            email.send_account_deletion_email, to_email=user.email, token=issued.token
        )
        return FlowResult.success(
            "A confirmation link has been sent to your email address."
        )

    @_guarded("change_password")
    async def change_password(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        current_password: str,
        new_password: str,
        *,
        current_jti: str,
    ) -> FlowResult:
        """Change the password of a signed-in user.

        Every other session is signed out. The session identified by
        ``current_jti`` stays valid.

        Args:
            db: Async database session.
            user_id: Authenticated user.
            current_password: Must match the stored hash.
            new_password: Checked against the password strength rules.
            current_jti: JTI of the session making the request.

        Returns:
            FlowResult with ``sessions_revoked`` on success.
        """
        limit = await self._limiter.attempt(PRIVATE, str(user_id))
        if not limit.allowed:
            return FlowResult.rate_limited(_TOO_MANY_REQUESTS_MSG, limit)

        user = await UserRepository.get_by_id(db, user_id)
        if user is None:
            return FlowResult.failure(ErrorKind.NOT_FOUND, _USER_NOT_FOUND_MSG)
        if not user.password_hash:
            return FlowResult.failure(
                ErrorKind.FORBIDDEN,
                "Password cannot be changed for accounts without a password.",
            )
        if not check_password(current_password, user.password_hash):
            return FlowResult.failure(ErrorKind.VALIDATION, _INCORRECT_PASSWORD_MSG)

        reason = validate_password_strength(new_password)
        if reason is not None:
            return FlowResult.failure(ErrorKind.VALIDATION, reason)
        if check_password(new_password, user.password_hash):
            return FlowResult.failure(
                ErrorKind.VALIDATION,
                "New password must be different from the current one.",
            )

        await UserRepository.update(
            db, user.id, password_hash=hash_password(new_password)
        )
        revoked = await session_service.revoke_all_sessions(
            db, self._ledger, user.id, except_jti=current_jti
        )
        self._dispatch_email(
            email.send_security_notification,
            to_email=user.email,
            event="password_changed",
        )
        return FlowResult.success(
            "Your password has been changed.", sessions_revoked=revoked
        )

    # =========================================================================
    # Recovery codes
    # =========================================================================

    @_guarded("verify_signin_recovery_code")
    async def verify_signin_recovery_code(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        code: str,
        client_ip: str,
    ) -> FlowResult:
        """Complete a two-factor sign-in with a recovery code."""
        limit = await self._limiter.attempt(PUBLIC, client_ip)
        if not limit.allowed:
            return FlowResult.rate_limited(_TOO_MANY_REQUESTS_MSG, limit)

        if recovery_codes.normalize_code(code) is None:
            return FlowResult.failure(ErrorKind.VALIDATION, _RECOVERY_FORMAT_MSG)

        user = await UserRepository.get_by_id(db, user_id)
        if user is None:
            return FlowResult.failure(ErrorKind.NOT_FOUND, _USER_NOT_FOUND_MSG)
        if not user.two_factor_enabled:
            return FlowResult.failure(ErrorKind.FORBIDDEN, _TWO_FACTOR_DISABLED_MSG)

        unused = await RecoveryCodeRepository.find_unused_for_user(db, user.id)
        if not unused:
            return FlowResult.failure(ErrorKind.NOT_FOUND, _RECOVERY_NONE_LEFT_MSG)

        if not await recovery_codes.verify(db, user.id, code):
            logger.info(
                "Recovery code rejected", extra={"user_id": str(user.id)}
            )
            return FlowResult.failure(ErrorKind.VALIDATION, _RECOVERY_INVALID_MSG)

        return FlowResult.success(
            "Recovery code accepted.", remaining=len(unused) - 1
        )

    @_guarded("regenerate_recovery_codes")
    async def regenerate_recovery_codes(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> FlowResult:
        """Replace the user's recovery codes and return the new set once."""
        limit = await self._limiter.attempt(PRIVATE, str(user_id))
        if not limit.allowed:
            return FlowResult.rate_limited(_TOO_MANY_REQUESTS_MSG, limit)

        user = await UserRepository.get_by_id(db, user_id)
        if user is None:
            return FlowResult.failure(ErrorKind.NOT_FOUND, _USER_NOT_FOUND_MSG)
        if not user.two_factor_enabled:
            return FlowResult.failure(ErrorKind.FORBIDDEN, _TWO_FACTOR_DISABLED_MSG)

        codes = await recovery_codes.regenerate(db, user.id)
        return FlowResult.success("New recovery codes generated.", codes=codes)
