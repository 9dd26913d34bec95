"""Single-use token issuer.

Tokens gate four account flows: email verification, email change, password
reset and account deletion. The plain token (256 bits from
``secrets.token_urlsafe``) only ever leaves this module in the returned
IssuedToken, to be emailed; the database stores its SHA-256 hash.

Lifecycle:
- issue(): replaces any live token for the same (identifier, kind) inside
  a SAVEPOINT, backed by a unique constraint and an upsert
- consume(): looks the token up, resolves its identity and deletes it. Every
  outcome except CONFLICT deletes the row.

Outcomes are returned as ConsumedToken or TokenFailure, never raised.
"""

import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from account_trust.core.config import settings
from account_trust.core.errors import ErrorKind
from account_trust.models.user import User
from account_trust.repositories.single_use_token_repository import (
    SingleUseTokenRepository,
)
from account_trust.repositories.user_repository import UserRepository

logger = logging.getLogger(__name__)

_TOKEN_BYTES = 32
_MAX_TOKEN_LENGTH = 128


class TokenKind(StrEnum):
    """Account flow a token belongs to."""

    VERIFICATION = "verification"
    EMAIL_CHANGE = "email-change"
    PASSWORD_RESET = "password-reset"
    ACCOUNT_DELETION = "account-deletion"


# Kinds scoped to an email address; the rest are scoped to a user id.
_EMAIL_SCOPED_KINDS = frozenset({TokenKind.VERIFICATION, TokenKind.PASSWORD_RESET})


@dataclass(frozen=True)
class IssuedToken:
    """A freshly issued token. ``token`` is the plain value to email."""

    token: str
    identifier: str
    kind: TokenKind
    expires: datetime


@dataclass(frozen=True)
class ConsumedToken:
    """A successfully consumed token and the identity it resolved to.

    Attributes:
        identifier: Email or user id the token was scoped to.
        kind: Token kind.
        payload: Kind-specific data stored at issue time.
        user: The resolved user.
        already_satisfied: True when there was nothing left to do (e.g.
            the email was verified through another link meanwhile).
    """

    identifier: str
    kind: TokenKind
    payload: dict[str, Any]
    user: User
    already_satisfied: bool = False


@dataclass(frozen=True)
class TokenFailure:
    """Why a token could not be consumed."""

    error: ErrorKind
    kind: TokenKind | None = None


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a plain token."""
    return hashlib.sha256(token.encode()).hexdigest()


def default_ttl(kind: TokenKind) -> timedelta:
    """Configured lifetime for a token kind."""
    minutes = {
        TokenKind.VERIFICATION: settings.verification_token_ttl_minutes,
        TokenKind.EMAIL_CHANGE: settings.email_change_token_ttl_minutes,
        TokenKind.PASSWORD_RESET: settings.password_reset_token_ttl_minutes,
        TokenKind.ACCOUNT_DELETION: settings.account_deletion_token_ttl_minutes,
    }[kind]
    return timedelta(minutes=minutes)


async def issue(
    db: AsyncSession,
    identifier: str,
    kind: TokenKind | str,
    payload: dict[str, Any] | None = None,
    ttl: timedelta | None = None,
) -> IssuedToken:
    """Issue a token, invalidating any earlier one for the same pair.

    Args:
        db: Async database session. The caller commits.
        identifier: Email address (verification, password-reset) or user id
            (email-change, account-deletion).
        kind: Token kind.
        payload: Kind-specific data (email-change needs ``new_email``).
        ttl: Lifetime override. Defaults to the configured TTL for the kind.

    Returns:
        IssuedToken carrying the plain token.

    Raises:
        ValueError: Unknown kind.
    """
    kind = TokenKind(kind)
    identifier = identifier.strip().lower()
    plain_token = secrets.token_urlsafe(_TOKEN_BYTES)
    expires = datetime.now(UTC) + (ttl or default_ttl(kind))

    async with db.begin_nested():
        await SingleUseTokenRepository.delete_by_identifier_and_kind(
            db, identifier=identifier, kind=kind.value
        )
        await SingleUseTokenRepository.replace(
            db,
            identifier=identifier,
            kind=kind.value,
            token_hash=hash_token(plain_token),
            expires=expires,
            payload=payload,
        )

    logger.info("Single-use token issued", extra={"kind": kind.value})
    return IssuedToken(
        token=plain_token, identifier=identifier, kind=kind, expires=expires
    )


async def _resolve_user(db: AsyncSession, kind: TokenKind, identifier: str) -> User | None:
    if kind in _EMAIL_SCOPED_KINDS:
        return await UserRepository.get_by_email(db, identifier)
    try:
        user_id = uuid.UUID(identifier)
    except ValueError:
        return None
    return await UserRepository.get_by_id(db, user_id)


async def consume(
    db: AsyncSession,
    token: str,
    expected_kind: TokenKind | str | None = None,
) -> ConsumedToken | TokenFailure:
    """Consume a token exactly once.

    Args:
        db: Async database session. The caller commits, including after a
            failure, so cleanup deletes persist.
        token: Plain token from the link.
        expected_kind: When given, a token of any other kind is NOT_FOUND.

    Returns:
        ConsumedToken on success, otherwise TokenFailure with one of
        VALIDATION, NOT_FOUND, EXPIRED, IDENTITY_GONE or CONFLICT.
    """
    wanted = TokenKind(expected_kind) if expected_kind is not None else None
    token = (token or "").strip()
    if not token or len(token) > _MAX_TOKEN_LENGTH:
        return TokenFailure(ErrorKind.VALIDATION, wanted)

    token_hash = hash_token(token)
    row = await SingleUseTokenRepository.find_by_token_hash(db, token_hash)
    if row is None or (wanted is not None and row.kind != wanted.value):
        return TokenFailure(ErrorKind.NOT_FOUND, wanted)

    kind = TokenKind(row.kind)
    payload = dict(row.payload or {})

    if row.expires < datetime.now(UTC):
        await SingleUseTokenRepository.delete(db, token_hash)
        logger.info("Expired token consumed", extra={"kind": kind.value})
        return TokenFailure(ErrorKind.EXPIRED, kind)

    user = await _resolve_user(db, kind, row.identifier)
    if user is None:
        await SingleUseTokenRepository.delete(db, token_hash)
        logger.info("Token identity no longer exists", extra={"kind": kind.value})
        return TokenFailure(ErrorKind.IDENTITY_GONE, kind)

    if kind is TokenKind.EMAIL_CHANGE:
        new_email = str(payload.get("new_email") or "").strip().lower()
        if not new_email:
            await SingleUseTokenRepository.delete(db, token_hash)
            logger.warning("Email-change token without target address")
            return TokenFailure(ErrorKind.NOT_FOUND, kind)
        owner = await UserRepository.get_by_email(db, new_email)
        if owner is not None and owner.id != user.id:
            # Token kept: the address may be released and the link retried.
            return TokenFailure(ErrorKind.CONFLICT, kind)

    already_satisfied = (
        kind is TokenKind.VERIFICATION and user.email_verified is not None
    )

    if not await SingleUseTokenRepository.delete(db, token_hash):
        # A concurrent request consumed it first.
        return TokenFailure(ErrorKind.NOT_FOUND, kind)

    return ConsumedToken(
        identifier=row.identifier,
        kind=kind,
        payload=payload,
        user=user,
        already_satisfied=already_satisfied,
    )


async def purge_expired(db: AsyncSession) -> int:
    """Delete every expired token.

    Returns:
        Number of deleted rows.
    """
    deleted = await SingleUseTokenRepository.delete_expired(db)
    if deleted:
        logger.info("Expired single-use tokens purged", extra={"count": deleted})
    return deleted
