"""Authentication helpers: session JWT verification and password handling.

Pipeline:
- decode_jwt: HS256 session credentials issued at sign-in, carrying the
  ``jti`` that the session revocation ledger references
- validate_password_strength: format rules (sync, no network)
- hash_password / check_password: bcrypt with constant-time comparison
- dummy_hash: timing-safe hash at the configured cost for user enumeration
  defense
"""

import functools
import logging
import re
from typing import Any

import bcrypt
import jwt

from account_trust.core.config import settings

logger = logging.getLogger(__name__)

_MIN_PASSWORD_LENGTH = 8
_MAX_PASSWORD_LENGTH = 128


@functools.lru_cache(maxsize=4)
def dummy_hash(rounds: int) -> bytes:
    """bcrypt hash of a fixed throwaway value at cost ``rounds``.

    Compared against when a user has no password hash, so that path costs
    the same as checking a real hash created by ``hash_password``.
    Computed once per cost factor.
    """
    return bcrypt.hashpw(b"account-trust-no-password", bcrypt.gensalt(rounds=rounds))


def decode_jwt(token: str, secret: str) -> dict[str, Any]:
    """Decode and verify a session JWT.

    Args:
        token: Encoded JWT.
        secret: HMAC signing secret.

    Returns:
        Claims dict. ``sub`` and ``jti`` are guaranteed present.

    Raises:
        jwt.InvalidTokenError: Signature, expiry, audience, issuer or
            required-claim failure.
    """
    return jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        audience=settings.auth_audience,
        issuer=settings.auth_issuer,
        options={"require": ["sub", "jti", "exp", "iat"]},
    )


def validate_password_strength(password: str) -> str | None:
    """Check a new password against the format rules.

    8-128 chars, at least one letter, one number and one special character.

    Args:
        password: Plain-text password to validate.

    Returns:
        None when acceptable, otherwise the user-facing reason.
    """
    if len(password) < _MIN_PASSWORD_LENGTH:
        return "Password must be at least 8 characters"
    if len(password) > _MAX_PASSWORD_LENGTH:
        return "Password must be at most 128 characters"
    if not re.search(r"[a-zA-Z]", password):
        return "Password must contain at least one letter"
    if not re.search(r"\d", password):
        return "Password must contain at least one number"
    if not re.search(r"[^a-zA-Z\d]", password):
        return "Password must contain at least one special character"
    return None


def hash_password(password: str) -> str:
    """Hash a password with bcrypt at the configured cost factor."""
    return bcrypt.hashpw(
        password.encode(), bcrypt.gensalt(rounds=settings.password_bcrypt_rounds)
    ).decode()


def check_password(password: str, password_hash: str | None) -> bool:
    """Compare a password with a stored bcrypt hash in constant time.

    When there is no stored hash (OAuth-only account), a comparison against
    ``dummy_hash`` at the configured cost still runs so the response time does
    not reveal it.

    Args:
        password: Candidate plain-text password.
        password_hash: Stored bcrypt hash, or None.

    Returns:
        True only on a real match.
    """
    if not password_hash:
        bcrypt.checkpw(
            password.encode(), dummy_hash(settings.password_bcrypt_rounds)
        )
        return False
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False
