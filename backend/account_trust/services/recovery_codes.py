"""Two-factor recovery code vault.

Codes are 8 characters from A-Z0-9, shown as ``XXXX-XXXX`` and hashed with
bcrypt on the normalized form (separators and whitespace removed,
upper-cased). A user holds exactly 16 after every regeneration. Hashing and
comparison run in a worker thread, off the event loop.

Concurrency:
- regenerate() deletes and reinserts the whole set inside one SAVEPOINT
- verify() spends a code with ``UPDATE ... WHERE used = false`` and only
  reports success when that update touched a row
"""

import asyncio
import logging
import re
import secrets
import string
import uuid
from dataclasses import dataclass

import bcrypt
from sqlalchemy.ext.asyncio import AsyncSession

from account_trust.core.config import settings
from account_trust.repositories.recovery_code_repository import (
    RecoveryCodeRepository,
)

logger = logging.getLogger(__name__)

ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8
CODE_COUNT = 16

# Largest multiple of 36 that fits in a byte. Bytes at or above it are
# rejected so every symbol is equally likely.
_REJECTION_THRESHOLD = 256 - (256 % len(ALPHABET))
_SEPARATORS = re.compile(r"[\s\-]+")
_NORMALIZED_CODE = re.compile(rf"^[A-Z0-9]{{{CODE_LENGTH}}}$")


@dataclass(frozen=True)
class GeneratedCodes:
    """A new code set. Plain codes are in display form."""

    plaintext_codes: list[str]
    hashes: list[str]


@dataclass(frozen=True)
class RecoveryCodeStatus:
    """Summary shown on the account security page."""

    total_codes: int
    used_count: int
    unused_count: int
    code_status: list[bool]
    has_recovery_codes: bool


def _random_code() -> str:
    chars: list[str] = []
    while len(chars) < CODE_LENGTH:
        for byte in secrets.token_bytes(CODE_LENGTH * 2):
            if byte < _REJECTION_THRESHOLD:
                chars.append(ALPHABET[byte % len(ALPHABET)])
                if len(chars) == CODE_LENGTH:
                    break
    return "".join(chars)


def format_code(code: str) -> str:
    """Insert the display separator: ``ABCD1234`` -> ``ABCD-1234``."""
    half = CODE_LENGTH // 2
    return f"{code[:half]}-{code[half:]}"


def normalize_code(candidate: str | None) -> str | None:
    """Reduce user input to the stored form.

    Returns:
        8 upper-case alphanumerics, or None if the input cannot be a code.
    """
    if not candidate:
        return None
    normalized = _SEPARATORS.sub("", candidate).upper()
    if not _NORMALIZED_CODE.match(normalized):
        return None
    return normalized


def _hash_code(code: str, rounds: int) -> str:
    return bcrypt.hashpw(code.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def generate(count: int = CODE_COUNT, *, rounds: int | None = None) -> GeneratedCodes:
    """Generate ``count`` codes and their bcrypt hashes.

    Args:
        count: Number of codes.
        rounds: bcrypt cost factor. Defaults to the configured value.

    Returns:
        GeneratedCodes with display-form codes and matching hashes.
    """
    cost = rounds or settings.recovery_code_bcrypt_rounds
    raw = [_random_code() for _ in range(count)]
    return GeneratedCodes(
        plaintext_codes=[format_code(code) for code in raw],
        hashes=[_hash_code(code, cost) for code in raw],
    )


async def regenerate(db: AsyncSession, user_id: uuid.UUID) -> list[str]:
    """Replace a user's entire code set.

    Every previous code stops working, used or not. Callers must rate-limit
    this operation.

    Args:
        db: Async database session. The caller commits.
        user_id: Owning user.

    Returns:
        The 16 new codes in display form. They are not retrievable later.
    """
    codes = await asyncio.to_thread(generate)
    async with db.begin_nested():
        removed = await RecoveryCodeRepository.delete_all_for_user(db, user_id)
        await RecoveryCodeRepository.insert_codes(db, user_id, codes.hashes)
    logger.info(
        "Recovery codes regenerated",
        extra={"user_id": str(user_id), "replaced": removed},
    )
    return codes.plaintext_codes


def _find_match(
    candidates: list[tuple[uuid.UUID, str]], normalized: str
) -> uuid.UUID | None:
    encoded = normalized.encode()
    for code_id, code_hash in candidates:
        try:
            if bcrypt.checkpw(encoded, code_hash.encode()):
                return code_id
        except ValueError:
            logger.warning(
                "Malformed recovery code hash", extra={"code_id": str(code_id)}
            )
    return None


async def verify(db: AsyncSession, user_id: uuid.UUID, candidate: str) -> bool:
    """Spend a recovery code.

    Malformed input returns False without touching the store. The bcrypt
    comparisons run in a worker thread.

    Args:
        db: Async database session. The caller commits.
        user_id: Owning user.
        candidate: Code as typed by the user (any case, optional separator).

    Returns:
        True if the code matched an unused code and this call spent it.
    """
    normalized = normalize_code(candidate)
    if normalized is None:
        return False

    unused = await RecoveryCodeRepository.find_unused_for_user(db, user_id)
    code_id = await asyncio.to_thread(
        _find_match, [(code.id, code.code_hash) for code in unused], normalized
    )
    if code_id is None:
        return False
    spent = await RecoveryCodeRepository.mark_used(db, code_id)
    if not spent:
        logger.info(
            "Recovery code spent concurrently",
            extra={"user_id": str(user_id)},
        )
    return spent


def build_code_status(unused_count: int) -> list[bool]:
    """Exactly CODE_COUNT slots, the first ``min(unused_count, 16)`` True."""
    filled = max(0, min(unused_count, CODE_COUNT))
    return [True] * filled + [False] * (CODE_COUNT - filled)


async def status(db: AsyncSession, user_id: uuid.UUID) -> RecoveryCodeStatus:
    """Summarize a user's codes without revealing them."""
    codes = await RecoveryCodeRepository.list_for_user(db, user_id)
    used_count = sum(1 for code in codes if code.used)
    unused_count = len(codes) - used_count
    return RecoveryCodeStatus(
        total_codes=len(codes),
        used_count=used_count,
        unused_count=unused_count,
        code_status=build_code_status(unused_count),
        has_recovery_codes=bool(codes),
    )
