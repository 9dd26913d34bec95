"""Tests for the periodic maintenance script."""

from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from account_trust.services import session_service
from account_trust.services.session_ledger import (
    RevocationStatus,
    SessionRevocationLedger,
)
from scripts.account_trust_maintenance import run_maintenance
from tests.conftest import FakeRedis

_PURGED = {"single_use_tokens": 1, "user_sessions": 0, "revoked_sessions": 2}


async def test_purges_then_rebuilds_ledger(
    ledger: SessionRevocationLedger, mock_db: MagicMock
) -> None:
    with (
        patch.object(session_service, "purge_expired", AsyncMock(return_value=_PURGED)),
        patch(
            "account_trust.repositories.user_session_repository."
            "RevokedSessionRepository.list_active_jtis",
            AsyncMock(return_value=["j1", "j2"]),
        ),
    ):
        stats = await run_maintenance(mock_db, ledger)

    assert stats.purged == _PURGED
    assert stats.ledger_size == 2
    assert stats.ledger_error is None
    assert await ledger.is_revoked("j1") is RevocationStatus.REVOKED


async def test_ledger_failure_is_reported_not_raised(
    ledger: SessionRevocationLedger, fake_redis: FakeRedis, mock_db: MagicMock
) -> None:
    fake_redis.fail = True
    with (
        patch.object(session_service, "purge_expired", AsyncMock(return_value=_PURGED)),
        patch.object(
            session_service,
            "rebuild_ledger",
            AsyncMock(side_effect=RedisConnectionError("down")),
        ),
    ):
        stats = await run_maintenance(mock_db, ledger)

    assert stats.purged == _PURGED
    assert stats.ledger_size is None
    assert stats.ledger_error == "ConnectionError"
