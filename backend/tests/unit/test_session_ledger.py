"""Tests for the session revocation ledger."""

from datetime import timedelta

import pytest
from redis.exceptions import RedisError

from account_trust.services.session_ledger import (
    REVOKED_SET_KEY,
    SYNC_KEY_PREFIX,
    RevocationStatus,
    SessionRevocationLedger,
)
from tests.conftest import FakeRedis

_THIRTY_DAYS = 30 * 24 * 60 * 60


# =============================================================================
# revoke / is_revoked
# =============================================================================


class TestRevoke:
    async def test_revoked_ids_report_revoked(
        self, ledger: SessionRevocationLedger
    ) -> None:
        await ledger.revoke(["a", "b"])

        assert await ledger.is_revoked("a") is RevocationStatus.REVOKED
        assert await ledger.is_revoked("b") is RevocationStatus.REVOKED

    async def test_unrelated_id_reports_active(
        self, ledger: SessionRevocationLedger
    ) -> None:
        await ledger.revoke(["a", "b"])

        assert await ledger.is_revoked("c") is RevocationStatus.ACTIVE

    async def test_accepts_single_id(self, ledger: SessionRevocationLedger) -> None:
        added = await ledger.revoke("solo")

        assert added == 1
        assert await ledger.is_revoked("solo") is RevocationStatus.REVOKED

    async def test_overlapping_revokes_are_idempotent(
        self, ledger: SessionRevocationLedger
    ) -> None:
        await ledger.revoke(["a", "b"])
        added = await ledger.revoke(["b", "c"])

        assert added == 1
        assert await ledger.count() == 3

    async def test_empty_input_is_a_no_op(
        self, ledger: SessionRevocationLedger, fake_redis: FakeRedis
    ) -> None:
        assert await ledger.revoke([]) == 0
        assert fake_redis.commands == []

    async def test_rolling_ttl_applied_to_whole_set(
        self, ledger: SessionRevocationLedger, fake_redis: FakeRedis
    ) -> None:
        await ledger.revoke("a")
        fake_redis.ttls[REVOKED_SET_KEY] = 5

        await ledger.revoke("a")

        assert fake_redis.ttls[REVOKED_SET_KEY] == _THIRTY_DAYS

    async def test_custom_ttl(self, fake_redis: FakeRedis) -> None:
        ledger = SessionRevocationLedger(fake_redis, ttl=timedelta(days=7))  # type: ignore[arg-type]

        await ledger.revoke("a")

        assert fake_redis.ttls[REVOKED_SET_KEY] == 7 * 24 * 60 * 60

    async def test_revoke_raises_when_unreachable(
        self, ledger: SessionRevocationLedger, fake_redis: FakeRedis
    ) -> None:
        fake_redis.fail = True

        with pytest.raises(RedisError):
            await ledger.revoke("a")


class TestIsRevokedUnknown:
    async def test_failure_is_unknown_not_active(
        self, ledger: SessionRevocationLedger, fake_redis: FakeRedis
    ) -> None:
        await ledger.revoke("a")
        fake_redis.fail = True

        assert await ledger.is_revoked("a") is RevocationStatus.UNKNOWN
        assert await ledger.is_revoked("never-revoked") is RevocationStatus.UNKNOWN


# =============================================================================
# sync
# =============================================================================


class TestSync:
    async def test_empty_sync_clears_ledger(
        self, ledger: SessionRevocationLedger
    ) -> None:
        await ledger.revoke(["a", "b"])

        await ledger.sync([])

        assert await ledger.is_revoked("a") is RevocationStatus.ACTIVE
        assert await ledger.is_revoked("b") is RevocationStatus.ACTIVE
        assert await ledger.count() == 0

    async def test_sync_replaces_contents(
        self, ledger: SessionRevocationLedger
    ) -> None:
        await ledger.revoke(["old-1", "old-2"])

        size = await ledger.sync(["new-1", "new-2", "new-2"])

        assert size == 2
        assert await ledger.is_revoked("old-1") is RevocationStatus.ACTIVE
        assert await ledger.is_revoked("new-1") is RevocationStatus.REVOKED
        assert await ledger.is_revoked("new-2") is RevocationStatus.REVOKED

    async def test_sync_swaps_with_single_rename(
        self, ledger: SessionRevocationLedger, fake_redis: FakeRedis
    ) -> None:
        await ledger.revoke("old")
        fake_redis.commands.clear()

        await ledger.sync(["new"])

        # Live key is never deleted, only replaced by RENAME.
        assert "delete" not in fake_redis.commands
        assert fake_redis.commands.count("rename") == 1
        assert not any(k.startswith(SYNC_KEY_PREFIX) for k in fake_redis.sets)

    async def test_synced_set_keeps_rolling_ttl(
        self, ledger: SessionRevocationLedger, fake_redis: FakeRedis
    ) -> None:
        await ledger.sync(["a"])

        assert fake_redis.ttls[REVOKED_SET_KEY] == _THIRTY_DAYS

    async def test_large_sync_is_batched(
        self, ledger: SessionRevocationLedger
    ) -> None:
        ids = [f"jti-{i}" for i in range(2500)]

        size = await ledger.sync(ids)

        assert size == 2500
        assert await ledger.count() == 2500

    async def test_failed_sync_leaves_live_set(
        self, ledger: SessionRevocationLedger, fake_redis: FakeRedis
    ) -> None:
        await ledger.revoke("keep")
        original_rename = fake_redis.rename

        async def broken_rename(src: str, dst: str) -> bool:
            raise RedisError("rename failed")

        fake_redis.rename = broken_rename  # type: ignore[method-assign]

        with pytest.raises(RedisError):
            await ledger.sync(["other"])

        fake_redis.rename = original_rename  # type: ignore[method-assign]
        assert await ledger.is_revoked("keep") is RevocationStatus.REVOKED
        assert not any(k.startswith(SYNC_KEY_PREFIX) for k in fake_redis.sets)


# =============================================================================
# health_check / count
# =============================================================================


class TestObservability:
    async def test_health_check_round_trip(
        self, ledger: SessionRevocationLedger
    ) -> None:
        assert await ledger.health_check() is True

    async def test_health_check_false_when_unreachable(
        self, ledger: SessionRevocationLedger, fake_redis: FakeRedis
    ) -> None:
        fake_redis.fail = True

        assert await ledger.health_check() is False

    async def test_count(self, ledger: SessionRevocationLedger) -> None:
        assert await ledger.count() == 0
        await ledger.revoke(["a", "b", "c"])
        assert await ledger.count() == 3
