"""Periodic account trust maintenance.

Standalone script, meant for a scheduler (cron, systemd timer).

Usage:
    cd backend && python -m scripts.account_trust_maintenance

Steps:
    1. Delete expired single-use tokens, sessions and blacklist rows
    2. Rebuild the Redis revocation ledger from revoked_sessions
       (atomic swap, so readers never see an empty ledger)
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from account_trust.services import session_service
from account_trust.services.session_ledger import SessionRevocationLedger

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceStats:
    """Statistics from a maintenance run."""

    purged: dict[str, int] = field(default_factory=dict)
    ledger_size: int | None = None
    ledger_error: str | None = None


async def run_maintenance(
    db: AsyncSession, ledger: SessionRevocationLedger
) -> MaintenanceStats:
    """Purge expired rows, then rebuild the ledger.

    A ledger failure is recorded in the stats rather than raised: the purge
    is still worth committing.

    Args:
        db: Async database session. The caller commits.
        ledger: Revocation ledger to rebuild.

    Returns:
        MaintenanceStats.
    """
    stats = MaintenanceStats()
    stats.purged = await session_service.purge_expired(db)
    try:
        stats.ledger_size = await session_service.rebuild_ledger(db, ledger)
    except RedisError as exc:
        stats.ledger_error = type(exc).__name__
        logger.warning("Ledger rebuild failed: %s", stats.ledger_error)
    return stats


async def main() -> None:
    """CLI entry point: run maintenance against the configured stores."""
    import sys

    from account_trust.core.config import settings
    from account_trust.core.database import engine, session_scope
    from account_trust.core.kv_store import create_redis_client

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    client = create_redis_client(settings)
    ledger = SessionRevocationLedger(
        client, ttl=timedelta(days=settings.session_revocation_ttl_days)
    )
    try:
        async with session_scope() as session:
            result = await run_maintenance(session, ledger)
    finally:
        await client.aclose()
        await engine.dispose()

    logger.info("Final stats: %s", result)
    sys.exit(1 if result.ledger_error else 0)


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
