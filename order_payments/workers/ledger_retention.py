"""
Ledger retention worker.

One-shot purge of processed-event records older than the retention
window. Meant to be run by an external scheduler (cron, Kubernetes
CronJob).
"""
import argparse
import asyncio
from datetime import timedelta
from typing import List, Optional

import structlog

from order_payments.config import Settings, get_settings
from order_payments.core.event_ledger import EventLedger
from order_payments.database import close_db, create_engine_from_settings, create_session_factory
from order_payments.monitoring.logging import setup_logging
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def run_purge(ledger: EventLedger, retention_days: int) -> int:
    """
    Purge ledger entries older than `retention_days`.

    Returns:
        int: Number of entries deleted
    """
    logger.info("ledger_retention_started", retention_days=retention_days)
    try:
        deleted = await ledger.purge_older_than(timedelta(days=retention_days))
    except Exception as e:
        logger.error("ledger_retention_failed", error=str(e))
        raise

    metrics.record_ledger_purge(deleted)
    logger.info("ledger_retention_completed", deleted=deleted, retention_days=retention_days)
    return deleted


async def purge_with_settings(settings: Settings, retention_days: Optional[int] = None) -> int:
    engine = create_engine_from_settings(settings)
    ledger = EventLedger(create_session_factory(engine))
    try:
        return await run_purge(
            ledger, retention_days or settings.processed_event_retention_days
        )
    finally:
        await close_db(engine)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Purge old processed webhook events")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Override PROCESSED_EVENT_RETENTION_DAYS",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings)

    if args.retention_days is not None and args.retention_days <= 3:
        parser.error("--retention-days must exceed the 3-day webhook redelivery window")

    asyncio.run(purge_with_settings(settings, args.retention_days))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
