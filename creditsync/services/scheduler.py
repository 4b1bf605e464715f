"""Internal task scheduler using APScheduler.

Runs the reconciliation jobs within the FastAPI process. Uses PostgreSQL
advisory locks to prevent duplicate execution when multiple instances are
running. The cron endpoints call the same job functions for external
schedulers.
"""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.config import settings
from creditsync.core.database import direct_session_maker
from creditsync.services.container import Services

logger = logging.getLogger(__name__)

# Advisory lock IDs (arbitrary unique integers, one per job)
EXPIRATION_CHECK_LOCK_ID = 734101
RECONCILIATION_LOCK_ID = 734102
WEBHOOK_RECOVERY_LOCK_ID = 734103


@asynccontextmanager
async def advisory_lock(lock_id: int) -> AsyncIterator[bool]:
    """
    Acquire a PostgreSQL advisory lock for the duration of the context.

    Advisory locks are session-level, so this runs on the direct connection
    (the transaction pooler would hand the lock to another client). We use
    pg_try_advisory_lock() which returns immediately: if another instance
    holds the lock, we skip.
    """
    async with direct_session_maker() as session:
        result = await session.execute(
            text("SELECT pg_try_advisory_lock(:lock_id)"),
            {"lock_id": lock_id},
        )
        acquired = result.scalar()

        if not acquired:
            yield False
            return

        try:
            yield True
        finally:
            await session.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"),
                {"lock_id": lock_id},
            )
            await session.commit()


async def _run_locked(
    name: str,
    lock_id: int,
    job: Callable[[AsyncSession], Awaitable[Any]],
) -> dict[str, Any] | None:
    """Run `job` under its advisory lock. Returns the report dict, or None if skipped."""
    async with advisory_lock(lock_id) as acquired:
        if not acquired:
            logger.info(f"[scheduler] {name}: skipped (another instance is running)")
            return None

        logger.info(f"[scheduler] {name}: starting")
        try:
            async with direct_session_maker() as db:
                report = await job(db)
            logger.info(f"[scheduler] {name}: {report.status} ({report.processed} processed)")
            return asdict(report)
        except Exception as e:
            logger.exception(f"[scheduler] {name}: failed with error: {e}")
            return None


async def run_expiration_check(services: Services) -> dict[str, Any] | None:
    return await _run_locked(
        "Expiration-check",
        EXPIRATION_CHECK_LOCK_ID,
        services.reconciliation.check_expirations,
    )


async def run_reconciliation(services: Services) -> dict[str, Any] | None:
    """
    Reconcile every subscription, one batch per iteration.

    Follows next_cursor until the last batch, so a daily run covers the
    whole table rather than only the first batch.
    """
    async with advisory_lock(RECONCILIATION_LOCK_ID) as acquired:
        if not acquired:
            logger.info("[scheduler] Reconciliation: skipped (another instance is running)")
            return None

        logger.info("[scheduler] Reconciliation: starting")
        totals = {"batches": 0, "processed": 0, "fixed": 0, "discrepancies": 0}
        cursor: str | None = None
        try:
            while True:
                async with direct_session_maker() as db:
                    report = await services.reconciliation.reconcile(db, cursor=cursor)
                totals["batches"] += 1
                totals["processed"] += report.processed
                totals["fixed"] += report.fixed
                totals["discrepancies"] += report.discrepancies_found
                if report.failed or report.next_cursor is None:
                    break
                cursor = report.next_cursor
        except Exception as e:
            logger.exception(f"[scheduler] Reconciliation: failed with error: {e}")
            return None

        logger.info(
            f"[scheduler] Reconciliation: completed ({totals['batches']} batches, "
            f"{totals['processed']} processed, {totals['discrepancies']} discrepancies, "
            f"{totals['fixed']} fixed)"
        )
        return totals


async def run_webhook_recovery(services: Services) -> dict[str, Any] | None:
    return await _run_locked(
        "Webhook-recovery",
        WEBHOOK_RECOVERY_LOCK_ID,
        services.reconciliation.recover_webhooks,
    )


class Scheduler:
    """Manages the APScheduler instance and job registration."""

    def __init__(self) -> None:
        self._scheduler: AsyncIOScheduler | None = None
        self._services: Services | None = None

    def start(self, services: Services) -> None:
        """Start the scheduler and register jobs."""
        self._services = services

        if not settings.scheduler_enabled:
            logger.info("[scheduler] Disabled via SCHEDULER_ENABLED=false")
            return
        if not settings.stripe_enabled:
            logger.info("[scheduler] Stripe not configured, reconciliation jobs not scheduled")
            return

        self._scheduler = AsyncIOScheduler()

        # Expiration check: hourly
        self._scheduler.add_job(
            run_expiration_check,
            trigger=CronTrigger(minute=5),
            args=[services],
            id="expiration_check",
            name="Subscription Expiration Check",
            replace_existing=True,
        )

        # Full reconciliation: daily at configured hour (UTC)
        self._scheduler.add_job(
            run_reconciliation,
            trigger=CronTrigger(hour=settings.reconciliation_hour, minute=0),
            args=[services],
            id="full_reconciliation",
            name="Full Subscription Reconciliation",
            replace_existing=True,
        )

        # Webhook recovery: fixed interval
        self._scheduler.add_job(
            run_webhook_recovery,
            trigger=IntervalTrigger(minutes=settings.webhook_recovery_interval_minutes),
            args=[services],
            id="webhook_recovery",
            name="Failed Webhook Recovery",
            replace_existing=True,
        )

        self._scheduler.start()
        logger.info(
            f"[scheduler] Started with expiration-check hourly at :05, "
            f"reconciliation at {settings.reconciliation_hour:02d}:00 UTC, "
            f"webhook-recovery every {settings.webhook_recovery_interval_minutes} min"
        )

    def stop(self) -> None:
        """Gracefully shut down the scheduler."""
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("[scheduler] Stopped")

    async def trigger_now(self, job_id: str) -> dict[str, Any] | None:
        """
        Manually trigger a job immediately (for testing/debugging).

        Returns the job result or None if the job is unknown or was skipped.
        """
        if self._services is None:
            return None
        if job_id == "expiration_check":
            return await run_expiration_check(self._services)
        if job_id == "full_reconciliation":
            return await run_reconciliation(self._services)
        if job_id == "webhook_recovery":
            return await run_webhook_recovery(self._services)
        return None


scheduler = Scheduler()
