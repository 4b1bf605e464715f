"""Reconciliation and recovery jobs.

Three maintenance jobs keep local subscription state honest against Stripe:

- check_expirations: active subscriptions whose period ended without a
  renewal or cancellation event reaching us.
- reconcile: batched drift comparison (status, price, period end) of every
  active/trialing/past_due subscription.
- recover_webhooks: re-fetch and re-dispatch events whose live delivery failed.

Every run is wrapped in a SyncRun row. Individual items run in their own
savepoint and are committed one by one, so a failing item is logged and
counted without aborting the batch. Only a failure in the job's own
bookkeeping aborts the run, which is then completed as failed with the
partial counts collected so far.
"""

import asyncio
import logging
import time
import uuid as uuid_pkg
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from stripe import StripeError

from creditsync.core.exceptions import WebhookValidationError
from creditsync.domain import subscription_ops, sync_run_ops, webhook_event_ops
from creditsync.models.subscription import SubscriptionStatus
from creditsync.models.sync import SyncJobType, SyncRunStatus, WebhookEventStatus
from creditsync.services.stripe_service import StripeService
from creditsync.services.subscription_sync import SubscriptionSyncService, extract_period
from creditsync.services.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Reports
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class Discrepancy:
    """One subscription found out of sync with Stripe."""

    subscription_id: str
    user_id: str
    kind: str  # "mismatch" or "not_found"
    description: str


@dataclass
class ExpirationReport:
    sync_run_id: str | None = None
    status: str = SyncRunStatus.RUNNING.value
    processed: int = 0
    fixed: int = 0
    canceled: int = 0
    extended: int = 0
    resynced: int = 0
    errors: list[str] = field(default_factory=list)
    error_message: str | None = None
    duration_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status == SyncRunStatus.FAILED.value


@dataclass
class ReconciliationReport:
    sync_run_id: str | None = None
    status: str = SyncRunStatus.RUNNING.value
    cursor: str | None = None
    batch_size: int = 0
    total_subscriptions: int = 0
    processed: int = 0
    fixed: int = 0
    issues: list[Discrepancy] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None
    errors: list[str] = field(default_factory=list)
    error_message: str | None = None
    duration_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status == SyncRunStatus.FAILED.value

    @property
    def discrepancies_found(self) -> int:
        return len(self.issues)


@dataclass
class RecoveryReport:
    sync_run_id: str | None = None
    status: str = SyncRunStatus.RUNNING.value
    processed: int = 0
    recovered: int = 0
    unrecoverable: int = 0
    retry_scheduled: int = 0
    errors: list[str] = field(default_factory=list)
    error_message: str | None = None
    duration_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status == SyncRunStatus.FAILED.value


@dataclass(frozen=True)
class _LocalSubscription:
    """Column snapshot, so item savepoint rollbacks never touch expired ORM state."""

    id: str
    user_id: uuid_pkg.UUID
    status: str
    price_id: str
    current_period_end: datetime


def _snapshot(subscription: Any) -> _LocalSubscription:
    return _LocalSubscription(
        id=subscription.id,
        user_id=subscription.user_id,
        status=subscription.status,
        price_id=subscription.price_id,
        current_period_end=subscription.current_period_end,
    )


class ReconciliationService:
    """Runs the expiration, reconciliation and webhook recovery jobs."""

    def __init__(
        self,
        stripe: StripeService,
        subscription_sync: SubscriptionSyncService,
        dispatcher: WebhookDispatcher,
        *,
        batch_size: int = 40,
        rate_limit_delay_ms: int = 100,
        drift_tolerance_hours: float = 1.0,
        webhook_batch_size: int = 50,
        max_retries: int = 3,
    ):
        self.stripe = stripe
        self.subscription_sync = subscription_sync
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.rate_limit_delay_ms = rate_limit_delay_ms
        self.drift_tolerance_hours = drift_tolerance_hours
        self.webhook_batch_size = webhook_batch_size
        self.max_retries = max_retries

    async def _pause(self) -> None:
        if self.rate_limit_delay_ms > 0:
            await asyncio.sleep(self.rate_limit_delay_ms / 1000)

    async def _start_run(self, db: AsyncSession, job_type: SyncJobType) -> uuid_pkg.UUID:
        run = await sync_run_ops.start(db, job_type.value)
        run_id = run.id
        await db.commit()
        return run_id

    async def _fail_run(
        self,
        db: AsyncSession,
        run_id: uuid_pkg.UUID | None,
        report: Any,
        error: Exception,
        records_fixed: int,
        discrepancies_found: int = 0,
    ) -> None:
        """Best-effort failed completion; never masks the original error in the logs."""
        report.status = SyncRunStatus.FAILED.value
        report.error_message = str(error)
        if run_id is None:
            return
        try:
            await db.rollback()
            await sync_run_ops.complete(
                db,
                run_id,
                SyncRunStatus.FAILED.value,
                records_processed=report.processed,
                records_fixed=records_fixed,
                discrepancies_found=discrepancies_found,
                error_message=str(error),
            )
            await db.commit()
        except Exception as e:
            logger.error(f"[CRON] Could not record failure for sync run {run_id}: {e}")

    # ─────────────────────────────────────────────────────────────────────────
    # Expiration check
    # ─────────────────────────────────────────────────────────────────────────

    async def check_expirations(self, db: AsyncSession) -> ExpirationReport:
        """
        Fix active subscriptions whose billing period already ended.

        Not found in Stripe → canceled locally; no longer active in Stripe →
        full sync; still active → period extended. Each branch counts as a fix.
        """
        start = time.monotonic()
        report = ExpirationReport()
        run_id: uuid_pkg.UUID | None = None

        try:
            run_id = await self._start_run(db, SyncJobType.EXPIRATION_CHECK)
            report.sync_run_id = str(run_id)

            expired = [
                _snapshot(s) for s in await subscription_ops.list_expired_active(db, datetime.now(UTC))
            ]
            logger.info(f"[CRON] Expiration check: {len(expired)} expired active subscriptions")

            for index, local in enumerate(expired):
                if index > 0:
                    await self._pause()
                report.processed += 1
                try:
                    async with db.begin_nested():
                        await self._fix_expired(db, local, report)
                    await db.commit()
                    report.fixed += 1
                except Exception as e:
                    message = f"Subscription {local.id}: {e}"
                    logger.error(f"[CRON] Expiration check failed for {message}")
                    report.errors.append(message)

            await sync_run_ops.complete(
                db,
                run_id,
                SyncRunStatus.COMPLETED.value,
                records_processed=report.processed,
                records_fixed=report.fixed,
                discrepancies_found=report.fixed,
                metadata={"errors": report.errors},
            )
            await db.commit()
            report.status = SyncRunStatus.COMPLETED.value
        except Exception as e:
            logger.exception(f"[CRON] Expiration check aborted: {e}")
            await self._fail_run(db, run_id, report, e, report.fixed, report.fixed)

        report.duration_seconds = round(time.monotonic() - start, 2)
        logger.info(
            f"[CRON] Expiration check {report.status}: {report.processed} processed, "
            f"{report.fixed} fixed ({report.canceled} canceled, {report.extended} extended, "
            f"{report.resynced} resynced), {len(report.errors)} errors"
        )
        return report

    async def _fix_expired(
        self,
        db: AsyncSession,
        local: _LocalSubscription,
        report: ExpirationReport,
    ) -> None:
        try:
            stripe_sub = self.stripe.retrieve_subscription(local.id)
        except StripeError as e:
            if not self.stripe.is_not_found_error(e):
                raise
            logger.info(f"[CRON] Subscription {local.id} not found in Stripe, marking canceled")
            await self.subscription_sync.mark_subscription_canceled(db, local.user_id, local.id)
            report.canceled += 1
            return

        if stripe_sub.status != SubscriptionStatus.ACTIVE.value:
            logger.info(
                f"[CRON] Subscription {local.id} is {stripe_sub.status} in Stripe, syncing"
            )
            await self.subscription_sync.sync_subscription_from_stripe(
                db, local.user_id, stripe_sub
            )
            report.resynced += 1
            return

        await self.subscription_sync.update_subscription_period(db, local.id, stripe_sub)
        report.extended += 1

    # ─────────────────────────────────────────────────────────────────────────
    # Full reconciliation
    # ─────────────────────────────────────────────────────────────────────────

    def describe_drift(self, local: _LocalSubscription, stripe_sub: Any) -> list[str]:
        """Mismatching dimensions between local and Stripe state, as readable strings."""
        problems: list[str] = []
        if local.status != stripe_sub.status:
            problems.append(f"status: local={local.status}, stripe={stripe_sub.status}")
        if local.price_id != stripe_sub.price_id:
            problems.append(f"price: local={local.price_id}, stripe={stripe_sub.price_id}")

        _, stripe_end = extract_period(stripe_sub)
        local_end = local.current_period_end
        if local_end.tzinfo is None:
            local_end = local_end.replace(tzinfo=UTC)
        drift_hours = abs((local_end - stripe_end).total_seconds()) / 3600
        if drift_hours > self.drift_tolerance_hours:
            problems.append(
                f"period_end: local={local_end.isoformat()}, stripe={stripe_end.isoformat()} "
                f"(drift {drift_hours:.1f}h)"
            )
        return problems

    async def reconcile(
        self,
        db: AsyncSession,
        batch_size: int | None = None,
        cursor: str | None = None,
    ) -> ReconciliationReport:
        """
        Compare one batch of reconcilable subscriptions with Stripe.

        Any mismatch is one discrepancy fixed by a full sync; a subscription
        Stripe no longer knows is a discrepancy fixed by canceling it locally.
        Batches are keyed by subscription id: pass `next_cursor` back as
        `cursor` while `has_more` is true.
        """
        start = time.monotonic()
        limit = batch_size or self.batch_size
        report = ReconciliationReport(cursor=cursor, batch_size=limit)
        run_id: uuid_pkg.UUID | None = None

        try:
            run_id = await self._start_run(db, SyncJobType.FULL_RECONCILIATION)
            report.sync_run_id = str(run_id)

            report.total_subscriptions = await subscription_ops.count_reconcilable(db)
            # One extra row tells whether another batch follows
            rows = await subscription_ops.list_reconcilable(db, after=cursor, limit=limit + 1)
            batch = [_snapshot(s) for s in rows[:limit]]
            report.has_more = len(rows) > limit
            report.next_cursor = batch[-1].id if report.has_more else None
            logger.info(
                f"[CRON] Reconciliation: checking {len(batch)} of "
                f"{report.total_subscriptions} subscriptions (after {cursor or 'start'})"
            )

            for index, local in enumerate(batch):
                if index > 0:
                    await self._pause()
                report.processed += 1
                try:
                    async with db.begin_nested():
                        fixed = await self._reconcile_one(db, local, report)
                    await db.commit()
                    if fixed:
                        report.fixed += 1
                except Exception as e:
                    message = f"Subscription {local.id}: {e}"
                    logger.error(f"[CRON] Reconciliation failed for {message}")
                    report.errors.append(message)

            await sync_run_ops.complete(
                db,
                run_id,
                SyncRunStatus.COMPLETED.value,
                records_processed=report.processed,
                records_fixed=report.fixed,
                discrepancies_found=report.discrepancies_found,
                metadata={
                    "cursor": cursor,
                    "next_cursor": report.next_cursor,
                    "has_more": report.has_more,
                    "discrepancies": [asdict(issue) for issue in report.issues],
                    "errors": report.errors,
                },
            )
            await db.commit()
            report.status = SyncRunStatus.COMPLETED.value
        except Exception as e:
            logger.exception(f"[CRON] Reconciliation aborted: {e}")
            await self._fail_run(
                db, run_id, report, e, report.fixed, report.discrepancies_found
            )

        report.duration_seconds = round(time.monotonic() - start, 2)
        logger.info(
            f"[CRON] Reconciliation {report.status}: {report.processed} processed, "
            f"{report.discrepancies_found} discrepancies, {report.fixed} fixed, "
            f"{len(report.errors)} errors, has_more={report.has_more}"
        )
        return report

    async def _reconcile_one(
        self,
        db: AsyncSession,
        local: _LocalSubscription,
        report: ReconciliationReport,
    ) -> bool:
        """Returns True when a discrepancy was found and fixed."""
        try:
            stripe_sub = self.stripe.retrieve_subscription(local.id)
        except StripeError as e:
            if not self.stripe.is_not_found_error(e):
                raise
            report.issues.append(
                Discrepancy(
                    subscription_id=local.id,
                    user_id=str(local.user_id),
                    kind="not_found",
                    description="Subscription not found in Stripe",
                )
            )
            logger.warning(f"[CRON] Subscription {local.id} not found in Stripe, marking canceled")
            await self.subscription_sync.mark_subscription_canceled(db, local.user_id, local.id)
            return True

        problems = self.describe_drift(local, stripe_sub)
        if not problems:
            return False

        description = "; ".join(problems)
        report.issues.append(
            Discrepancy(
                subscription_id=local.id,
                user_id=str(local.user_id),
                kind="mismatch",
                description=description,
            )
        )
        logger.warning(f"[CRON] Subscription {local.id} out of sync ({description}), resyncing")
        await self.subscription_sync.sync_subscription_from_stripe(db, local.user_id, stripe_sub)
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Webhook recovery
    # ─────────────────────────────────────────────────────────────────────────

    async def recover_webhooks(self, db: AsyncSession) -> RecoveryReport:
        """
        Retry failed, recoverable events oldest-first.

        Events are re-fetched from Stripe and dispatched through the same
        handlers as live delivery. Not found → unrecoverable; any other
        failure counts a retry until max_retries is reached.
        """
        start = time.monotonic()
        report = RecoveryReport()
        run_id: uuid_pkg.UUID | None = None

        try:
            run_id = await self._start_run(db, SyncJobType.WEBHOOK_RECOVERY)
            report.sync_run_id = str(run_id)

            records = await webhook_event_ops.list_recoverable(
                db, max_retries=self.max_retries, limit=self.webhook_batch_size
            )
            logger.info(f"[CRON] Webhook recovery: {len(records)} events to retry")

            for index, record in enumerate(records):
                if index > 0:
                    await self._pause()
                event_id = record.event_id
                report.processed += 1
                try:
                    async with db.begin_nested():
                        await self._recover_one(db, record, report)
                    await db.commit()
                except Exception as e:
                    message = f"Event {event_id}: {e}"
                    logger.error(f"[CRON] Webhook recovery bookkeeping failed for {message}")
                    report.errors.append(message)

            await sync_run_ops.complete(
                db,
                run_id,
                SyncRunStatus.COMPLETED.value,
                records_processed=report.processed,
                records_fixed=report.recovered,
                discrepancies_found=report.processed,
                metadata={
                    "unrecoverable": report.unrecoverable,
                    "retry_scheduled": report.retry_scheduled,
                    "errors": report.errors,
                },
            )
            await db.commit()
            report.status = SyncRunStatus.COMPLETED.value
        except Exception as e:
            logger.exception(f"[CRON] Webhook recovery aborted: {e}")
            await self._fail_run(db, run_id, report, e, report.recovered, report.processed)

        report.duration_seconds = round(time.monotonic() - start, 2)
        logger.info(
            f"[CRON] Webhook recovery {report.status}: {report.processed} processed, "
            f"{report.recovered} recovered, {report.unrecoverable} unrecoverable, "
            f"{report.retry_scheduled} left for retry"
        )
        return report

    async def _recover_one(self, db: AsyncSession, record: Any, report: RecoveryReport) -> None:
        event_id = record.event_id

        try:
            event = self.stripe.retrieve_event(event_id)
        except StripeError as e:
            if self.stripe.is_not_found_error(e):
                logger.warning(f"[CRON] Event {event_id} no longer exists in Stripe")
                await webhook_event_ops.mark_unrecoverable(db, record, f"Event not found: {e}")
                report.unrecoverable += 1
                return
            await self._count_retry_failure(db, record, str(e), report)
            return
        except WebhookValidationError as e:
            await webhook_event_ops.mark_unrecoverable(db, record, e.message)
            report.unrecoverable += 1
            return

        try:
            async with db.begin_nested():
                await self.dispatcher.dispatch(db, event)
        except WebhookValidationError as e:
            logger.error(f"[CRON] Event {event_id} is malformed, giving up: {e.message}")
            await webhook_event_ops.mark_unrecoverable(db, record, e.message)
            report.unrecoverable += 1
            return
        except Exception as e:
            logger.error(f"[CRON] Retry of event {event_id} ({event.type}) failed: {e}")
            await self._count_retry_failure(db, record, str(e), report)
            return

        await webhook_event_ops.mark_recovered(db, record)
        report.recovered += 1
        logger.info(f"[CRON] Recovered event {event_id} ({event.type})")

    async def _count_retry_failure(
        self,
        db: AsyncSession,
        record: Any,
        error_message: str,
        report: RecoveryReport,
    ) -> None:
        updated = await webhook_event_ops.record_retry_failure(
            db, record, error_message, max_retries=self.max_retries
        )
        if updated.status == WebhookEventStatus.UNRECOVERABLE.value:
            report.unrecoverable += 1
        else:
            report.retry_scheduled += 1
