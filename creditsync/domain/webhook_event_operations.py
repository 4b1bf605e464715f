"""Domain operations for WebhookEvent model."""

from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.domain.base_operations import BaseOperations
from creditsync.models.sync import WebhookEvent, WebhookEventStatus


class WebhookEventOperations(BaseOperations[WebhookEvent]):
    """Idempotency records and the failed-event recovery queue."""

    def __init__(self) -> None:
        super().__init__(WebhookEvent)

    async def get_by_event_id(self, db: AsyncSession, event_id: str) -> WebhookEvent | None:
        statement = select(WebhookEvent).where(WebhookEvent.event_id == event_id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def is_completed(self, db: AsyncSession, event_id: str) -> bool:
        statement = select(WebhookEvent.id).where(
            WebhookEvent.event_id == event_id,
            WebhookEvent.status == WebhookEventStatus.COMPLETED.value,
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none() is not None

    async def mark_completed(self, db: AsyncSession, event_id: str, event_type: str) -> None:
        """Record a successfully processed live delivery."""
        now = datetime.now(UTC)
        statement = insert(WebhookEvent).values(
            event_id=event_id,
            event_type=event_type,
            status=WebhookEventStatus.COMPLETED.value,
            completed_at=now,
        )
        statement = statement.on_conflict_do_update(
            index_elements=[WebhookEvent.event_id],
            set_={
                "status": WebhookEventStatus.COMPLETED.value,
                "completed_at": now,
                "error_message": None,
                "updated_at": func.now(),
            },
        )
        await db.execute(statement)

    async def record_failure(
        self,
        db: AsyncSession,
        event_id: str,
        event_type: str,
        error_message: str,
        recoverable: bool,
    ) -> None:
        """
        Queue a failed live delivery for the recovery job.

        A redelivery that fails again refreshes the error but leaves
        retry_count alone; only recovery attempts count as retries.
        """
        statement = insert(WebhookEvent).values(
            event_id=event_id,
            event_type=event_type,
            status=WebhookEventStatus.FAILED.value,
            recoverable=recoverable,
            error_message=error_message,
        )
        statement = statement.on_conflict_do_update(
            index_elements=[WebhookEvent.event_id],
            set_={
                "status": WebhookEventStatus.FAILED.value,
                "recoverable": recoverable,
                "error_message": error_message,
                "updated_at": func.now(),
            },
        )
        await db.execute(statement)

    async def list_recoverable(
        self,
        db: AsyncSession,
        max_retries: int,
        limit: int,
    ) -> list[WebhookEvent]:
        """Oldest-first batch of failed events still eligible for retry."""
        statement = (
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.FAILED.value,
                WebhookEvent.recoverable.is_(True),  # type: ignore[attr-defined]
                WebhookEvent.retry_count < max_retries,
            )
            .order_by(WebhookEvent.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def mark_recovered(self, db: AsyncSession, event: WebhookEvent) -> WebhookEvent:
        now = datetime.now(UTC)
        return await self.update(
            db,
            event,
            {
                "status": WebhookEventStatus.COMPLETED.value,
                "retry_count": event.retry_count + 1,
                "last_retry_at": now,
                "completed_at": now,
                "error_message": None,
            },
        )

    async def mark_unrecoverable(
        self,
        db: AsyncSession,
        event: WebhookEvent,
        error_message: str,
    ) -> WebhookEvent:
        return await self.update(
            db,
            event,
            {
                "status": WebhookEventStatus.UNRECOVERABLE.value,
                "recoverable": False,
                "last_retry_at": datetime.now(UTC),
                "error_message": error_message,
            },
        )

    async def record_retry_failure(
        self,
        db: AsyncSession,
        event: WebhookEvent,
        error_message: str,
        max_retries: int,
    ) -> WebhookEvent:
        """Count a failed retry; the event becomes unrecoverable at max_retries."""
        retry_count = event.retry_count + 1
        status = (
            WebhookEventStatus.UNRECOVERABLE.value
            if retry_count >= max_retries
            else WebhookEventStatus.FAILED.value
        )
        return await self.update(
            db,
            event,
            {
                "status": status,
                "retry_count": retry_count,
                "last_retry_at": datetime.now(UTC),
                "error_message": error_message,
            },
        )


webhook_event_ops = WebhookEventOperations()
