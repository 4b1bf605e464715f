"""Sync models - maintenance job audit rows and the failed-webhook queue."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import Column, DateTime, Index, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field

from creditsync.models.base import TimestampMixin, UUIDMixin


class SyncJobType(str, Enum):
    """Scheduled maintenance jobs."""

    EXPIRATION_CHECK = "expiration_check"
    FULL_RECONCILIATION = "full_reconciliation"
    WEBHOOK_RECOVERY = "webhook_recovery"


class SyncRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookEventStatus(str, Enum):
    """Processing state of an inbound Stripe event."""

    FAILED = "failed"
    COMPLETED = "completed"
    UNRECOVERABLE = "unrecoverable"


class SyncRun(UUIDMixin, table=True):
    """
    One execution of a maintenance job.

    Inserted with status=running when the job starts and completed exactly
    once, either with final counts or with status=failed and the partial
    counts collected before the failure.
    """

    __tablename__ = "sync_runs"
    __table_args__ = (Index("ix_sync_runs_job_started", "job_type", "started_at"),)

    job_type: str = Field(
        sa_column=Column(String(30), nullable=False),
    )
    status: str = Field(
        default=SyncRunStatus.RUNNING.value,
        sa_column=Column(String(20), nullable=False),
    )
    records_processed: int = Field(default=0, nullable=False)
    records_fixed: int = Field(default=0, nullable=False)
    discrepancies_found: int = Field(default=0, nullable=False)
    error_message: str | None = Field(default=None, nullable=True)
    # "metadata" is reserved on declarative classes, so the attribute is renamed
    run_metadata: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column("metadata", JSONB, nullable=True),
    )

    started_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )
    completed_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )


class WebhookEvent(UUIDMixin, TimestampMixin, table=True):
    """
    Processing record for an inbound Stripe event.

    A completed row makes redelivery of the same event a no-op. Failed rows
    with recoverable=True are retried by the webhook recovery job until
    retry_count reaches the configured maximum.
    """

    __tablename__ = "webhook_events"
    __table_args__ = (Index("ix_webhook_events_status_created", "status", "created_at"),)

    event_id: str = Field(max_length=255, nullable=False, unique=True, index=True)
    event_type: str = Field(max_length=100, nullable=False)
    status: str = Field(
        default=WebhookEventStatus.FAILED.value,
        sa_column=Column(String(20), nullable=False),
    )
    recoverable: bool = Field(
        default=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("true")},
    )
    retry_count: int = Field(
        default=0,
        nullable=False,
        sa_column_kwargs={"server_default": text("0")},
    )
    last_retry_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    error_message: str | None = Field(default=None, nullable=True)
    completed_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
