"""Domain operations for SyncRun model."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.domain.base_operations import BaseOperations
from creditsync.models.sync import SyncRun, SyncRunStatus


class SyncRunOperations(BaseOperations[SyncRun]):
    """Lifecycle writes for maintenance job audit rows."""

    def __init__(self) -> None:
        super().__init__(SyncRun)

    async def start(self, db: AsyncSession, job_type: str) -> SyncRun:
        """Insert a running SyncRun and return it (flushed, id populated)."""
        run = SyncRun(job_type=job_type, status=SyncRunStatus.RUNNING.value)
        db.add(run)
        await db.flush()
        await db.refresh(run)
        return run

    async def complete(
        self,
        db: AsyncSession,
        run_id: uuid_pkg.UUID,
        status: str,
        records_processed: int,
        records_fixed: int,
        discrepancies_found: int,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        statement = (
            update(SyncRun)
            .where(SyncRun.id == run_id)
            .values(
                {
                    SyncRun.status: status,
                    SyncRun.completed_at: datetime.now(UTC),
                    SyncRun.records_processed: records_processed,
                    SyncRun.records_fixed: records_fixed,
                    SyncRun.discrepancies_found: discrepancies_found,
                    SyncRun.error_message: error_message,
                    SyncRun.run_metadata: metadata,
                }
            )
        )
        await db.execute(statement)

    async def list_recent(
        self,
        db: AsyncSession,
        job_type: str | None = None,
        limit: int = 20,
    ) -> list[SyncRun]:
        statement = select(SyncRun)
        if job_type:
            statement = statement.where(SyncRun.job_type == job_type)
        statement = statement.order_by(SyncRun.started_at.desc()).limit(limit)  # type: ignore[attr-defined]
        result = await db.execute(statement)
        return list(result.scalars().all())


sync_run_ops = SyncRunOperations()
