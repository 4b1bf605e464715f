"""Domain operations for DisputeEvent model."""

import uuid as uuid_pkg
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.domain.base_operations import BaseOperations
from creditsync.models.billing import DisputeEvent, DisputeEventStatus


class DisputeOperations(BaseOperations[DisputeEvent]):
    """Persistence for the dispute audit trail."""

    def __init__(self) -> None:
        super().__init__(DisputeEvent)

    async def get_by_dispute_id(
        self,
        db: AsyncSession,
        dispute_id: str,
    ) -> DisputeEvent | None:
        statement = select(DisputeEvent).where(DisputeEvent.dispute_id == dispute_id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def record_created(
        self,
        db: AsyncSession,
        dispute_id: str,
        user_id: uuid_pkg.UUID,
        charge_id: str,
        amount_cents: int,
        credits_held: int,
        reason: str | None,
    ) -> None:
        """
        Insert the dispute row, or refresh it on redelivery.

        Keyed on dispute_id so a replayed dispute.created never creates a
        second row.
        """
        values = {
            "dispute_id": dispute_id,
            "user_id": user_id,
            "charge_id": charge_id,
            "amount_cents": amount_cents,
            "credits_held": credits_held,
            "status": DisputeEventStatus.CREATED.value,
            "reason": reason,
        }
        statement = insert(DisputeEvent).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=[DisputeEvent.dispute_id],
            set_={
                "amount_cents": amount_cents,
                "credits_held": credits_held,
                "reason": reason,
                "updated_at": func.now(),
            },
        )
        await db.execute(statement)

    async def set_status(
        self,
        db: AsyncSession,
        dispute_id: str,
        status: str,
        resolved_at: datetime | None = None,
    ) -> DisputeEvent | None:
        """Move a dispute to a new status. Returns None if it was never recorded."""
        dispute = await self.get_by_dispute_id(db, dispute_id)
        if dispute is None:
            return None
        updates: dict[str, object] = {"status": status}
        if resolved_at is not None:
            updates["resolved_at"] = resolved_at
        return await self.update(db, dispute, updates)

    async def record_resolution(
        self,
        db: AsyncSession,
        dispute_id: str,
        user_id: uuid_pkg.UUID,
        charge_id: str,
        amount_cents: int,
        reason: str | None,
        status: str,
        resolved_at: datetime | None = None,
    ) -> None:
        """
        Record a status change for a dispute whose created event has not landed yet.

        No credits are held on this path. If the created event is stored
        concurrently, the status from this call wins over its initial one.
        """
        statement = insert(DisputeEvent).values(
            dispute_id=dispute_id,
            user_id=user_id,
            charge_id=charge_id,
            amount_cents=amount_cents,
            credits_held=0,
            status=status,
            reason=reason,
            resolved_at=resolved_at,
        )
        statement = statement.on_conflict_do_update(
            index_elements=[DisputeEvent.dispute_id],
            set_={
                "status": status,
                "resolved_at": func.coalesce(
                    statement.excluded.resolved_at, DisputeEvent.resolved_at
                ),
                "updated_at": func.now(),
            },
        )
        await db.execute(statement)


dispute_ops = DisputeOperations()
