"""Domain operations for Subscription model."""

import uuid as uuid_pkg
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.domain.base_operations import BaseOperations
from creditsync.models.subscription import (
    RECONCILABLE_STATUSES,
    Subscription,
    SubscriptionStatus,
)


class SubscriptionOperations(BaseOperations[Subscription]):
    """Queries and writes for the local subscription mirror."""

    def __init__(self) -> None:
        super().__init__(Subscription)

    async def get_current_for_user(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
    ) -> Subscription | None:
        """Most recent non-canceled subscription for a user."""
        statement = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status != SubscriptionStatus.CANCELED.value,
            )
            .order_by(Subscription.current_period_end.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        result = await db.execute(statement)
        return result.scalars().first()

    async def upsert(self, db: AsyncSession, values: dict[str, Any]) -> None:
        """
        Insert or overwrite a subscription row keyed by its Stripe ID.

        Uses INSERT ... ON CONFLICT so concurrent deliveries for the same
        subscription converge on the last write instead of failing.
        """
        statement = insert(Subscription).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=[Subscription.id],
            set_={key: value for key, value in values.items() if key != "id"}
            | {"updated_at": func.now()},
        )
        await db.execute(statement)

    async def mark_canceled(
        self,
        db: AsyncSession,
        subscription_id: str,
        canceled_at: datetime,
    ) -> None:
        statement = (
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values(status=SubscriptionStatus.CANCELED.value, canceled_at=canceled_at)
        )
        await db.execute(statement)

    async def update_period(
        self,
        db: AsyncSession,
        subscription_id: str,
        current_period_start: datetime,
        current_period_end: datetime,
    ) -> None:
        statement = (
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values(
                current_period_start=current_period_start,
                current_period_end=current_period_end,
            )
        )
        await db.execute(statement)

    async def set_scheduled_change(
        self,
        db: AsyncSession,
        subscription_id: str,
        scheduled_price_id: str | None,
        scheduled_change_date: datetime | None,
    ) -> None:
        """Record (or clear, with None) a pending price change."""
        statement = (
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values(
                scheduled_price_id=scheduled_price_id,
                scheduled_change_date=scheduled_change_date,
            )
        )
        await db.execute(statement)

    async def list_expired_active(
        self,
        db: AsyncSession,
        now: datetime,
    ) -> list[Subscription]:
        """Active subscriptions whose current period has already ended."""
        statement = (
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.current_period_end < now,
            )
            .order_by(Subscription.current_period_end.asc())  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def count_reconcilable(self, db: AsyncSession) -> int:
        statement = select(func.count()).select_from(Subscription).where(
            Subscription.status.in_(RECONCILABLE_STATUSES)  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        return result.scalar() or 0

    async def list_reconcilable(
        self,
        db: AsyncSession,
        after: str | None = None,
        limit: int = 40,
    ) -> list[Subscription]:
        """
        Active, trialing and past-due subscriptions ordered by id, after a cursor.

        Keyset paging: a batch that cancels rows cannot shift the next one.
        """
        statement = select(Subscription).where(
            Subscription.status.in_(RECONCILABLE_STATUSES)  # type: ignore[attr-defined]
        )
        if after is not None:
            statement = statement.where(Subscription.id > after)
        statement = statement.order_by(Subscription.id.asc()).limit(limit)  # type: ignore[attr-defined]
        result = await db.execute(statement)
        return list(result.scalars().all())


subscription_ops = SubscriptionOperations()
