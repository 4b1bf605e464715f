"""Subscription sync - the single write path from Stripe subscription state to local state.

Used by the live webhook handlers and by the reconciliation jobs, so the
price → plan mapping and period handling live in exactly one place.
"""

import logging
import uuid as uuid_pkg
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.config.plans import get_plan_for_price_id
from creditsync.core.exceptions import InvalidSubscriptionPeriodError, UnknownPriceError
from creditsync.domain import profile_ops, subscription_ops
from creditsync.models.subscription import SubscriptionStatus
from creditsync.services.stripe_schemas import StripeSubscription

logger = logging.getLogger(__name__)


def _to_datetime(subscription_id: str, field: str, value: Any) -> datetime:
    # bool is an int subclass; a boolean period is corrupt data, not a timestamp
    if value is None:
        raise InvalidSubscriptionPeriodError(subscription_id, f"{field} is missing")
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise InvalidSubscriptionPeriodError(
            subscription_id, f"{field} is not numeric ({value!r})"
        )
    return datetime.fromtimestamp(value, tz=UTC)


def extract_period(stripe_sub: StripeSubscription) -> tuple[datetime, datetime]:
    """Validated (current_period_start, current_period_end) of a Stripe subscription."""
    start = _to_datetime(stripe_sub.id, "current_period_start", stripe_sub.current_period_start)
    end = _to_datetime(stripe_sub.id, "current_period_end", stripe_sub.current_period_end)
    return start, end


class SubscriptionSyncService:
    """Mirrors Stripe subscriptions into the subscriptions table and the profile."""

    async def sync_subscription_from_stripe(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        stripe_sub: StripeSubscription,
    ) -> None:
        """
        Upsert the local subscription and profile from Stripe's object.

        Raises UnknownPriceError when the price is not in the plan catalog
        and InvalidSubscriptionPeriodError when the period bounds are missing
        or non-numeric; nothing is written in either case.
        """
        price_id = stripe_sub.price_id
        plan = get_plan_for_price_id(price_id)
        if plan is None:
            logger.error(f"Unknown price {price_id} on subscription {stripe_sub.id}")
            raise UnknownPriceError(price_id)

        period_start, period_end = extract_period(stripe_sub)
        canceled_at = (
            datetime.fromtimestamp(stripe_sub.canceled_at, tz=UTC)
            if stripe_sub.canceled_at
            else None
        )

        values: dict[str, Any] = {
            "id": stripe_sub.id,
            "user_id": user_id,
            "status": stripe_sub.status,
            "price_id": price_id,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "cancel_at_period_end": stripe_sub.cancel_at_period_end,
            "canceled_at": canceled_at,
        }

        # A scheduled downgrade that has now taken effect is no longer pending
        existing = await subscription_ops.get(db, stripe_sub.id)
        if existing is not None and existing.scheduled_price_id == price_id:
            values["scheduled_price_id"] = None
            values["scheduled_change_date"] = None

        await subscription_ops.upsert(db, values)
        await profile_ops.set_subscription_state(
            db,
            user_id,
            subscription_status=stripe_sub.status,
            subscription_tier=plan.key,
        )

        logger.info(
            f"Synced subscription {stripe_sub.id} for user {user_id}: "
            f"status={stripe_sub.status}, tier={plan.key}"
        )

    async def mark_subscription_canceled(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        subscription_id: str,
    ) -> None:
        """Cancel locally (subscription row and profile), e.g. when Stripe no longer has it."""
        await subscription_ops.mark_canceled(db, subscription_id, datetime.now(UTC))
        await profile_ops.set_subscription_state(
            db, user_id, subscription_status=SubscriptionStatus.CANCELED.value
        )
        logger.info(f"Marked subscription {subscription_id} canceled for user {user_id}")

    async def update_subscription_period(
        self,
        db: AsyncSession,
        subscription_id: str,
        stripe_sub: StripeSubscription,
    ) -> None:
        """Patch only the billing period (subscription still active, renewal event missed)."""
        period_start, period_end = extract_period(stripe_sub)
        await subscription_ops.update_period(db, subscription_id, period_start, period_end)
        logger.info(f"Extended subscription {subscription_id} period to {period_end.isoformat()}")

    async def get_user_id_from_customer_id(
        self,
        db: AsyncSession,
        customer_id: str,
    ) -> uuid_pkg.UUID | None:
        return await profile_ops.get_user_id_by_customer(db, customer_id)
