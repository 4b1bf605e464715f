"""Plan changes for an existing subscription.

Upgrades apply immediately (prorated and invoiced right away) and grant the
tier difference through the credit calculator. Downgrades are scheduled for
the end of the current period through a Stripe subscription schedule and
never touch the balance.
"""

import logging
import uuid as uuid_pkg
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.config.plans import PlanConfig, get_plan_for_price_id
from creditsync.core.exceptions import PlanChangeError, UnknownPriceError
from creditsync.domain import profile_ops, subscription_ops
from creditsync.models.subscription import SubscriptionStatus
from creditsync.services.credit_calculator import (
    FARMING_THRESHOLD_MULTIPLIER,
    CreditCalculationInput,
    calculate_downgrade_credits,
    calculate_upgrade_credits,
    get_explanation,
)
from creditsync.services.ledger import CreditLedger, invoice_ref
from creditsync.services.stripe_schemas import StripeSubscription
from creditsync.services.stripe_service import StripeService
from creditsync.services.subscription_sync import SubscriptionSyncService, extract_period

logger = logging.getLogger(__name__)

CHANGEABLE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


@dataclass
class PlanChangeResult:
    subscription_id: str
    status: str  # "upgraded" or "scheduled"
    current_price_id: str
    new_price_id: str
    effective_immediately: bool
    effective_date: datetime | None = None
    schedule_id: str | None = None
    credits_added: int = 0
    credit_reason: str | None = None


def is_downgrade(current: PlanConfig, target: PlanConfig) -> bool:
    """A change is a downgrade when the target plan grants fewer credits per cycle."""
    return target.credits_per_cycle < current.credits_per_cycle


class SubscriptionChangeService:
    """Upgrades, scheduled downgrades and cancellation of scheduled changes."""

    def __init__(
        self,
        stripe: StripeService,
        ledger: CreditLedger,
        subscription_sync: SubscriptionSyncService,
        farming_multiplier: float = FARMING_THRESHOLD_MULTIPLIER,
    ):
        self.stripe = stripe
        self.ledger = ledger
        self.subscription_sync = subscription_sync
        self.farming_multiplier = farming_multiplier

    async def _get_changeable_subscription(self, db: AsyncSession, user_id: uuid_pkg.UUID):
        subscription = await subscription_ops.get_current_for_user(db, user_id)
        if subscription is None or subscription.status not in CHANGEABLE_STATUSES:
            raise PlanChangeError("NO_ACTIVE_SUBSCRIPTION", "No active subscription found")
        return subscription

    async def change_plan(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        target_price_id: str,
    ) -> PlanChangeResult:
        target_plan = get_plan_for_price_id(target_price_id)
        if target_plan is None:
            raise UnknownPriceError(target_price_id)

        subscription = await self._get_changeable_subscription(db, user_id)
        subscription_id = subscription.id

        # Stripe is the source of truth for the current price
        stripe_sub = self.stripe.retrieve_subscription(subscription_id)
        current_price_id = stripe_sub.price_id
        if current_price_id == target_price_id:
            raise PlanChangeError("SAME_PLAN", "Target plan is the same as current plan")

        current_plan = get_plan_for_price_id(current_price_id)
        if current_plan is None:
            raise UnknownPriceError(current_price_id)

        logger.info(
            f"[PLAN_CHANGE] User {user_id} subscription {subscription_id}: "
            f"{current_plan.key} → {target_plan.key}"
        )

        if is_downgrade(current_plan, target_plan):
            return await self._schedule_downgrade(db, user_id, stripe_sub, target_plan)
        return await self._apply_upgrade(db, user_id, stripe_sub, current_plan, target_plan)

    async def _apply_upgrade(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        stripe_sub: StripeSubscription,
        current_plan: PlanConfig,
        target_plan: PlanConfig,
    ) -> PlanChangeResult:
        if stripe_sub.item_id is None:
            raise PlanChangeError(
                "INVALID_SUBSCRIPTION_STATE", f"Subscription {stripe_sub.id} has no items"
            )

        # A pending downgrade schedule would otherwise revert the upgrade at period end
        if stripe_sub.schedule:
            self.stripe.release_schedule(stripe_sub.schedule)

        updated = self.stripe.modify_subscription_price(
            stripe_sub.id, stripe_sub.item_id, target_plan.price_id
        )
        await self.subscription_sync.sync_subscription_from_stripe(db, user_id, updated)
        await subscription_ops.set_scheduled_change(db, stripe_sub.id, None, None)

        profile = await profile_ops.get(db, user_id)
        calculation_input = CreditCalculationInput(
            current_balance=profile.subscription_credits_balance if profile else 0,
            previous_tier_credits=current_plan.credits_per_cycle,
            new_tier_credits=target_plan.credits_per_cycle,
        )
        calculation = calculate_upgrade_credits(
            calculation_input.current_balance,
            calculation_input.previous_tier_credits,
            calculation_input.new_tier_credits,
            farming_multiplier=self.farming_multiplier,
        )
        explanation = get_explanation(calculation, calculation_input)
        logger.info(f"[PLAN_CHANGE] {explanation}")

        credits_added = 0
        if not calculation.is_legitimate:
            logger.warning(
                f"[PLAN_CHANGE] Upgrade grant blocked for user {user_id} "
                f"(balance {calculation_input.current_balance}, "
                f"max {calculation.max_reasonable_balance})"
            )
        elif calculation.credits_to_add > 0:
            if updated.latest_invoice:
                result = await self.ledger.add_subscription_credits(
                    db,
                    user_id,
                    calculation.credits_to_add,
                    invoice_ref(updated.latest_invoice),
                    f"Plan upgrade {current_plan.display_name} → {target_plan.display_name} - "
                    f"{calculation.credits_to_add} credits",
                )
                if result.applied:
                    credits_added = calculation.credits_to_add
            else:
                logger.warning(
                    f"[PLAN_CHANGE] No invoice on upgraded subscription {updated.id}, "
                    f"skipping {calculation.credits_to_add} credit grant"
                )

        return PlanChangeResult(
            subscription_id=updated.id,
            status="upgraded",
            current_price_id=current_plan.price_id,
            new_price_id=target_plan.price_id,
            effective_immediately=True,
            credits_added=credits_added,
            credit_reason=calculation.reason.value,
        )

    async def _schedule_downgrade(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        stripe_sub: StripeSubscription,
        target_plan: PlanConfig,
    ) -> PlanChangeResult:
        _, period_end = extract_period(stripe_sub)
        schedule_id = self.stripe.schedule_price_change(
            stripe_sub, target_plan.price_id, int(period_end.timestamp())
        )
        await subscription_ops.set_scheduled_change(
            db, stripe_sub.id, target_plan.price_id, period_end
        )

        calculation = calculate_downgrade_credits()
        logger.info(
            f"[PLAN_CHANGE] Downgrade for user {user_id} to {target_plan.key} scheduled at "
            f"{period_end.isoformat()}; balance unchanged until renewal"
        )

        return PlanChangeResult(
            subscription_id=stripe_sub.id,
            status="scheduled",
            current_price_id=stripe_sub.price_id or "",
            new_price_id=target_plan.price_id,
            effective_immediately=False,
            effective_date=period_end,
            schedule_id=schedule_id,
            credits_added=calculation.credits_to_add,
            credit_reason=calculation.reason.value,
        )

    async def cancel_scheduled_change(self, db: AsyncSession, user_id: uuid_pkg.UUID) -> str:
        """Release the pending downgrade schedule and clear it locally. Returns the subscription ID."""
        subscription = await self._get_changeable_subscription(db, user_id)
        if not subscription.scheduled_price_id:
            raise PlanChangeError("NO_SCHEDULED_CHANGE", "No scheduled plan change to cancel")

        subscription_id = subscription.id
        logger.info(
            f"[PLAN_CHANGE] Canceling scheduled change to {subscription.scheduled_price_id} "
            f"for user {user_id} ({subscription_id})"
        )

        stripe_sub = self.stripe.retrieve_subscription(subscription_id)
        if stripe_sub.schedule:
            self.stripe.release_schedule(stripe_sub.schedule)

        await subscription_ops.set_scheduled_change(db, subscription_id, None, None)
        return subscription_id
