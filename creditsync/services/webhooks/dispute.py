"""Dispute handlers: account flagging, credit holds and the dispute audit trail."""

import logging
import math
import uuid as uuid_pkg
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.core.exceptions import LedgerError, WebhookValidationError
from creditsync.domain import dispute_ops, profile_ops
from creditsync.models.billing import DisputeEventStatus
from creditsync.models.profile import DisputeStatus
from creditsync.services.ledger import ClawbackPool, CreditLedger, dispute_ref
from creditsync.services.stripe_schemas import StripeDispute, StripeEvent
from creditsync.services.stripe_service import StripeService
from creditsync.services.webhooks.common import require_user_id
from creditsync.services.webhooks.registry import WebhookDispatcher

logger = logging.getLogger(__name__)

# Estimated value of one credit, used to size the hold on a disputed charge
DISPUTE_CENTS_PER_CREDIT = 10


# Stored statuses after which a late or replayed created event changes nothing
SETTLED_STATUSES = frozenset({DisputeEventStatus.WON.value, DisputeEventStatus.CLOSED.value})


def credits_to_hold(amount_cents: int, cents_per_credit: int = DISPUTE_CENTS_PER_CREDIT) -> int:
    return math.ceil(amount_cents / cents_per_credit)


class DisputeHandler:
    """
    Handles Stripe charge disputes.

    A new dispute flags the profile (dispute_status=pending), holds an
    estimated number of credits through an amount-based clawback and writes
    a DisputeEvent row. The flag and the audit row persist even when the
    clawback itself fails; the hold is then reconciled by an admin.

    Events may arrive in any order. An updated or closed event for a dispute
    not yet recorded writes the row itself, and a created event for a
    dispute already won or closed leaves the account alone.
    """

    def __init__(
        self,
        stripe: StripeService,
        ledger: CreditLedger,
        cents_per_credit: int = DISPUTE_CENTS_PER_CREDIT,
    ):
        self.stripe = stripe
        self.ledger = ledger
        self.cents_per_credit = cents_per_credit

    def register(self, dispatcher: WebhookDispatcher) -> None:
        dispatcher.register("charge.dispute.created", self.handle_dispute_created)
        dispatcher.register("charge.dispute.updated", self.handle_dispute_updated)
        dispatcher.register("charge.dispute.closed", self.handle_dispute_closed)

    async def _resolve_user(
        self, db: AsyncSession, dispute: StripeDispute, event: StripeEvent
    ) -> uuid_pkg.UUID:
        """Charge owner, looked up through the charge's Stripe customer."""
        if not dispute.charge:
            logger.error(f"[DISPUTE] No charge ID in dispute {dispute.id}")
            raise WebhookValidationError(
                f"Invalid dispute {dispute.id}: missing charge ID", event_type=event.type
            )
        charge = self.stripe.retrieve_charge(dispute.charge)
        return await require_user_id(
            db, charge.customer, source=f"charge {charge.id}", log_prefix="[DISPUTE]"
        )

    async def handle_dispute_created(self, db: AsyncSession, event: StripeEvent) -> None:
        dispute = StripeDispute.from_stripe(event.data_object)

        existing = await dispute_ops.get_by_dispute_id(db, dispute.id)
        if existing is not None and existing.status in SETTLED_STATUSES:
            logger.info(
                f"[DISPUTE] Dispute {dispute.id} already {existing.status}, "
                f"not flagging account"
            )
            return

        logger.info(
            f"[DISPUTE] Charge dispute {dispute.id} created for charge {dispute.charge}, "
            f"amount: {dispute.amount} cents"
        )

        user_id = await self._resolve_user(db, dispute, event)

        await profile_ops.set_dispute_status(db, user_id, DisputeStatus.PENDING.value)

        held = credits_to_hold(dispute.amount, self.cents_per_credit)
        logger.info(
            f"[DISPUTE] Holding {held} credits for dispute {dispute.id} "
            f"(amount: {dispute.amount} cents)"
        )

        try:
            async with db.begin_nested():
                result = await self.ledger.clawback_credits(
                    db,
                    user_id,
                    held,
                    f"Dispute hold: {dispute.id}",
                    dispute_ref(dispute.id),
                    pool=ClawbackPool.AUTO,
                )
        except LedgerError as e:
            logger.error(f"[DISPUTE] Clawback failed for dispute {dispute.id}: {e}")
        else:
            if result.success:
                logger.info(
                    f"[DISPUTE] Clawed back {result.credits_clawed_back} credits "
                    f"(sub: {result.subscription_clawed}, pur: {result.purchased_clawed})"
                )
            else:
                logger.error(
                    f"[DISPUTE] Clawback rejected for dispute {dispute.id}: {result.error_message}"
                )

        await dispute_ops.record_created(
            db,
            dispute_id=dispute.id,
            user_id=user_id,
            charge_id=dispute.charge,
            amount_cents=dispute.amount,
            credits_held=held,
            reason=dispute.reason,
        )

        logger.warning(
            f"[DISPUTE_ALERT] User {user_id} disputed charge {dispute.charge} for "
            f"{dispute.amount} cents (reason: {dispute.reason}). "
            f"Account flagged, {held} credits held."
        )

    async def _record_status(
        self,
        db: AsyncSession,
        dispute: StripeDispute,
        event: StripeEvent,
        status: DisputeEventStatus,
        resolved_at: datetime | None,
    ) -> uuid_pkg.UUID:
        """Move the stored dispute to status, creating the row if created has not landed."""
        record = await dispute_ops.set_status(db, dispute.id, status.value, resolved_at=resolved_at)
        if record is not None:
            return record.user_id

        logger.warning(
            f"[DISPUTE] {event.type} for {dispute.id} arrived before the dispute was recorded"
        )
        user_id = await self._resolve_user(db, dispute, event)
        await dispute_ops.record_resolution(
            db,
            dispute_id=dispute.id,
            user_id=user_id,
            charge_id=dispute.charge,
            amount_cents=dispute.amount,
            reason=dispute.reason,
            status=status.value,
            resolved_at=resolved_at,
        )
        return user_id

    async def handle_dispute_updated(self, db: AsyncSession, event: StripeEvent) -> None:
        dispute = StripeDispute.from_stripe(event.data_object)
        logger.info(f"[DISPUTE] Dispute {dispute.id} updated, status: {dispute.status}")

        won = dispute.status == "won"
        status = DisputeEventStatus.WON if won else DisputeEventStatus.UPDATED
        user_id = await self._record_status(
            db, dispute, event, status, datetime.now(UTC) if won else None
        )

        if won:
            await profile_ops.set_dispute_status(db, user_id, DisputeStatus.RESOLVED.value)
            logger.info(f"[DISPUTE] Dispute {dispute.id} won, account {user_id} restored")

    async def handle_dispute_closed(self, db: AsyncSession, event: StripeEvent) -> None:
        dispute = StripeDispute.from_stripe(event.data_object)
        logger.info(f"[DISPUTE] Dispute {dispute.id} closed, status: {dispute.status}")

        await self._record_status(
            db, dispute, event, DisputeEventStatus.CLOSED, datetime.now(UTC)
        )
