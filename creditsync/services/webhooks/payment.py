"""Payment lifecycle handlers: checkout, renewals, failed payments and refunds."""

import logging
import uuid as uuid_pkg

from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.config.plans import get_plan_for_price_id
from creditsync.core.exceptions import WebhookValidationError
from creditsync.domain import profile_ops
from creditsync.models.subscription import SubscriptionStatus
from creditsync.services.ledger import (
    ClawbackResult,
    CreditLedger,
    invoice_ref,
    payment_intent_ref,
    session_ref,
)
from creditsync.services.stripe_schemas import (
    StripeCharge,
    StripeCheckoutSession,
    StripeEvent,
    StripeInvoice,
)
from creditsync.services.stripe_service import StripeService
from creditsync.services.subscription_sync import SubscriptionSyncService
from creditsync.services.webhooks.common import require_user_id
from creditsync.services.webhooks.registry import WebhookDispatcher

logger = logging.getLogger(__name__)

# Invoices that start a new billing cycle and therefore carry a cycle grant.
# Proration invoices (subscription_update) are covered by the plan-change grant.
GRANTING_BILLING_REASONS = frozenset({"subscription_create", "subscription_cycle"})


def _describe_clawback(result: ClawbackResult) -> str:
    return (
        f"Clawed back {result.credits_clawed_back} credits "
        f"(sub: {result.subscription_clawed}, pur: {result.purchased_clawed}) "
        f"New balances - sub: {result.new_subscription_balance}, "
        f"pur: {result.new_purchased_balance}"
    )


class PaymentHandler:
    """Maps payment events to ledger grants, clawbacks and profile flags."""

    def __init__(
        self,
        stripe: StripeService,
        ledger: CreditLedger,
        subscription_sync: SubscriptionSyncService,
    ):
        self.stripe = stripe
        self.ledger = ledger
        self.subscription_sync = subscription_sync

    def register(self, dispatcher: WebhookDispatcher) -> None:
        dispatcher.register("checkout.session.completed", self.handle_checkout_session_completed)
        dispatcher.register("charge.refunded", self.handle_charge_refunded)
        dispatcher.register("invoice.payment_refunded", self.handle_invoice_payment_refunded)
        dispatcher.register("invoice.payment_succeeded", self.handle_invoice_payment_succeeded)
        dispatcher.register("invoice.payment_failed", self.handle_invoice_payment_failed)

    # ─────────────────────────────────────────────────────────────────────────
    # Checkout
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_checkout_session_completed(
        self,
        db: AsyncSession,
        event: StripeEvent,
    ) -> None:
        session = StripeCheckoutSession.from_stripe(event.data_object)

        raw_user_id = session.user_id
        if not raw_user_id:
            logger.error(f"[CHECKOUT] No user_id in metadata for session {session.id}")
            return
        try:
            user_id = uuid_pkg.UUID(raw_user_id)
        except ValueError:
            raise WebhookValidationError(
                f"Invalid user_id {raw_user_id!r} on session {session.id}",
                event_type=event.type,
            ) from None

        logger.info(f"[CHECKOUT] Checkout completed for user {user_id}, mode: {session.mode}")

        if session.customer:
            await profile_ops.link_stripe_customer(db, user_id, session.customer)

        if session.mode == "subscription":
            await self._grant_initial_subscription_credits(db, user_id, session)
        elif session.mode == "payment":
            await self._grant_credit_pack(db, user_id, session)
        else:
            logger.warning(
                f"[CHECKOUT] Unexpected checkout mode {session.mode!r} for session {session.id}"
            )

    async def _grant_initial_subscription_credits(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        session: StripeCheckoutSession,
    ) -> None:
        if not session.subscription:
            logger.warning(f"[CHECKOUT] Subscription session {session.id} has no subscription")
            return

        stripe_sub = self.stripe.retrieve_subscription(session.subscription)
        plan = get_plan_for_price_id(stripe_sub.price_id)
        if plan is None:
            # customer.subscription.created will surface the unknown price loudly
            logger.error(
                f"[CHECKOUT] Plan resolution failed for price {stripe_sub.price_id} "
                f"(subscription {stripe_sub.id}, session {session.id}, user {user_id})"
            )
            return

        # Same reference as the subscription_create invoice grant, so only one applies
        ref_id = invoice_ref(session.invoice) if session.invoice else session_ref(session.id)
        result = await self.ledger.add_subscription_credits(
            db,
            user_id,
            plan.credits_per_cycle,
            ref_id,
            f"Initial subscription credits - {plan.display_name} plan - "
            f"{plan.credits_per_cycle} credits",
        )
        if result.applied:
            logger.info(
                f"[CHECKOUT] Added {plan.credits_per_cycle} subscription credits to user "
                f"{user_id} for {plan.display_name} plan ({ref_id})"
            )
        else:
            logger.info(f"[CHECKOUT] Credits for {ref_id} already granted, skipping")

    async def _grant_credit_pack(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        session: StripeCheckoutSession,
    ) -> None:
        raw_credits = session.metadata.get("credits", "0")
        try:
            credits = int(raw_credits)
        except ValueError:
            credits = 0
        if credits <= 0:
            logger.error(
                f"[CHECKOUT] Invalid credits {raw_credits!r} in metadata for session {session.id}"
            )
            return

        pack_key = session.metadata.get("pack_key") or "unknown"
        ref_id = (
            payment_intent_ref(session.payment_intent)
            if session.payment_intent
            else session_ref(session.id)
        )
        result = await self.ledger.add_purchased_credits(
            db,
            user_id,
            credits,
            ref_id,
            f"Credit pack purchase - {pack_key} - {credits} credits",
        )
        if result.applied:
            logger.info(
                f"[CHECKOUT] Added {credits} purchased credits to user {user_id} "
                f"(pack: {pack_key}, {ref_id})"
            )
        else:
            logger.info(f"[CHECKOUT] Credit pack {ref_id} already granted, skipping")

    # ─────────────────────────────────────────────────────────────────────────
    # Invoices
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_invoice_payment_succeeded(
        self,
        db: AsyncSession,
        event: StripeEvent,
    ) -> None:
        """Sync the subscription and grant the new cycle's credits, capped at max rollover."""
        invoice = StripeInvoice.from_stripe(event.data_object)
        if not invoice.subscription:
            logger.debug(f"Invoice {invoice.id} is not a subscription invoice, skipping")
            return

        user_id = await require_user_id(
            db, invoice.customer, source=f"invoice {invoice.id}", log_prefix="[RENEWAL]"
        )

        stripe_sub = self.stripe.retrieve_subscription(invoice.subscription)
        await self.subscription_sync.sync_subscription_from_stripe(db, user_id, stripe_sub)

        if invoice.billing_reason not in GRANTING_BILLING_REASONS:
            logger.info(
                f"[RENEWAL] Invoice {invoice.id} billing_reason={invoice.billing_reason}, "
                f"no cycle grant"
            )
            return

        # The sync above already rejected unknown prices
        plan = get_plan_for_price_id(stripe_sub.price_id)
        if plan is None:
            return

        result = await self.ledger.add_subscription_credits(
            db,
            user_id,
            plan.credits_per_cycle,
            invoice_ref(invoice.id),
            f"Subscription renewal - {plan.display_name} plan - up to "
            f"{plan.credits_per_cycle} credits (max rollover {plan.max_rollover})",
            max_balance=plan.max_rollover,
        )
        if result.applied:
            capped = f", capped from {plan.credits_per_cycle}" if result.capped else ""
            logger.info(
                f"[RENEWAL] Added {result.granted} subscription credits to user {user_id}"
                f"{capped} (balance: {result.new_balance}, max: {plan.max_rollover})"
            )
        elif result.capped:
            logger.info(
                f"[RENEWAL] Skipped grant for user {user_id}: already at max rollover "
                f"({result.new_balance}/{plan.max_rollover})"
            )
        else:
            logger.info(f"[RENEWAL] Invoice {invoice.id} already granted, skipping")

    async def handle_invoice_payment_failed(
        self,
        db: AsyncSession,
        event: StripeEvent,
    ) -> None:
        invoice = StripeInvoice.from_stripe(event.data_object)
        if not invoice.customer:
            raise WebhookValidationError(
                f"Missing customer ID on invoice {invoice.id}", event_type=event.type
            )

        user_id = await profile_ops.get_user_id_by_customer(db, invoice.customer)
        if user_id is None:
            logger.warning(f"No profile found for customer {invoice.customer} (failed payment)")
            return

        await profile_ops.set_subscription_state(
            db, user_id, subscription_status=SubscriptionStatus.PAST_DUE.value
        )
        logger.warning(f"Payment failed for user {user_id} (invoice {invoice.id}), marked past_due")

    async def handle_invoice_payment_refunded(
        self,
        db: AsyncSession,
        event: StripeEvent,
    ) -> None:
        """
        Reverse the credits granted under the invoice.

        Unlike a charge refund, an unknown customer is fatal here so that
        Stripe redelivers the event.
        """
        invoice = StripeInvoice.from_stripe(event.data_object)
        logger.info(f"[INVOICE_REFUND] Invoice {invoice.id} payment refunded")

        user_id = await require_user_id(
            db, invoice.customer, source=f"invoice {invoice.id}", log_prefix="[INVOICE_REFUND]"
        )

        ref_id = invoice_ref(invoice.id)
        result = await self.ledger.clawback_from_transaction(
            db, user_id, ref_id, f"Invoice refund: {invoice.id}"
        )
        if result.success:
            logger.info(f"[INVOICE_REFUND] {_describe_clawback(result)}")
        elif result.is_not_found:
            logger.warning(f"[INVOICE_REFUND] No credits granted under {ref_id}, nothing to reverse")
        else:
            logger.error(f"[INVOICE_REFUND] Clawback failed: {result.error_message}")

    # ─────────────────────────────────────────────────────────────────────────
    # Charges
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_charge_refunded(
        self,
        db: AsyncSession,
        event: StripeEvent,
    ) -> None:
        """
        Reverse the grant behind a refunded charge.

        Tries the invoice reference first, then the payment intent. When no
        grant is found under any of them the refund is logged and let through.
        """
        charge = StripeCharge.from_stripe(event.data_object)
        refund_amount = charge.amount_refunded
        if refund_amount == 0:
            logger.info(f"[CHARGE_REFUND] Charge {charge.id} has no refund amount, skipping")
            return

        user_id = await require_user_id(
            db, charge.customer, source=f"charge {charge.id}", log_prefix="[CHARGE_REFUND]"
        )
        logger.info(
            f"[CHARGE_REFUND] Processing refund for charge {charge.id}: "
            f"{refund_amount} cents for user {user_id}"
        )

        references: list[str] = []
        if charge.invoice:
            references.append(invoice_ref(charge.invoice))
        if charge.payment_intent:
            references.append(payment_intent_ref(charge.payment_intent))
        if not references:
            logger.warning(
                f"[CHARGE_REFUND] Charge {charge.id} has no invoice or payment_intent, "
                f"cannot clawback"
            )
            return

        reason = f"Charge refund: {charge.id} ({refund_amount} cents)"
        for ref_id in references:
            result = await self.ledger.clawback_from_transaction(db, user_id, ref_id, reason)
            if result.is_not_found:
                continue
            if result.success:
                logger.info(f"[CHARGE_REFUND] {ref_id}: {_describe_clawback(result)}")
            else:
                logger.error(f"[CHARGE_REFUND] Clawback under {ref_id} failed: {result.error_message}")
            return

        logger.warning(
            f"[CHARGE_REFUND] No grant found under {', '.join(references)} for charge "
            f"{charge.id}; refund processed without clawback"
        )
