"""Stripe API access for subscription sync, recovery and plan changes."""

import logging

import stripe
from stripe import StripeError

from creditsync.config import settings
from creditsync.services.stripe_schemas import (
    StripeCharge,
    StripeEvent,
    StripeSubscription,
)

logger = logging.getLogger(__name__)

# Initialize Stripe with secret key
stripe.api_key = settings.stripe_secret_key


class StripeService:
    """
    Handles all Stripe API interactions.

    All methods are static and stateless. Stripe SDK handles connection pooling.
    Responses are validated into the local schemas in stripe_schemas before
    they leave this class; StripeError propagates to the caller, which
    decides whether it is a not-found signal or a transient failure.
    """

    @staticmethod
    def is_not_found_error(error: BaseException) -> bool:
        """
        True when Stripe reports that the requested object does not exist.

        Treated as a drift signal (mark canceled / unrecoverable) rather than
        a failure by the reconciliation and recovery jobs.
        """
        if not isinstance(error, stripe.InvalidRequestError):
            return False
        if error.http_status == 404:
            return True
        return "No such" in (error.user_message or str(error))

    @staticmethod
    def retrieve_subscription(subscription_id: str) -> StripeSubscription:
        """Fetch a subscription from Stripe."""
        try:
            sub = stripe.Subscription.retrieve(subscription_id)
        except StripeError as e:
            logger.warning(f"Failed to retrieve subscription {subscription_id}: {e}")
            raise
        return StripeSubscription.from_stripe(sub)

    @staticmethod
    def retrieve_charge(charge_id: str) -> StripeCharge:
        """Fetch a charge (used to resolve a dispute to its customer)."""
        try:
            charge = stripe.Charge.retrieve(charge_id)
        except StripeError as e:
            logger.warning(f"Failed to retrieve charge {charge_id}: {e}")
            raise
        return StripeCharge.from_stripe(charge)

    @staticmethod
    def retrieve_event(event_id: str) -> StripeEvent:
        """Re-fetch an event for webhook recovery (Stripe keeps events for 30 days)."""
        try:
            event = stripe.Event.retrieve(event_id)
        except StripeError as e:
            logger.warning(f"Failed to retrieve event {event_id}: {e}")
            raise
        return StripeEvent.from_stripe(event)

    @staticmethod
    def construct_webhook_event(payload: bytes, signature: str) -> StripeEvent:
        """
        Verify and construct a webhook event from Stripe.

        Raises ValueError if signature verification fails.
        """
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload,
                signature,
                settings.stripe_webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise ValueError("Invalid webhook signature") from None
        except ValueError as e:
            logger.warning(f"Invalid webhook payload: {e}")
            raise ValueError("Invalid webhook payload") from None
        return StripeEvent.from_stripe(event)

    @staticmethod
    def modify_subscription_price(
        subscription_id: str,
        item_id: str,
        price_id: str,
    ) -> StripeSubscription:
        """
        Switch a subscription to a new price immediately.

        Prorates and invoices the difference right away, so the upgrade has a
        concrete invoice to key its credit grant on.
        """
        try:
            sub = stripe.Subscription.modify(
                subscription_id,
                items=[{"id": item_id, "price": price_id}],
                proration_behavior="always_invoice",
                payment_behavior="error_if_incomplete",
            )
            logger.info(f"Changed subscription {subscription_id} to price {price_id}")
        except StripeError as e:
            logger.error(f"Failed to change subscription price: {e}")
            raise
        return StripeSubscription.from_stripe(sub)

    @staticmethod
    def schedule_price_change(
        subscription: StripeSubscription,
        new_price_id: str,
        change_at: int,
    ) -> str:
        """
        Schedule a price change for `change_at` (unix seconds) via a subscription schedule.

        Any existing schedule on the subscription is released first. Returns
        the new schedule ID.
        """
        try:
            if subscription.schedule:
                StripeService.release_schedule(subscription.schedule)

            schedule = stripe.SubscriptionSchedule.create(from_subscription=subscription.id)
            phase_start = schedule["phases"][0]["start_date"]

            stripe.SubscriptionSchedule.modify(
                schedule["id"],
                end_behavior="release",
                phases=[
                    {
                        "items": [{"price": subscription.price_id, "quantity": 1}],
                        "start_date": phase_start,
                        "end_date": change_at,
                        "proration_behavior": "none",
                    },
                    {
                        "items": [{"price": new_price_id, "quantity": 1}],
                        "start_date": change_at,
                        "proration_behavior": "none",
                    },
                ],
            )
            logger.info(
                f"Scheduled subscription {subscription.id} to move to {new_price_id} at {change_at}"
            )
            return schedule["id"]
        except StripeError as e:
            logger.error(f"Failed to schedule price change: {e}")
            raise

    @staticmethod
    def release_schedule(schedule_id: str) -> None:
        """Release a subscription schedule, leaving the subscription as it is now."""
        try:
            stripe.SubscriptionSchedule.release(schedule_id)
            logger.info(f"Released subscription schedule {schedule_id}")
        except StripeError as e:
            # Already released or completed schedules reject a second release
            if StripeService.is_not_found_error(e) or "released" in str(e):
                logger.info(f"Schedule {schedule_id} already released")
                return
            logger.error(f"Failed to release schedule {schedule_id}: {e}")
            raise


# Singleton instance
stripe_service = StripeService()
