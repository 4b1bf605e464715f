"""Stripe webhook handlers and the dispatcher that routes events to them."""

from creditsync.services.webhooks.dispute import DisputeHandler
from creditsync.services.webhooks.payment import PaymentHandler
from creditsync.services.webhooks.registry import WebhookDispatcher, WebhookHandlerFn
from creditsync.services.webhooks.subscription import SubscriptionEventHandler

__all__ = [
    "DisputeHandler",
    "PaymentHandler",
    "SubscriptionEventHandler",
    "WebhookDispatcher",
    "WebhookHandlerFn",
]
