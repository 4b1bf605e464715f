"""Composition root: builds the service graph once at startup."""

from dataclasses import dataclass

from creditsync.config.settings import Settings
from creditsync.services.ledger import CreditLedger
from creditsync.services.reconciliation import ReconciliationService
from creditsync.services.stripe_service import StripeService, stripe_service
from creditsync.services.subscription_change import SubscriptionChangeService
from creditsync.services.subscription_sync import SubscriptionSyncService
from creditsync.services.webhooks import (
    DisputeHandler,
    PaymentHandler,
    SubscriptionEventHandler,
    WebhookDispatcher,
)


@dataclass
class Services:
    stripe: StripeService
    ledger: CreditLedger
    subscription_sync: SubscriptionSyncService
    dispatcher: WebhookDispatcher
    reconciliation: ReconciliationService
    subscription_change: SubscriptionChangeService


def build_dispatcher(
    stripe: StripeService,
    ledger: CreditLedger,
    subscription_sync: SubscriptionSyncService,
    dispute_cents_per_credit: int,
) -> WebhookDispatcher:
    dispatcher = WebhookDispatcher()
    PaymentHandler(stripe, ledger, subscription_sync).register(dispatcher)
    DisputeHandler(stripe, ledger, cents_per_credit=dispute_cents_per_credit).register(dispatcher)
    SubscriptionEventHandler(subscription_sync).register(dispatcher)
    return dispatcher


def build_services(settings: Settings, stripe: StripeService = stripe_service) -> Services:
    """Wire every service from settings. Called from the app lifespan and the scheduler."""
    ledger = CreditLedger()
    subscription_sync = SubscriptionSyncService()
    dispatcher = build_dispatcher(
        stripe, ledger, subscription_sync, settings.dispute_cents_per_credit
    )
    reconciliation = ReconciliationService(
        stripe,
        subscription_sync,
        dispatcher,
        batch_size=settings.reconcile_batch_size,
        rate_limit_delay_ms=settings.stripe_rate_limit_delay_ms,
        drift_tolerance_hours=settings.period_drift_tolerance_hours,
        webhook_batch_size=settings.webhook_recovery_batch_size,
        max_retries=settings.webhook_max_retries,
    )
    subscription_change = SubscriptionChangeService(
        stripe,
        ledger,
        subscription_sync,
        farming_multiplier=settings.farming_threshold_multiplier,
    )
    return Services(
        stripe=stripe,
        ledger=ledger,
        subscription_sync=subscription_sync,
        dispatcher=dispatcher,
        reconciliation=reconciliation,
        subscription_change=subscription_change,
    )
