"""Subscription lifecycle handlers (customer.subscription.*)."""

import logging
import uuid as uuid_pkg

from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.core.exceptions import ProfileNotFoundError
from creditsync.services.stripe_schemas import StripeEvent, StripeSubscription
from creditsync.services.subscription_sync import SubscriptionSyncService
from creditsync.services.webhooks.registry import WebhookDispatcher

logger = logging.getLogger(__name__)


class SubscriptionEventHandler:
    """Mirrors subscription events into local state through the sync service."""

    def __init__(self, subscription_sync: SubscriptionSyncService):
        self.subscription_sync = subscription_sync

    def register(self, dispatcher: WebhookDispatcher) -> None:
        dispatcher.register("customer.subscription.created", self.handle_subscription_updated)
        dispatcher.register("customer.subscription.updated", self.handle_subscription_updated)
        dispatcher.register("customer.subscription.deleted", self.handle_subscription_deleted)

    async def _resolve_user_id(
        self,
        db: AsyncSession,
        stripe_sub: StripeSubscription,
    ) -> uuid_pkg.UUID:
        user_id = await self.subscription_sync.get_user_id_from_customer_id(db, stripe_sub.customer)
        if user_id is not None:
            return user_id

        # subscription.created can beat checkout.session.completed, which links the customer
        metadata_user_id = stripe_sub.metadata.get("user_id")
        if metadata_user_id:
            try:
                return uuid_pkg.UUID(metadata_user_id)
            except ValueError:
                logger.warning(
                    f"Ignoring invalid user_id {metadata_user_id!r} on subscription {stripe_sub.id}"
                )

        logger.error(f"No profile found for customer {stripe_sub.customer} ({stripe_sub.id})")
        raise ProfileNotFoundError(stripe_sub.customer)

    async def handle_subscription_updated(self, db: AsyncSession, event: StripeEvent) -> None:
        stripe_sub = StripeSubscription.from_stripe(event.data_object)
        user_id = await self._resolve_user_id(db, stripe_sub)
        await self.subscription_sync.sync_subscription_from_stripe(db, user_id, stripe_sub)

    async def handle_subscription_deleted(self, db: AsyncSession, event: StripeEvent) -> None:
        stripe_sub = StripeSubscription.from_stripe(event.data_object)
        user_id = await self._resolve_user_id(db, stripe_sub)
        await self.subscription_sync.mark_subscription_canceled(db, user_id, stripe_sub.id)
