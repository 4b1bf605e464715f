"""Unit tests for SubscriptionEventHandler."""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from creditsync.core.exceptions import ProfileNotFoundError
from creditsync.services.webhooks.registry import WebhookDispatcher
from creditsync.services.webhooks.subscription import SubscriptionEventHandler

from tests.helpers.mock_factories import make_event, make_mock_db, stripe_subscription_payload

USER_ID = uuid.uuid4()


def _make_handler(user_id=USER_ID):
    sync = MagicMock()
    sync.get_user_id_from_customer_id = AsyncMock(return_value=user_id)
    sync.sync_subscription_from_stripe = AsyncMock()
    sync.mark_subscription_canceled = AsyncMock()
    return SubscriptionEventHandler(sync), sync


class TestRegistration:
    def test_registers_subscription_events(self):
        handler, _ = _make_handler()
        dispatcher = WebhookDispatcher()
        handler.register(dispatcher)

        assert dispatcher.event_types == [
            "customer.subscription.created",
            "customer.subscription.deleted",
            "customer.subscription.updated",
        ]


class TestSubscriptionUpdated:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event_type", ["customer.subscription.created", "customer.subscription.updated"]
    )
    async def test_syncs_for_known_customer(self, event_type):
        handler, sync = _make_handler()
        db = make_mock_db()
        event = make_event(event_type, stripe_subscription_payload(price_id="price_pro"))

        await handler.handle_subscription_updated(db, event)

        sync.get_user_id_from_customer_id.assert_awaited_once_with(db, "cus_test")
        args = sync.sync_subscription_from_stripe.call_args[0]
        assert args[1] == USER_ID
        assert args[2].id == "sub_test"
        assert args[2].price_id == "price_pro"

    @pytest.mark.asyncio
    async def test_falls_back_to_metadata_user_id(self):
        handler, sync = _make_handler(user_id=None)
        other_user = uuid.uuid4()
        event = make_event(
            "customer.subscription.created",
            stripe_subscription_payload(metadata={"user_id": str(other_user)}),
        )

        await handler.handle_subscription_updated(make_mock_db(), event)

        assert sync.sync_subscription_from_stripe.call_args[0][1] == other_user

    @pytest.mark.asyncio
    async def test_unknown_customer_raises(self):
        handler, sync = _make_handler(user_id=None)
        event = make_event("customer.subscription.updated", stripe_subscription_payload())

        with pytest.raises(ProfileNotFoundError):
            await handler.handle_subscription_updated(make_mock_db(), event)

        sync.sync_subscription_from_stripe.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_metadata_user_id_raises(self):
        handler, _ = _make_handler(user_id=None)
        event = make_event(
            "customer.subscription.updated",
            stripe_subscription_payload(metadata={"user_id": "not-a-uuid"}),
        )

        with pytest.raises(ProfileNotFoundError):
            await handler.handle_subscription_updated(make_mock_db(), event)


class TestSubscriptionDeleted:
    @pytest.mark.asyncio
    async def test_marks_canceled(self):
        handler, sync = _make_handler()
        db = make_mock_db()
        event = make_event(
            "customer.subscription.deleted", stripe_subscription_payload(status="canceled")
        )

        await handler.handle_subscription_deleted(db, event)

        sync.mark_subscription_canceled.assert_awaited_once_with(db, USER_ID, "sub_test")
        sync.sync_subscription_from_stripe.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_customer_raises(self):
        handler, sync = _make_handler(user_id=None)
        event = make_event("customer.subscription.deleted", stripe_subscription_payload())

        with pytest.raises(ProfileNotFoundError):
            await handler.handle_subscription_deleted(make_mock_db(), event)

        sync.mark_subscription_canceled.assert_not_called()
