"""Unit tests for PaymentHandler: checkout grants, renewals and refund clawbacks."""

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from creditsync.core.exceptions import (
    LedgerError,
    ProfileNotFoundError,
    WebhookValidationError,
)
from creditsync.services.ledger import GrantResult
from creditsync.services.webhooks.payment import PaymentHandler
from creditsync.services.webhooks.registry import WebhookDispatcher

from tests.helpers.mock_factories import (
    FakeLedger,
    clawback_result,
    make_event,
    make_mock_db,
    make_stripe_subscription,
    not_found_clawback,
)

USER_ID = uuid.uuid4()


def _checkout(mode: str, **overrides):
    obj = {
        "id": "cs_1",
        "mode": mode,
        "customer": "cus_test",
        "subscription": "sub_test" if mode == "subscription" else None,
        "invoice": "in_first" if mode == "subscription" else None,
        "payment_intent": "pi_1" if mode == "payment" else None,
        "client_reference_id": None,
        "metadata": {"user_id": str(USER_ID)},
    }
    obj.update(overrides)
    return make_event("checkout.session.completed", obj)


def _charge(**overrides):
    obj = {
        "id": "ch_1",
        "customer": "cus_test",
        "invoice": None,
        "payment_intent": "pi_1",
        "amount": 1000,
        "amount_refunded": 1000,
    }
    obj.update(overrides)
    return make_event("charge.refunded", obj)


def _invoice(event_type: str, **overrides):
    obj = {
        "id": "in_1",
        "customer": "cus_test",
        "subscription": "sub_test",
        "billing_reason": "subscription_cycle",
        "amount_paid": 900,
    }
    obj.update(overrides)
    return make_event(event_type, obj)


class _HandlerTest:
    def setup_method(self):
        self.db = make_mock_db()
        self.stripe = MagicMock()
        self.stripe.retrieve_subscription.return_value = make_stripe_subscription(
            price_id="price_hobby"
        )
        self.ledger = FakeLedger()
        self.sync = MagicMock()
        self.sync.sync_subscription_from_stripe = AsyncMock()
        self.handler = PaymentHandler(self.stripe, self.ledger, self.sync)


class TestRegistration:
    def test_registers_payment_events(self):
        dispatcher = WebhookDispatcher()
        PaymentHandler(MagicMock(), MagicMock(), MagicMock()).register(dispatcher)
        assert dispatcher.event_types == [
            "charge.refunded",
            "checkout.session.completed",
            "invoice.payment_failed",
            "invoice.payment_refunded",
            "invoice.payment_succeeded",
        ]


@patch("creditsync.services.webhooks.payment.profile_ops")
class TestCheckoutSessionCompleted(_HandlerTest):
    @pytest.mark.asyncio
    async def test_subscription_grants_cycle_credits_under_invoice_ref(self, mock_profile_ops):
        mock_profile_ops.link_stripe_customer = AsyncMock()

        await self.handler.handle_checkout_session_completed(self.db, _checkout("subscription"))

        assert self.ledger.balances[USER_ID]["subscription"] == 200
        assert self.ledger.transactions[0]["reference_id"] == "invoice_in_first"
        mock_profile_ops.link_stripe_customer.assert_awaited_once_with(
            self.db, USER_ID, "cus_test"
        )

    @pytest.mark.asyncio
    async def test_subscription_falls_back_to_session_ref(self, mock_profile_ops):
        mock_profile_ops.link_stripe_customer = AsyncMock()

        await self.handler.handle_checkout_session_completed(
            self.db, _checkout("subscription", invoice=None)
        )

        assert self.ledger.transactions[0]["reference_id"] == "session_cs_1"

    @pytest.mark.asyncio
    async def test_replayed_checkout_grants_once(self, mock_profile_ops):
        mock_profile_ops.link_stripe_customer = AsyncMock()
        event = _checkout("subscription")

        await self.handler.handle_checkout_session_completed(self.db, event)
        await self.handler.handle_checkout_session_completed(self.db, event)

        assert self.ledger.balances[USER_ID]["subscription"] == 200

    @pytest.mark.asyncio
    async def test_unknown_price_grants_nothing(self, mock_profile_ops):
        mock_profile_ops.link_stripe_customer = AsyncMock()
        self.stripe.retrieve_subscription.return_value = make_stripe_subscription(
            price_id="price_legacy"
        )

        await self.handler.handle_checkout_session_completed(self.db, _checkout("subscription"))

        assert self.ledger.transactions == []

    @pytest.mark.asyncio
    async def test_credit_pack_grants_purchased_credits_under_pi_ref(self, mock_profile_ops):
        mock_profile_ops.link_stripe_customer = AsyncMock()
        event = _checkout(
            "payment", metadata={"user_id": str(USER_ID), "credits": "500", "pack_key": "large"}
        )

        await self.handler.handle_checkout_session_completed(self.db, event)

        assert self.ledger.balances[USER_ID]["purchased"] == 500
        tx = self.ledger.transactions[0]
        assert tx["reference_id"] == "pi_pi_1"
        assert tx["description"] == "Credit pack purchase - large - 500 credits"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("credits", ["0", "-5", "lots"])
    async def test_credit_pack_with_invalid_credits_grants_nothing(self, mock_profile_ops, credits):
        mock_profile_ops.link_stripe_customer = AsyncMock()
        event = _checkout("payment", metadata={"user_id": str(USER_ID), "credits": credits})

        await self.handler.handle_checkout_session_completed(self.db, event)

        assert self.ledger.transactions == []

    @pytest.mark.asyncio
    async def test_unknown_mode_is_noop(self, mock_profile_ops):
        mock_profile_ops.link_stripe_customer = AsyncMock()

        await self.handler.handle_checkout_session_completed(self.db, _checkout("setup"))

        assert self.ledger.transactions == []

    @pytest.mark.asyncio
    async def test_missing_user_id_is_noop(self, mock_profile_ops):
        mock_profile_ops.link_stripe_customer = AsyncMock()

        await self.handler.handle_checkout_session_completed(
            self.db, _checkout("subscription", metadata={})
        )

        mock_profile_ops.link_stripe_customer.assert_not_called()
        assert self.ledger.transactions == []

    @pytest.mark.asyncio
    async def test_client_reference_id_used_when_metadata_empty(self, mock_profile_ops):
        mock_profile_ops.link_stripe_customer = AsyncMock()

        await self.handler.handle_checkout_session_completed(
            self.db,
            _checkout("subscription", metadata={}, client_reference_id=str(USER_ID)),
        )

        assert self.ledger.balances[USER_ID]["subscription"] == 200

    @pytest.mark.asyncio
    async def test_invalid_user_id_is_validation_error(self, mock_profile_ops):
        mock_profile_ops.link_stripe_customer = AsyncMock()

        with pytest.raises(WebhookValidationError):
            await self.handler.handle_checkout_session_completed(
                self.db, _checkout("subscription", metadata={"user_id": "not-a-uuid"})
            )


@patch("creditsync.services.webhooks.payment.profile_ops")
@patch("creditsync.services.webhooks.common.profile_ops")
class TestInvoicePaymentSucceeded(_HandlerTest):
    @pytest.mark.asyncio
    async def test_renewal_syncs_and_grants(self, mock_common_ops, mock_profile_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        self.ledger.balances[USER_ID]["subscription"] = 50

        await self.handler.handle_invoice_payment_succeeded(
            self.db, _invoice("invoice.payment_succeeded")
        )

        self.sync.sync_subscription_from_stripe.assert_awaited_once()
        assert self.ledger.balances[USER_ID]["subscription"] == 250
        assert self.ledger.transactions[0]["reference_id"] == "invoice_in_1"
        assert self.ledger.transactions[0]["amount"] == 200

    @pytest.mark.asyncio
    async def test_renewal_capped_at_max_rollover(self, mock_common_ops, mock_profile_ops):
        # hobby: 200 per cycle, max rollover 1200
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        self.ledger.balances[USER_ID]["subscription"] = 1150

        await self.handler.handle_invoice_payment_succeeded(
            self.db, _invoice("invoice.payment_succeeded")
        )

        assert self.ledger.transactions[0]["amount"] == 50
        assert self.ledger.balances[USER_ID]["subscription"] == 1200

    @pytest.mark.asyncio
    async def test_renewal_at_cap_grants_nothing(self, mock_common_ops, mock_profile_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        self.ledger.balances[USER_ID]["subscription"] = 1200

        await self.handler.handle_invoice_payment_succeeded(
            self.db, _invoice("invoice.payment_succeeded")
        )

        assert self.ledger.transactions == []

    @pytest.mark.asyncio
    async def test_renewal_passes_cap_to_ledger(self, mock_common_ops, mock_profile_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        ledger = MagicMock()
        ledger.add_subscription_credits = AsyncMock(
            return_value=GrantResult(applied=True, new_balance=200, granted=200)
        )
        handler = PaymentHandler(self.stripe, ledger, self.sync)

        await handler.handle_invoice_payment_succeeded(
            self.db, _invoice("invoice.payment_succeeded")
        )

        args, kwargs = ledger.add_subscription_credits.call_args
        assert args[2] == 200
        assert kwargs["max_balance"] == 1200
        mock_profile_ops.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_renewals_stay_under_cap(self, mock_common_ops, mock_profile_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        self.ledger.balances[USER_ID]["subscription"] = 1100

        await asyncio.gather(
            self.handler.handle_invoice_payment_succeeded(
                self.db, _invoice("invoice.payment_succeeded", id="in_a")
            ),
            self.handler.handle_invoice_payment_succeeded(
                self.db, _invoice("invoice.payment_succeeded", id="in_b")
            ),
        )

        assert self.ledger.balances[USER_ID]["subscription"] == 1200
        assert sorted(tx["amount"] for tx in self.ledger.transactions) == [100]

    @pytest.mark.asyncio
    async def test_proration_invoice_syncs_without_grant(self, mock_common_ops, mock_profile_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)

        await self.handler.handle_invoice_payment_succeeded(
            self.db, _invoice("invoice.payment_succeeded", billing_reason="subscription_update")
        )

        self.sync.sync_subscription_from_stripe.assert_awaited_once()
        assert self.ledger.transactions == []

    @pytest.mark.asyncio
    async def test_non_subscription_invoice_skipped(self, mock_common_ops, mock_profile_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock()

        await self.handler.handle_invoice_payment_succeeded(
            self.db, _invoice("invoice.payment_succeeded", subscription=None)
        )

        mock_common_ops.get_user_id_by_customer.assert_not_called()
        self.stripe.retrieve_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_subscription_from_parent_details(self, mock_common_ops, mock_profile_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        event = _invoice(
            "invoice.payment_succeeded",
            subscription=None,
            parent={"subscription_details": {"subscription": "sub_nested"}},
        )

        await self.handler.handle_invoice_payment_succeeded(self.db, event)

        self.stripe.retrieve_subscription.assert_called_once_with("sub_nested")

    @pytest.mark.asyncio
    async def test_unknown_customer_raises(self, mock_common_ops, mock_profile_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=None)

        with pytest.raises(ProfileNotFoundError):
            await self.handler.handle_invoice_payment_succeeded(
                self.db, _invoice("invoice.payment_succeeded")
            )


@patch("creditsync.services.webhooks.payment.profile_ops")
class TestInvoicePaymentFailed(_HandlerTest):
    @pytest.mark.asyncio
    async def test_marks_past_due(self, mock_profile_ops):
        mock_profile_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        mock_profile_ops.set_subscription_state = AsyncMock()

        await self.handler.handle_invoice_payment_failed(self.db, _invoice("invoice.payment_failed"))

        mock_profile_ops.set_subscription_state.assert_awaited_once_with(
            self.db, USER_ID, subscription_status="past_due"
        )

    @pytest.mark.asyncio
    async def test_unknown_customer_ignored(self, mock_profile_ops):
        mock_profile_ops.get_user_id_by_customer = AsyncMock(return_value=None)
        mock_profile_ops.set_subscription_state = AsyncMock()

        await self.handler.handle_invoice_payment_failed(self.db, _invoice("invoice.payment_failed"))

        mock_profile_ops.set_subscription_state.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_customer_is_validation_error(self, mock_profile_ops):
        with pytest.raises(WebhookValidationError):
            await self.handler.handle_invoice_payment_failed(
                self.db, _invoice("invoice.payment_failed", customer=None)
            )


@patch("creditsync.services.webhooks.common.profile_ops")
class TestInvoicePaymentRefunded(_HandlerTest):
    @pytest.mark.asyncio
    async def test_reverses_invoice_grant(self, mock_common_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        await self.ledger.add_subscription_credits(self.db, USER_ID, 200, "invoice_in_1", "")

        await self.handler.handle_invoice_payment_refunded(
            self.db, _invoice("invoice.payment_refunded")
        )

        assert self.ledger.total(USER_ID) == 0

    @pytest.mark.asyncio
    async def test_missing_profile_raises(self, mock_common_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=None)

        with pytest.raises(ProfileNotFoundError):
            await self.handler.handle_invoice_payment_refunded(
                self.db, _invoice("invoice.payment_refunded")
            )

    @pytest.mark.asyncio
    async def test_no_grant_is_not_an_error(self, mock_common_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)

        await self.handler.handle_invoice_payment_refunded(
            self.db, _invoice("invoice.payment_refunded")
        )

    @pytest.mark.asyncio
    async def test_ledger_error_propagates(self, mock_common_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        self.handler.ledger = MagicMock()
        self.handler.ledger.clawback_from_transaction = AsyncMock(
            side_effect=LedgerError("clawback_from_transaction_v2", "connection reset")
        )

        with pytest.raises(LedgerError):
            await self.handler.handle_invoice_payment_refunded(
                self.db, _invoice("invoice.payment_refunded")
            )


@patch("creditsync.services.webhooks.common.profile_ops")
class TestChargeRefunded(_HandlerTest):
    def _mock_ledger(self, *results):
        ledger = MagicMock()
        ledger.clawback_from_transaction = AsyncMock(side_effect=list(results))
        self.handler.ledger = ledger
        return ledger

    @pytest.mark.asyncio
    async def test_zero_refund_makes_no_ledger_calls(self, mock_common_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        ledger = self._mock_ledger()

        await self.handler.handle_charge_refunded(self.db, _charge(amount_refunded=0))

        ledger.clawback_from_transaction.assert_not_called()
        mock_common_ops.get_user_id_by_customer.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_profile_raises(self, mock_common_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=None)
        ledger = self._mock_ledger()

        with pytest.raises(ProfileNotFoundError):
            await self.handler.handle_charge_refunded(self.db, _charge())

        ledger.clawback_from_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_invoice_charge_uses_invoice_ref(self, mock_common_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        ledger = self._mock_ledger(clawback_result(credits_clawed_back=200))

        await self.handler.handle_charge_refunded(self.db, _charge(invoice="in_9"))

        ledger.clawback_from_transaction.assert_awaited_once()
        assert ledger.clawback_from_transaction.call_args[0][2] == "invoice_in_9"

    @pytest.mark.asyncio
    async def test_falls_back_to_payment_intent_ref(self, mock_common_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        ledger = self._mock_ledger(
            not_found_clawback("invoice_in_9"), clawback_result(credits_clawed_back=500)
        )

        await self.handler.handle_charge_refunded(self.db, _charge(invoice="in_9"))

        refs = [call[0][2] for call in ledger.clawback_from_transaction.call_args_list]
        assert refs == ["invoice_in_9", "pi_pi_1"]

    @pytest.mark.asyncio
    async def test_correlation_miss_fails_open(self, mock_common_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        self._mock_ledger(not_found_clawback("invoice_in_9"), not_found_clawback("pi_pi_1"))

        await self.handler.handle_charge_refunded(self.db, _charge(invoice="in_9"))

    @pytest.mark.asyncio
    async def test_ledger_error_propagates(self, mock_common_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        self.handler.ledger = MagicMock()
        self.handler.ledger.clawback_from_transaction = AsyncMock(
            side_effect=LedgerError("clawback_from_transaction_v2", "timeout")
        )

        with pytest.raises(LedgerError):
            await self.handler.handle_charge_refunded(self.db, _charge())

    @pytest.mark.asyncio
    async def test_credit_pack_purchase_then_refund_round_trip(self, mock_common_ops):
        mock_common_ops.get_user_id_by_customer = AsyncMock(return_value=USER_ID)
        await self.ledger.add_purchased_credits(self.db, USER_ID, 25, "pi_earlier", "")
        await self.ledger.add_purchased_credits(self.db, USER_ID, 500, "pi_pi_1", "")

        await self.handler.handle_charge_refunded(self.db, _charge())

        assert self.ledger.balances[USER_ID] == {"subscription": 0, "purchased": 25}
