"""Mock object factories for unit tests.

Creates consistent mock objects that match the real model shapes and the
Stripe payloads the handlers read. Used in unit tests where the database
and Stripe are fully mocked.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from creditsync.services.ledger import NOT_FOUND_MARKER, ClawbackPool, ClawbackResult, GrantResult
from creditsync.services.stripe_schemas import StripeEvent, StripeSubscription

# Fixed period used by the Stripe payload builders: 2026-03-01 → 2026-04-01 UTC
PERIOD_START = 1772323200
PERIOD_END = 1775001600


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────


class _Savepoint:
    async def __aenter__(self) -> _Savepoint:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


def make_mock_db() -> AsyncMock:
    """AsyncSession stand-in whose begin_nested() works as `async with`."""
    db = AsyncMock()
    db.add = MagicMock()
    db.begin_nested = MagicMock(side_effect=lambda: _Savepoint())
    return db


def mock_scalars_result(values: list) -> MagicMock:
    """Create a mock execute() result that yields values via .scalars().all()."""
    result = MagicMock()
    result.scalars.return_value.all.return_value = values
    result.scalars.return_value.first.return_value = values[0] if values else None
    return result


def mock_scalar_result(value: object) -> MagicMock:
    """Create a mock execute() result that yields a single value."""
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    result.scalar.return_value = value
    return result


# ─────────────────────────────────────────────────────────────────────────────
# Models
# ─────────────────────────────────────────────────────────────────────────────


def make_mock_profile(**overrides: object) -> MagicMock:
    profile = MagicMock()
    profile.id = overrides.get("id", uuid.uuid4())
    profile.email = overrides.get("email", "test@example.com")
    profile.role = overrides.get("role", "user")
    profile.is_admin = overrides.get("is_admin", profile.role == "admin")
    profile.subscription_credits_balance = overrides.get("subscription_credits_balance", 0)
    profile.purchased_credits_balance = overrides.get("purchased_credits_balance", 0)
    profile.subscription_tier = overrides.get("subscription_tier")
    profile.subscription_status = overrides.get("subscription_status")
    profile.stripe_customer_id = overrides.get("stripe_customer_id", "cus_test")
    profile.dispute_status = overrides.get("dispute_status", "none")
    profile.created_at = overrides.get("created_at", datetime.now(UTC))
    return profile


def make_mock_subscription(**overrides: object) -> MagicMock:
    """Local subscriptions row."""
    sub = MagicMock()
    sub.id = overrides.get("id", "sub_test")
    sub.user_id = overrides.get("user_id", uuid.uuid4())
    sub.status = overrides.get("status", "active")
    sub.price_id = overrides.get("price_id", "price_hobby")
    sub.current_period_start = overrides.get(
        "current_period_start", datetime.fromtimestamp(PERIOD_START, tz=UTC)
    )
    sub.current_period_end = overrides.get(
        "current_period_end", datetime.fromtimestamp(PERIOD_END, tz=UTC)
    )
    sub.cancel_at_period_end = overrides.get("cancel_at_period_end", False)
    sub.canceled_at = overrides.get("canceled_at")
    sub.scheduled_price_id = overrides.get("scheduled_price_id")
    sub.scheduled_change_date = overrides.get("scheduled_change_date")
    return sub


def make_mock_webhook_event(**overrides: object) -> MagicMock:
    record = MagicMock()
    record.id = overrides.get("id", uuid.uuid4())
    record.event_id = overrides.get("event_id", "evt_test")
    record.event_type = overrides.get("event_type", "invoice.payment_succeeded")
    record.status = overrides.get("status", "failed")
    record.recoverable = overrides.get("recoverable", True)
    record.retry_count = overrides.get("retry_count", 0)
    record.error_message = overrides.get("error_message", "boom")
    return record


# ─────────────────────────────────────────────────────────────────────────────
# Stripe payloads
# ─────────────────────────────────────────────────────────────────────────────


def stripe_subscription_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": "sub_test",
        "object": "subscription",
        "customer": "cus_test",
        "status": "active",
        "items": {
            "data": [{"id": "si_test", "price": {"id": overrides.pop("price_id", "price_hobby")}}]
        },
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "cancel_at_period_end": False,
        "canceled_at": None,
        "schedule": None,
        "latest_invoice": "in_test",
        "metadata": {},
    }
    payload.update(overrides)
    return payload


def make_stripe_subscription(**overrides: Any) -> StripeSubscription:
    return StripeSubscription.from_stripe(stripe_subscription_payload(**overrides))


def make_event(event_type: str, obj: dict[str, Any], event_id: str = "evt_test") -> StripeEvent:
    return StripeEvent.model_validate(
        {"id": event_id, "type": event_type, "created": PERIOD_START, "data": {"object": obj}}
    )


def clawback_result(**overrides: Any) -> ClawbackResult:
    values: dict[str, Any] = {
        "success": True,
        "credits_clawed_back": 0,
        "subscription_clawed": 0,
        "purchased_clawed": 0,
        "new_subscription_balance": 0,
        "new_purchased_balance": 0,
        "error_message": None,
    }
    values.update(overrides)
    return ClawbackResult(**values)


def not_found_clawback(ref_id: str) -> ClawbackResult:
    return clawback_result(
        success=False, error_message=f"{NOT_FOUND_MARKER} for reference {ref_id}"
    )


# ─────────────────────────────────────────────────────────────────────────────
# Services
# ─────────────────────────────────────────────────────────────────────────────


def make_mock_services() -> MagicMock:
    """Service graph as stored on app.state.services, with async methods mocked."""
    services = MagicMock()
    services.dispatcher.dispatch = AsyncMock(return_value=True)
    services.reconciliation.check_expirations = AsyncMock()
    services.reconciliation.reconcile = AsyncMock()
    services.reconciliation.recover_webhooks = AsyncMock()
    services.ledger.add_purchased_credits = AsyncMock()
    services.ledger.clawback_credits = AsyncMock()
    services.subscription_change.change_plan = AsyncMock()
    services.subscription_change.cancel_scheduled_change = AsyncMock()
    return services


class FakeLedger:
    """
    In-memory ledger with the same contract as CreditLedger.

    Rejects a second grant under the same reference, routes auto clawbacks
    subscription pool first and never reverses more than was granted under
    a reference.
    """

    def __init__(self) -> None:
        self.balances: dict[uuid.UUID, dict[str, int]] = defaultdict(
            lambda: {"subscription": 0, "purchased": 0}
        )
        self.transactions: list[dict[str, Any]] = []

    def _exists(self, user_id: uuid.UUID, ref_id: str, transaction_type: str) -> bool:
        return any(
            tx["user_id"] == user_id
            and tx["reference_id"] == ref_id
            and tx["transaction_type"] == transaction_type
            for tx in self.transactions
        )

    def _record(self, user_id, amount, transaction_type, pool, ref_id, description) -> None:
        self.transactions.append(
            {
                "user_id": user_id,
                "amount": amount,
                "transaction_type": transaction_type,
                "credit_pool": pool,
                "reference_id": ref_id,
                "description": description,
            }
        )

    def _grant(
        self, user_id, amount, ref_id, description, transaction_type, pool, max_balance=None
    ) -> GrantResult:
        balances = self.balances[user_id]
        if self._exists(user_id, ref_id, transaction_type):
            return GrantResult(applied=False, new_balance=balances[pool])
        granted = amount
        if max_balance is not None:
            granted = min(amount, max(max_balance - balances[pool], 0))
        if granted == 0:
            return GrantResult(applied=False, new_balance=balances[pool], capped=True)
        balances[pool] += granted
        self._record(user_id, granted, transaction_type, pool, ref_id, description)
        return GrantResult(
            applied=True, new_balance=balances[pool], granted=granted, capped=granted < amount
        )

    def _take(self, user_id, sub: int, pur: int, reason: str, ref_id: str) -> ClawbackResult:
        balances = self.balances[user_id]
        balances["subscription"] -= sub
        balances["purchased"] -= pur
        if sub:
            self._record(user_id, -sub, "clawback", "subscription", ref_id, reason)
        if pur:
            self._record(user_id, -pur, "clawback", "purchased", ref_id, reason)
        return clawback_result(
            credits_clawed_back=sub + pur,
            subscription_clawed=sub,
            purchased_clawed=pur,
            new_subscription_balance=balances["subscription"],
            new_purchased_balance=balances["purchased"],
        )

    async def add_subscription_credits(
        self, db, user_id, amount, ref_id, description, max_balance=None
    ):
        return self._grant(
            user_id, amount, ref_id, description, "subscription", "subscription", max_balance
        )

    async def add_purchased_credits(
        self, db, user_id, amount, ref_id, description, transaction_type="purchase"
    ):
        return self._grant(user_id, amount, ref_id, description, transaction_type, "purchased")

    async def clawback_credits(self, db, user_id, amount, reason, ref_id, pool=ClawbackPool.AUTO):
        balances = self.balances[user_id]
        if self._exists(user_id, ref_id, "clawback"):
            return clawback_result(
                new_subscription_balance=balances["subscription"],
                new_purchased_balance=balances["purchased"],
            )
        sub = pur = 0
        if pool is ClawbackPool.SUBSCRIPTION:
            sub = min(amount, balances["subscription"])
        elif pool is ClawbackPool.PURCHASED:
            pur = min(amount, balances["purchased"])
        else:
            sub = min(amount, balances["subscription"])
            pur = min(amount - sub, balances["purchased"])
        return self._take(user_id, sub, pur, reason, ref_id)

    async def clawback_from_transaction(self, db, user_id, original_ref_id, reason):
        balances = self.balances[user_id]
        outstanding = {"subscription": 0, "purchased": 0}
        granted = 0
        for tx in self.transactions:
            if tx["user_id"] != user_id or tx["reference_id"] != original_ref_id:
                continue
            if tx["transaction_type"] != "clawback":
                granted += tx["amount"]
            outstanding[tx["credit_pool"]] += tx["amount"]
        if granted == 0:
            return not_found_clawback(original_ref_id)
        sub = min(max(outstanding["subscription"], 0), balances["subscription"])
        pur = min(max(outstanding["purchased"], 0), balances["purchased"])
        return self._take(user_id, sub, pur, reason, original_ref_id)

    def total(self, user_id: uuid.UUID) -> int:
        balances = self.balances[user_id]
        return balances["subscription"] + balances["purchased"]
