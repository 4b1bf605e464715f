"""Credit ledger client.

Every balance mutation goes through one of four PL/pgSQL procedures
(created by the `ledger_procedures` migration). Each procedure locks the
profile row, is idempotent per reference id and writes the matching
credit_transactions rows in the same transaction, so application code never
does a read-modify-write on a balance column.
"""

import logging
import uuid as uuid_pkg
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.core.exceptions import LedgerError

logger = logging.getLogger(__name__)

# Returned by clawback_from_transaction_v2 when nothing was granted under the reference
NOT_FOUND_MARKER = "No credits found to clawback"


class ClawbackPool(str, Enum):
    """Which balance a clawback draws from."""

    SUBSCRIPTION = "subscription"
    PURCHASED = "purchased"
    AUTO = "auto"  # Subscription pool first, then purchased


# ─────────────────────────────────────────────────────────────────────────────
# Reference ids (matched literally by the refund and dispute handlers)
# ─────────────────────────────────────────────────────────────────────────────


def invoice_ref(invoice_id: str) -> str:
    return f"invoice_{invoice_id}"


def session_ref(session_id: str) -> str:
    return f"session_{session_id}"


def payment_intent_ref(payment_intent_id: str) -> str:
    return f"pi_{payment_intent_id}"


def dispute_ref(dispute_id: str) -> str:
    return f"dispute_{dispute_id}"


def admin_ref() -> str:
    return f"admin_{uuid_pkg.uuid4()}"


# ─────────────────────────────────────────────────────────────────────────────
# Results
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class GrantResult:
    """Outcome of add_subscription_credits / add_purchased_credits."""

    applied: bool  # False when the reference was already granted or nothing fit under the cap
    new_balance: int
    granted: int = 0
    capped: bool = False  # True when max_balance cut the grant short


@dataclass(frozen=True)
class ClawbackResult:
    """Outcome of a clawback procedure."""

    success: bool
    credits_clawed_back: int
    subscription_clawed: int
    purchased_clawed: int
    new_subscription_balance: int
    new_purchased_balance: int
    error_message: str | None = None

    @property
    def is_not_found(self) -> bool:
        """True when no grant exists under the reference (a correlation miss)."""
        return not self.success and NOT_FOUND_MARKER in (self.error_message or "")

    @classmethod
    def from_row(cls, row: Any) -> "ClawbackResult":
        return cls(
            success=bool(row["success"]),
            credits_clawed_back=row["credits_clawed_back"] or 0,
            subscription_clawed=row["subscription_clawed"] or 0,
            purchased_clawed=row["purchased_clawed"] or 0,
            new_subscription_balance=row["new_subscription_balance"] or 0,
            new_purchased_balance=row["new_purchased_balance"] or 0,
            error_message=row["error_message"],
        )


class CreditLedger:
    """
    Thin client over the ledger procedures.

    Runs on the caller's session, so ledger writes commit or roll back with
    the rest of the webhook/job transaction. Database failures are raised as
    LedgerError; business outcomes (not found, nothing left to reverse) come
    back in the result.
    """

    async def _call(
        self,
        db: AsyncSession,
        procedure: str,
        sql: str,
        params: dict[str, Any],
    ) -> Any:
        try:
            result = await db.execute(text(sql), params)
        except SQLAlchemyError as e:
            logger.error(f"Ledger procedure {procedure} failed: {e}")
            raise LedgerError(procedure, str(e)) from e
        row = result.mappings().first()
        if row is None:
            raise LedgerError(procedure, "procedure returned no row")
        return row

    async def add_subscription_credits(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        amount: int,
        ref_id: str,
        description: str,
        max_balance: int | None = None,
    ) -> GrantResult:
        """
        Grant subscription credits once per reference.

        With max_balance the grant is trimmed so the subscription balance never
        exceeds it, computed under the profile row lock.
        """
        row = await self._call(
            db,
            "add_subscription_credits",
            "SELECT * FROM add_subscription_credits("
            ":target_user_id, :amount, :ref_id, :description, :max_balance)",
            {
                "target_user_id": user_id,
                "amount": amount,
                "ref_id": ref_id,
                "description": description,
                "max_balance": max_balance,
            },
        )
        return GrantResult(
            applied=bool(row["applied"]),
            new_balance=row["new_balance"],
            granted=row["granted"] or 0,
            capped=bool(row["capped"]),
        )

    async def add_purchased_credits(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        amount: int,
        ref_id: str,
        description: str,
        transaction_type: str = "purchase",
    ) -> GrantResult:
        row = await self._call(
            db,
            "add_purchased_credits",
            "SELECT * FROM add_purchased_credits("
            ":target_user_id, :amount, :ref_id, :description, :transaction_type)",
            {
                "target_user_id": user_id,
                "amount": amount,
                "ref_id": ref_id,
                "description": description,
                "transaction_type": transaction_type,
            },
        )
        applied = bool(row["applied"])
        return GrantResult(
            applied=applied, new_balance=row["new_balance"], granted=amount if applied else 0
        )

    async def clawback_credits(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        amount: int,
        reason: str,
        ref_id: str,
        pool: ClawbackPool = ClawbackPool.AUTO,
    ) -> ClawbackResult:
        """Remove up to `amount` credits (never below zero) under a new reference."""
        row = await self._call(
            db,
            "clawback_credits_v2",
            "SELECT * FROM clawback_credits_v2("
            ":p_target_user_id, :p_amount, :p_reason, :p_ref_id, :p_pool)",
            {
                "p_target_user_id": user_id,
                "p_amount": amount,
                "p_reason": reason,
                "p_ref_id": ref_id,
                "p_pool": pool.value,
            },
        )
        return ClawbackResult.from_row(row)

    async def clawback_from_transaction(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        original_ref_id: str,
        reason: str,
    ) -> ClawbackResult:
        """Reverse whatever is still outstanding under `original_ref_id`, pool by pool."""
        row = await self._call(
            db,
            "clawback_from_transaction_v2",
            "SELECT * FROM clawback_from_transaction_v2("
            ":p_target_user_id, :p_original_ref_id, :p_reason)",
            {
                "p_target_user_id": user_id,
                "p_original_ref_id": original_ref_id,
                "p_reason": reason,
            },
        )
        return ClawbackResult.from_row(row)
