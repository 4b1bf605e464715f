"""Billing models - credit ledger entries and dispute audit rows."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field, SQLModel

from creditsync.models.base import TimestampMixin


class TransactionType(str, Enum):
    """Kinds of credit ledger entries."""

    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"
    CLAWBACK = "clawback"  # Reversal of an earlier grant, same reference_id


class CreditPool(str, Enum):
    """Balance a ledger entry was applied to."""

    SUBSCRIPTION = "subscription"
    PURCHASED = "purchased"


class DisputeEventStatus(str, Enum):
    """Lifecycle of a Stripe dispute as recorded locally."""

    CREATED = "created"
    UPDATED = "updated"
    WON = "won"
    CLOSED = "closed"
    UNRECOVERABLE = "unrecoverable"


class CreditTransaction(SQLModel, table=True):
    """
    Append-only credit ledger entry.

    Rows are inserted by the ledger procedures only. Grants carry positive
    amounts, usage and clawbacks negative ones. reference_id correlates the
    row with the Stripe object that caused it (invoice_, session_, pi_,
    dispute_ or admin_ prefixed).
    """

    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("ix_credit_transactions_user_reference", "user_id", "reference_id"),
    )

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    user_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            PG_UUID(as_uuid=True),
            ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    amount: int = Field(nullable=False)
    transaction_type: str = Field(
        sa_column=Column(String(20), nullable=False),
    )
    credit_pool: str = Field(
        sa_column=Column(String(20), nullable=False),
    )
    reference_id: str = Field(max_length=255, nullable=False)
    description: str | None = Field(default=None, max_length=500, nullable=True)

    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )


class DisputeEvent(TimestampMixin, table=True):
    """One row per Stripe dispute, with the credits held against it."""

    __tablename__ = "dispute_events"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    dispute_id: str = Field(max_length=255, nullable=False, unique=True, index=True)
    user_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            PG_UUID(as_uuid=True),
            ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    charge_id: str = Field(max_length=255, nullable=False)
    amount_cents: int = Field(nullable=False)
    # Estimated from amount_cents, not reported by Stripe
    credits_held: int = Field(default=0, nullable=False)
    status: str = Field(
        default=DisputeEventStatus.CREATED.value,
        sa_column=Column(String(20), nullable=False),
    )
    reason: str | None = Field(default=None, max_length=100, nullable=True)
    resolved_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
