"""Subscription model - local mirror of a Stripe subscription."""

import uuid as uuid_pkg
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, String, text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field

from creditsync.models.base import TimestampMixin


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states (Stripe's values, stored verbatim)."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"


# Statuses the full reconciliation job compares against Stripe
RECONCILABLE_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.PAST_DUE.value,
)


class Subscription(TimestampMixin, table=True):
    """
    Subscription model - one row per Stripe subscription.

    Written only through the subscription sync service, which is the single
    mapping from Stripe's object to local state. A pending downgrade is
    represented by scheduled_price_id + scheduled_change_date.
    """

    __tablename__ = "subscriptions"

    # Stripe subscription ID (sub_...)
    id: str = Field(primary_key=True, max_length=255, nullable=False)
    user_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            PG_UUID(as_uuid=True),
            ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )

    status: str = Field(
        sa_column=Column(String(30), nullable=False, index=True),
    )
    price_id: str = Field(max_length=255, nullable=False)

    # Billing period
    current_period_start: datetime = Field(  # type: ignore[call-overload]
        nullable=False, sa_type=DateTime(timezone=True)
    )
    current_period_end: datetime = Field(  # type: ignore[call-overload]
        nullable=False, sa_type=DateTime(timezone=True), index=True
    )
    cancel_at_period_end: bool = Field(
        default=False,
        nullable=False,
        sa_column_kwargs={"server_default": text("false")},
    )
    canceled_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )

    # Pending downgrade (applied by Stripe at period end)
    scheduled_price_id: str | None = Field(default=None, max_length=255, nullable=True)
    scheduled_change_date: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
