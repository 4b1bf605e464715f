"""Profile model - per-user credit balances and mirrored billing state."""

import uuid as uuid_pkg
from enum import Enum

from sqlalchemy import CheckConstraint, String, text
from sqlmodel import Field

from creditsync.models.base import TimestampMixin


class ProfileRole(str, Enum):
    """Access role stored on the profile; checked server-side for admin routes."""

    USER = "user"
    ADMIN = "admin"


class DisputeStatus(str, Enum):
    """Account-level dispute flag."""

    NONE = "none"
    PENDING = "pending"  # Blocks credit-consuming actions until resolved
    RESOLVED = "resolved"


class Profile(TimestampMixin, table=True):
    """
    Profile model - one per Supabase auth user.

    Credits live in two independent pools. Balances are only ever changed by
    the ledger procedures (see services/ledger.py), never by direct writes
    from application code.
    """

    __tablename__ = "profiles"
    __table_args__ = (
        CheckConstraint("subscription_credits_balance >= 0", name="ck_profiles_subscription_credits"),
        CheckConstraint("purchased_credits_balance >= 0", name="ck_profiles_purchased_credits"),
    )

    id: uuid_pkg.UUID = Field(
        primary_key=True,
        index=True,
        nullable=False,
        description="UUID from Supabase auth.users",
    )
    email: str | None = Field(default=None, max_length=255)
    role: str = Field(
        default=ProfileRole.USER.value,
        sa_type=String(20),  # type: ignore[call-overload]
        nullable=False,
        sa_column_kwargs={"server_default": ProfileRole.USER.value},
    )

    # Credit pools
    subscription_credits_balance: int = Field(
        default=0,
        nullable=False,
        sa_column_kwargs={"server_default": text("0")},
    )
    purchased_credits_balance: int = Field(
        default=0,
        nullable=False,
        sa_column_kwargs={"server_default": text("0")},
    )

    # Mirrored from Stripe by the subscription sync service
    subscription_tier: str | None = Field(default=None, max_length=20, nullable=True)
    subscription_status: str | None = Field(default=None, max_length=30, nullable=True)
    stripe_customer_id: str | None = Field(
        default=None, max_length=255, nullable=True, unique=True, index=True
    )

    dispute_status: str = Field(
        default=DisputeStatus.NONE.value,
        sa_type=String(20),  # type: ignore[call-overload]
        nullable=False,
        sa_column_kwargs={"server_default": DisputeStatus.NONE.value},
    )

    @property
    def total_credits(self) -> int:
        """Usable credits across both pools."""
        return self.subscription_credits_balance + self.purchased_credits_balance

    @property
    def is_admin(self) -> bool:
        return self.role == ProfileRole.ADMIN.value

    @property
    def has_pending_dispute(self) -> bool:
        return self.dispute_status == DisputeStatus.PENDING.value
