"""Domain operations for Profile model."""

import uuid as uuid_pkg
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.domain.base_operations import BaseOperations
from creditsync.models.profile import Profile


class ProfileOperations(BaseOperations[Profile]):
    """Lookups and non-balance updates for profiles.

    Credit balances are deliberately absent here: they change only through
    the ledger procedures.
    """

    def __init__(self) -> None:
        super().__init__(Profile)

    async def get_user_id_by_customer(
        self,
        db: AsyncSession,
        stripe_customer_id: str,
    ) -> uuid_pkg.UUID | None:
        """Resolve a Stripe customer ID to the owning user ID."""
        statement = select(Profile.id).where(Profile.stripe_customer_id == stripe_customer_id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_balances(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
    ) -> tuple[int, int] | None:
        """Current (subscription, purchased) balances, read from the row rather than the session."""
        statement = select(
            Profile.subscription_credits_balance,
            Profile.purchased_credits_balance,
        ).where(Profile.id == user_id)
        result = await db.execute(statement)
        row = result.one_or_none()
        if row is None:
            return None
        return row[0], row[1]

    async def set_fields(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        values: dict[str, Any],
    ) -> None:
        """Patch profile columns in a single UPDATE (no read-modify-write)."""
        statement = update(Profile).where(Profile.id == user_id).values(**values)
        await db.execute(statement)

    async def link_stripe_customer(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        stripe_customer_id: str,
    ) -> None:
        """Attach a Stripe customer to a profile that has none yet."""
        statement = (
            update(Profile)
            .where(Profile.id == user_id, Profile.stripe_customer_id.is_(None))  # type: ignore[union-attr]
            .values(stripe_customer_id=stripe_customer_id)
        )
        await db.execute(statement)

    async def set_dispute_status(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        dispute_status: str,
    ) -> None:
        await self.set_fields(db, user_id, {"dispute_status": dispute_status})

    async def set_subscription_state(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        subscription_status: str,
        subscription_tier: str | None = None,
    ) -> None:
        """Mirror subscription status (and optionally tier key) onto the profile."""
        values: dict[str, Any] = {"subscription_status": subscription_status}
        if subscription_tier is not None:
            values["subscription_tier"] = subscription_tier
        await self.set_fields(db, user_id, values)


profile_ops = ProfileOperations()
