"""Plan configuration - defines credit allowances for each subscription tier."""

from dataclasses import dataclass

from creditsync.config.settings import settings

# Subscription pool may hold at most this many cycles' worth of credits
ROLLOVER_CYCLES = 6


@dataclass(frozen=True)
class PlanConfig:
    """Configuration for a subscription plan tier."""

    key: str
    display_name: str
    price_monthly: int  # Monthly price in cents
    credits_per_cycle: int
    max_rollover: int  # Cap on the subscription pool after a renewal grant

    @property
    def price_setting(self) -> str:
        """Name of the settings field holding this plan's Stripe price ID."""
        return f"stripe_price_{self.key}"

    @property
    def price_id(self) -> str:
        """Stripe price ID configured for this plan (empty when unset)."""
        return getattr(settings, self.price_setting, "")


def _plan(key: str, display_name: str, price_monthly: int, credits_per_cycle: int) -> PlanConfig:
    return PlanConfig(
        key=key,
        display_name=display_name,
        price_monthly=price_monthly,
        credits_per_cycle=credits_per_cycle,
        max_rollover=credits_per_cycle * ROLLOVER_CYCLES,
    )


PLANS: dict[str, PlanConfig] = {
    "starter": _plan("starter", "Starter", 500, 100),  # $5/mo
    "hobby": _plan("hobby", "Hobby", 900, 200),  # $9/mo
    "pro": _plan("pro", "Professional", 2900, 1000),  # $29/mo
    "business": _plan("business", "Business", 9900, 5000),  # $99/mo
}


def get_plan(key: str) -> PlanConfig | None:
    """Get plan configuration by key, or None for an unknown key."""
    return PLANS.get(key)


def get_plan_for_price_id(price_id: str | None) -> PlanConfig | None:
    """
    Resolve a Stripe price ID to its plan.

    Returns None when the price ID is empty or not configured for any plan;
    callers decide whether that is fatal.
    """
    if not price_id:
        return None
    for plan in PLANS.values():
        if plan.price_id and plan.price_id == price_id:
            return plan
    return None
