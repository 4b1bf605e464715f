"""Credit calculation for plan changes.

Pure functions, no I/O. Upgrades grant the difference between the two
tiers' per-cycle allowances, never the new tier's full amount, and grant
nothing when the current balance is implausibly high for the previous tier
(downgrade-then-upgrade cycling to farm credits). Downgrades never claw
back immediately; the next renewal rebalances.
"""

import math
from dataclasses import dataclass
from enum import Enum

from creditsync.core.exceptions import CreditCalculationError

# A balance above previous_tier_credits * this is not explainable by rollover
# and ad-hoc purchases, and blocks the upgrade grant.
FARMING_THRESHOLD_MULTIPLIER = 1.5


class CreditReason(str, Enum):
    TOP_UP_TO_MINIMUM = "top_up_to_minimum"
    PRESERVE_LEGITIMATE_EXCESS = "preserve_legitimate_excess"
    FARMING_BLOCKED = "farming_blocked"


@dataclass(frozen=True)
class CreditCalculationInput:
    current_balance: int
    previous_tier_credits: int
    new_tier_credits: int


@dataclass(frozen=True)
class CreditCalculationResult:
    credits_to_add: int
    reason: CreditReason
    max_reasonable_balance: int
    is_legitimate: bool


def calculate_upgrade_credits(
    current_balance: int,
    previous_tier_credits: int,
    new_tier_credits: int,
    *,
    farming_multiplier: float = FARMING_THRESHOLD_MULTIPLIER,
) -> CreditCalculationResult:
    """
    Decide how many credits an upgrade grants.

    Raises CreditCalculationError for negative inputs or when the new tier
    is not strictly larger than the previous one (downgrades belong to
    calculate_downgrade_credits).
    """
    if current_balance < 0 or previous_tier_credits < 0 or new_tier_credits < 0:
        raise CreditCalculationError("Credit amounts cannot be negative")
    if new_tier_credits <= previous_tier_credits:
        raise CreditCalculationError(
            "New tier must have more credits than previous tier (upgrades only)"
        )

    tier_difference = new_tier_credits - previous_tier_credits
    max_reasonable_balance = math.floor(previous_tier_credits * farming_multiplier)

    if current_balance > max_reasonable_balance:
        return CreditCalculationResult(
            credits_to_add=0,
            reason=CreditReason.FARMING_BLOCKED,
            max_reasonable_balance=max_reasonable_balance,
            is_legitimate=False,
        )

    if current_balance < new_tier_credits:
        reason = CreditReason.TOP_UP_TO_MINIMUM
    else:
        reason = CreditReason.PRESERVE_LEGITIMATE_EXCESS

    return CreditCalculationResult(
        credits_to_add=tier_difference,
        reason=reason,
        max_reasonable_balance=max_reasonable_balance,
        is_legitimate=True,
    )


def calculate_downgrade_credits() -> CreditCalculationResult:
    """Downgrades keep the current balance until the next renewal."""
    return CreditCalculationResult(
        credits_to_add=0,
        reason=CreditReason.PRESERVE_LEGITIMATE_EXCESS,
        max_reasonable_balance=0,
        is_legitimate=True,
    )


def get_explanation(
    result: CreditCalculationResult,
    calculation_input: CreditCalculationInput,
) -> str:
    """Human-readable summary of a calculation, for audit logs."""
    balance = calculation_input.current_balance

    if result.reason is CreditReason.FARMING_BLOCKED:
        return (
            f"Farming detected: user has {balance} credits, which exceeds the reasonable "
            f"amount ({result.max_reasonable_balance}) for the previous tier "
            f"({calculation_input.previous_tier_credits}). No credits added."
        )
    if result.credits_to_add == 0:
        return f"Downgrade: user keeps their {balance} credits until next renewal."
    if result.reason is CreditReason.TOP_UP_TO_MINIMUM:
        return (
            f"User has {balance} credits. Adding {result.credits_to_add} (tier difference) "
            f"to reach {balance + result.credits_to_add} on upgrade to the "
            f"{calculation_input.new_tier_credits} credit tier."
        )
    return (
        f"User has {balance} credits, already above the new tier's "
        f"{calculation_input.new_tier_credits}. Adding {result.credits_to_add} "
        f"(tier difference) and preserving the existing balance."
    )
