"""Configuration package."""

from creditsync.config.plans import PLANS, PlanConfig, get_plan, get_plan_for_price_id
from creditsync.config.settings import Settings, settings

__all__ = [
    "PlanConfig",
    "PLANS",
    "get_plan",
    "get_plan_for_price_id",
    "Settings",
    "settings",
]
