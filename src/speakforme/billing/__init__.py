"""Billing: plan limits, usage enforcement and cost estimates."""

from speakforme.billing.plans import DEFAULT_PLAN_LIMITS, PLAN_LIMITS, PlanLimits, get_plan_limits
from speakforme.billing.usage import (
    UsageCheckResult,
    UsageEnforcer,
    UsageStatus,
    billing_period,
    get_usage_enforcer,
    warning_level_for,
)

__all__ = [
    "DEFAULT_PLAN_LIMITS",
    "PLAN_LIMITS",
    "PlanLimits",
    "UsageCheckResult",
    "UsageEnforcer",
    "UsageStatus",
    "billing_period",
    "get_plan_limits",
    "get_usage_enforcer",
    "warning_level_for",
]
