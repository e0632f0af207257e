"""Plan limits: the single source of truth for suggestion caps.

Every enforcement path (usage checks, guarded increments, status display)
looks plans up here rather than carrying its own table.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from speakforme.config import settings
from speakforme.db.models import UserSubscription

logger = structlog.get_logger()


@dataclass(frozen=True)
class PlanLimits:
    included_suggestions: int
    overage_rate: int  # cents per suggestion over the cap; 0 means hard cap

    @property
    def is_hard_capped(self) -> bool:
        return self.overage_rate == 0


PLAN_LIMITS: dict[str, PlanLimits] = {
    "free": PlanLimits(included_suggestions=5, overage_rate=0),
    "starter": PlanLimits(included_suggestions=25, overage_rate=35),
    "pro": PlanLimits(included_suggestions=75, overage_rate=30),
    "team": PlanLimits(included_suggestions=50, overage_rate=25),
    "business": PlanLimits(included_suggestions=100, overage_rate=20),
}

DEFAULT_PLAN_LIMITS = PLAN_LIMITS["free"]


def get_plan_limits(plan_id: str | None) -> PlanLimits:
    """Limits for *plan_id*; unknown or missing plans get the free tier."""
    if not plan_id:
        return DEFAULT_PLAN_LIMITS
    return PLAN_LIMITS.get(plan_id, DEFAULT_PLAN_LIMITS)


async def get_usage_plan(session: AsyncSession, email: str) -> tuple[str, PlanLimits]:
    """Plan in force for a billing identity.

    Only an active subscription with a known plan counts; anything else
    falls back to the default plan.
    """
    result = await session.execute(
        select(UserSubscription.plan_id, UserSubscription.subscription_status)
        .where(UserSubscription.email == email)
        .limit(1)
    )
    row = result.first()
    if row is not None and row.subscription_status == "active" and row.plan_id in PLAN_LIMITS:
        return row.plan_id, PLAN_LIMITS[row.plan_id]
    plan_id = settings.default_plan_id
    return plan_id, get_plan_limits(plan_id)
