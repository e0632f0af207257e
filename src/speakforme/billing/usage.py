"""Usage enforcement: monthly suggestion caps with warning tiers.

Gate before generation, meter after delivery.

- ``check_usage_allowed`` fails open. A missing billing email, a missing
  record or any internal error allows the request with default limits.
  Metering must never be the cause of an outage.
- ``record_usage_event`` increments with a single UPDATE ... RETURNING.
  Hard-capped plans add ``used < cap`` to the WHERE clause, so concurrent
  requests cannot push usage past the cap. A rejected increment returns
  False; every other failure is logged and swallowed.

The billing period is the UTC calendar month. Records are created lazily
on first check or use.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Literal
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from speakforme.billing.costs import estimate_cost, split_tokens
from speakforme.billing.plans import DEFAULT_PLAN_LIMITS, PlanLimits, get_usage_plan
from speakforme.core.clock import utcnow
from speakforme.db.models import UsageEvent, UsageRecord, User
from speakforme.db.session import db_session
from speakforme.db.upsert import insert_for

logger = structlog.get_logger()

WarningLevel = Literal["none", "warning", "critical"]

WARNING_THRESHOLD = 0.80
CRITICAL_THRESHOLD = 0.95


def billing_period(now: datetime | None = None) -> tuple[datetime, datetime]:
    """(start, end) of the calendar month containing *now*, in UTC."""
    now = now or utcnow()
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        next_start = start.replace(year=start.year + 1, month=1)
    else:
        next_start = start.replace(month=start.month + 1)
    return start, next_start - timedelta(microseconds=1)


def warning_level_for(used: int, limit: int) -> WarningLevel:
    """Nudge tier for a usage ratio: >= 95% critical, >= 80% warning."""
    if limit <= 0:
        return "critical" if used > 0 else "none"
    ratio = used / limit
    if ratio >= CRITICAL_THRESHOLD:
        return "critical"
    if ratio >= WARNING_THRESHOLD:
        return "warning"
    return "none"


@dataclass(frozen=True)
class UsageCheckResult:
    allowed: bool
    current_usage: int
    limit: int
    is_overage: bool = False
    reason: str | None = None
    overage_count: int | None = None
    warning_level: WarningLevel = "none"


@dataclass(frozen=True)
class UsageStatus:
    used: int
    limit: int
    percent_used: float
    is_near_limit: bool
    is_at_limit: bool
    plan_id: str
    warning_level: WarningLevel
    overage_rate: int


def _default_allow() -> UsageCheckResult:
    return UsageCheckResult(
        allowed=True,
        current_usage=0,
        limit=DEFAULT_PLAN_LIMITS.included_suggestions,
    )


def _default_status() -> UsageStatus:
    return UsageStatus(
        used=0,
        limit=DEFAULT_PLAN_LIMITS.included_suggestions,
        percent_used=0.0,
        is_near_limit=False,
        is_at_limit=False,
        plan_id="free",
        warning_level="none",
        overage_rate=DEFAULT_PLAN_LIMITS.overage_rate,
    )


class UsageEnforcer:
    """Checks and meters suggestion usage per billing identity."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    # ═══════════════════════════════════════════════════════════════════════
    # GATE
    # ═══════════════════════════════════════════════════════════════════════

    async def check_usage_allowed(
        self, workspace_id: UUID, user_id: str, now: datetime | None = None
    ) -> UsageCheckResult:
        try:
            async with db_session(self._session_factory) as db:
                email = await self._email_for(db, workspace_id, user_id)
                if not email:
                    logger.warning(
                        "usage_check_no_email",
                        workspace_id=str(workspace_id),
                        user_id=user_id,
                    )
                    return _default_allow()

                plan_id, plan = await get_usage_plan(db, email)
                record = await self._get_or_create_record(db, email, plan, now)

            used = record.suggestions_used
            limit = record.effective_limit
            is_overage = used >= limit
            level = warning_level_for(used, limit)

            if is_overage and plan.is_hard_capped:
                logger.info(
                    "usage_limit_reached",
                    workspace_id=str(workspace_id),
                    user_id=user_id,
                    plan_id=plan_id,
                    used=used,
                    limit=limit,
                )
                return UsageCheckResult(
                    allowed=False,
                    reason="limit_reached",
                    current_usage=used,
                    limit=limit,
                    is_overage=True,
                    warning_level=level,
                )

            return UsageCheckResult(
                allowed=True,
                current_usage=used,
                limit=limit,
                is_overage=is_overage,
                # +1 for the suggestion about to be consumed
                overage_count=max(0, used - limit) + 1 if is_overage else None,
                warning_level=level,
            )
        except Exception as e:
            logger.error(
                "usage_check_failed",
                workspace_id=str(workspace_id),
                user_id=user_id,
                error=str(e),
            )
            return _default_allow()

    # ═══════════════════════════════════════════════════════════════════════
    # METERING
    # ═══════════════════════════════════════════════════════════════════════

    async def record_usage_event(
        self,
        workspace_id: UUID,
        user_id: str,
        event_type: str = "suggestion",
        tokens_used: int | None = None,
        cost_estimate: float | None = None,
        channel_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Consume one credit and append a usage event.

        Returns False only when the hard-cap guard rejected the increment.
        """
        try:
            async with db_session(self._session_factory) as db:
                email = await self._email_for(db, workspace_id, user_id)
                if not email:
                    logger.warning(
                        "usage_record_no_email",
                        workspace_id=str(workspace_id),
                        user_id=user_id,
                    )
                    return True

                plan_id, plan = await get_usage_plan(db, email)
                record = await self._get_or_create_record(db, email, plan, now)

                input_tokens, output_tokens = split_tokens(tokens_used)
                if cost_estimate is None and input_tokens is not None:
                    cost_estimate = estimate_cost(input_tokens, output_tokens or 0)
                usage_event = UsageEvent(
                    email=email,
                    slack_user_id=user_id,
                    workspace_id=workspace_id,
                    event_type=event_type,
                    channel_id=channel_id,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    estimated_cost=(
                        Decimal(str(cost_estimate)) if cost_estimate is not None else None
                    ),
                    created_at=now or utcnow(),
                )

                if event_type == "refinement":
                    db.add(usage_event)
                    logger.info(
                        "refinement_recorded",
                        email=email,
                        user_id=user_id,
                    )
                    return True

                stmt = (
                    update(UsageRecord)
                    .where(UsageRecord.id == record.id)
                    .values(
                        suggestions_used=UsageRecord.suggestions_used + 1,
                        updated_at=utcnow(),
                    )
                    .returning(UsageRecord.suggestions_used)
                    .execution_options(synchronize_session=False)
                )
                if plan.is_hard_capped:
                    stmt = stmt.where(
                        UsageRecord.suggestions_used
                        < UsageRecord.suggestions_included + UsageRecord.bonus_suggestions
                    )
                new_count = (await db.execute(stmt)).scalar_one_or_none()

                if new_count is None:
                    logger.info(
                        "usage_increment_rejected",
                        email=email,
                        user_id=user_id,
                        plan_id=plan_id,
                    )
                    return False

                db.add(usage_event)

            logger.info(
                "usage_event_recorded",
                email=email,
                user_id=user_id,
                event_type=event_type,
                used=new_count,
                limit=record.effective_limit,
                is_overage=new_count > record.effective_limit,
            )
            return True
        except Exception as e:
            logger.error(
                "usage_record_failed",
                workspace_id=str(workspace_id),
                user_id=user_id,
                event_type=event_type,
                error=str(e),
            )
            return True

    # ═══════════════════════════════════════════════════════════════════════
    # DISPLAY
    # ═══════════════════════════════════════════════════════════════════════

    async def get_usage_status(
        self, workspace_id: UUID, user_id: str, now: datetime | None = None
    ) -> UsageStatus:
        try:
            async with db_session(self._session_factory) as db:
                email = await self._email_for(db, workspace_id, user_id)
                if not email:
                    return _default_status()
                plan_id, plan = await get_usage_plan(db, email)
                record = await self._get_or_create_record(db, email, plan, now)

            used = record.suggestions_used
            limit = record.effective_limit
            percent = (used / limit) * 100 if limit > 0 else (100.0 if used else 0.0)
            return UsageStatus(
                used=used,
                limit=limit,
                percent_used=percent,
                is_near_limit=80 <= percent < 100,
                is_at_limit=percent >= 100,
                plan_id=plan_id,
                warning_level=warning_level_for(used, limit),
                overage_rate=plan.overage_rate,
            )
        except Exception as e:
            logger.error(
                "usage_status_failed",
                workspace_id=str(workspace_id),
                user_id=user_id,
                error=str(e),
            )
            return _default_status()

    # ── Internals ───────────────────────────────────────────────────────

    @staticmethod
    async def _email_for(db: AsyncSession, workspace_id: UUID, user_id: str) -> str | None:
        result = await db.execute(
            select(User.email)
            .where(User.workspace_id == workspace_id, User.slack_user_id == user_id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _get_or_create_record(
        db: AsyncSession,
        email: str,
        plan: PlanLimits,
        now: datetime | None,
    ) -> UsageRecord:
        start, end = billing_period(now)
        stmt = insert_for(db, UsageRecord).values(
            email=email,
            billing_period_start=start,
            billing_period_end=end,
            suggestions_used=0,
            suggestions_included=plan.included_suggestions,
            bonus_suggestions=0,
            overage_reported=False,
        )
        await db.execute(
            stmt.on_conflict_do_nothing(index_elements=["email", "billing_period_start"])
        )
        result = await db.execute(
            select(UsageRecord).where(
                UsageRecord.email == email,
                UsageRecord.billing_period_start == start,
            )
        )
        return result.scalar_one()


_enforcer: UsageEnforcer | None = None


def get_usage_enforcer() -> UsageEnforcer:
    global _enforcer
    if _enforcer is None:
        _enforcer = UsageEnforcer()
    return _enforcer
