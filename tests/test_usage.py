"""Usage enforcement tests: caps, warning tiers, guarded increments, fail-open."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from conftest import make_user
from speakforme.billing.plans import PLAN_LIMITS, get_plan_limits
from speakforme.billing.usage import UsageEnforcer, billing_period, warning_level_for
from speakforme.db.models import UsageEvent, UsageRecord

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def enforcer(session_factory) -> UsageEnforcer:
    return UsageEnforcer(session_factory=session_factory)


async def _consume(enforcer, workspace, user_id: str, n: int) -> None:
    for _ in range(n):
        assert await enforcer.record_usage_event(workspace.id, user_id, now=NOW)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestBillingPeriod:
    def test_mid_month(self):
        start, end = billing_period(NOW)
        assert start == datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert end.month == 3 and end.day == 31
        assert end < datetime(2026, 4, 1, tzinfo=timezone.utc)

    def test_december_rolls_year(self):
        start, end = billing_period(datetime(2026, 12, 31, 23, 59, tzinfo=timezone.utc))
        assert start == datetime(2026, 12, 1, tzinfo=timezone.utc)
        assert end.year == 2026 and end.month == 12 and end.day == 31


class TestWarningLevel:
    @pytest.mark.parametrize(
        "used,limit,expected",
        [(0, 5, "none"), (3, 5, "none"), (4, 5, "warning"), (5, 5, "critical"), (19, 20, "critical")],
    )
    def test_tiers(self, used, limit, expected):
        assert warning_level_for(used, limit) == expected


class TestPlans:
    def test_unknown_plan_is_free(self):
        assert get_plan_limits("enterprise-legacy") == PLAN_LIMITS["free"]

    def test_only_free_is_hard_capped(self):
        assert [p for p, limits in PLAN_LIMITS.items() if limits.is_hard_capped] == ["free"]


# ---------------------------------------------------------------------------
# Gate and meter
# ---------------------------------------------------------------------------


class TestFreePlanCap:
    async def test_four_of_five_allowed_with_warning(self, enforcer, workspace, session_factory):
        await make_user(session_factory, workspace.id, "U1", email="u1@acme.test")
        await _consume(enforcer, workspace, "U1", 4)

        check = await enforcer.check_usage_allowed(workspace.id, "U1", now=NOW)
        assert check.allowed
        assert check.current_usage == 4
        assert check.limit == 5
        assert check.warning_level == "warning"

    async def test_five_of_five_denied(self, enforcer, workspace, session_factory):
        await make_user(session_factory, workspace.id, "U1", email="u1@acme.test")
        await _consume(enforcer, workspace, "U1", 5)

        check = await enforcer.check_usage_allowed(workspace.id, "U1", now=NOW)
        assert not check.allowed
        assert check.reason == "limit_reached"
        assert check.is_overage

    async def test_increment_past_cap_rejected(self, enforcer, workspace, session_factory):
        await make_user(session_factory, workspace.id, "U1", email="u1@acme.test")
        await _consume(enforcer, workspace, "U1", 5)

        assert await enforcer.record_usage_event(workspace.id, "U1", now=NOW) is False
        async with session_factory() as db:
            record = (await db.execute(select(UsageRecord))).scalar_one()
            events = (await db.execute(select(UsageEvent))).scalars().all()
        assert record.suggestions_used == 5
        assert len(events) == 5

    async def test_bonus_suggestions_raise_the_cap(self, enforcer, workspace, session_factory):
        await make_user(session_factory, workspace.id, "U1", email="u1@acme.test")
        await _consume(enforcer, workspace, "U1", 5)
        async with session_factory() as db:
            record = (await db.execute(select(UsageRecord))).scalar_one()
            record.bonus_suggestions = 2
            await db.commit()

        check = await enforcer.check_usage_allowed(workspace.id, "U1", now=NOW)
        assert check.allowed
        assert check.limit == 7

    async def test_new_month_resets(self, enforcer, workspace, session_factory):
        await make_user(session_factory, workspace.id, "U1", email="u1@acme.test")
        await _consume(enforcer, workspace, "U1", 5)

        april = datetime(2026, 4, 2, tzinfo=timezone.utc)
        check = await enforcer.check_usage_allowed(workspace.id, "U1", now=april)
        assert check.allowed
        assert check.current_usage == 0


class TestPaidPlanOverage:
    async def test_overage_allowed_and_counted(self, enforcer, workspace, session_factory):
        await make_user(
            session_factory, workspace.id, "U1", email="u1@acme.test", plan_id="starter"
        )
        await _consume(enforcer, workspace, "U1", 25)

        check = await enforcer.check_usage_allowed(workspace.id, "U1", now=NOW)
        assert check.allowed
        assert check.is_overage
        assert check.overage_count == 1
        assert await enforcer.record_usage_event(workspace.id, "U1", now=NOW)

    async def test_inactive_subscription_falls_back_to_free(
        self, enforcer, workspace, session_factory
    ):
        await make_user(
            session_factory,
            workspace.id,
            "U1",
            email="u1@acme.test",
            plan_id="pro",
            subscription_status="canceled",
        )
        check = await enforcer.check_usage_allowed(workspace.id, "U1", now=NOW)
        assert check.limit == 5


class TestRefinement:
    async def test_refinement_does_not_consume_credit(self, enforcer, workspace, session_factory):
        await make_user(session_factory, workspace.id, "U1", email="u1@acme.test")
        assert await enforcer.record_usage_event(
            workspace.id, "U1", event_type="refinement", now=NOW
        )
        status = await enforcer.get_usage_status(workspace.id, "U1", now=NOW)
        assert status.used == 0
        async with session_factory() as db:
            events = (await db.execute(select(UsageEvent))).scalars().all()
        assert [e.event_type for e in events] == ["refinement"]


class TestUsageEvents:
    async def test_zero_cost_estimate_kept(self, enforcer, workspace, session_factory):
        await make_user(session_factory, workspace.id, "U1", email="u1@acme.test")
        assert await enforcer.record_usage_event(
            workspace.id, "U1", tokens_used=100, cost_estimate=0.0, now=NOW
        )
        async with session_factory() as db:
            event = (await db.execute(select(UsageEvent))).scalar_one()
        assert event.estimated_cost is not None
        assert event.estimated_cost == 0


class TestFailOpen:
    async def test_no_email_allows(self, enforcer, workspace, session_factory):
        await make_user(session_factory, workspace.id, "U1", email=None)
        check = await enforcer.check_usage_allowed(workspace.id, "U1", now=NOW)
        assert check.allowed
        assert check.limit == 5

    async def test_unknown_user_allows(self, enforcer, workspace):
        check = await enforcer.check_usage_allowed(workspace.id, "UNKNOWN", now=NOW)
        assert check.allowed

    async def test_database_error_allows(self, workspace):
        def broken():
            raise RuntimeError("db down")

        enforcer = UsageEnforcer(session_factory=broken)  # type: ignore[arg-type]
        check = await enforcer.check_usage_allowed(workspace.id, "U1")
        assert check.allowed
        assert await enforcer.record_usage_event(workspace.id, "U1") is True


class TestStatus:
    async def test_near_limit(self, enforcer, workspace, session_factory):
        await make_user(session_factory, workspace.id, "U1", email="u1@acme.test")
        await _consume(enforcer, workspace, "U1", 4)
        status = await enforcer.get_usage_status(workspace.id, "U1", now=NOW)
        assert status.used == 4
        assert status.percent_used == pytest.approx(80.0)
        assert status.is_near_limit
        assert not status.is_at_limit
        assert status.plan_id == "free"
