"""Escalation alert cooldown and admin notification tests."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import make_user
from speakforme.core.types import SentimentAnalysis
from speakforme.escalation.monitor import (
    EscalationMonitor,
    EscalationNotice,
    SlackAdminNotifier,
    severity_for,
)

T0 = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

HIGH_RISK = SentimentAnalysis(
    tone="frustrated", confidence=0.92, risk_level="high", indicators=["unacceptable", "cancel"]
)


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def monitor(session_factory, notifier) -> EscalationMonitor:
    return EscalationMonitor(notifier=notifier, session_factory=session_factory, cooldown_hours=4)


async def _trigger(monitor, workspace, at, channel="C1"):
    return await monitor.trigger_escalation_alert(
        organization_id=workspace.organization_id,
        workspace_id=workspace.id,
        channel_id=channel,
        message_ts="1700000000.000100",
        sentiment=HIGH_RISK,
        now=at,
    )


class TestSeverity:
    @pytest.mark.parametrize(
        "risk,expected", [("critical", "critical"), ("high", "high"), ("medium", "medium"), ("low", "medium")]
    )
    def test_mapping(self, risk, expected):
        assert severity_for(risk) == expected


class TestCooldown:
    async def test_same_channel_within_cooldown_returns_existing(self, monitor, org_workspace):
        first = await _trigger(monitor, org_workspace, T0)
        second = await _trigger(monitor, org_workspace, T0 + timedelta(minutes=10))
        assert first is not None
        assert second == first

    async def test_after_cooldown_creates_new_alert(self, monitor, org_workspace):
        first = await _trigger(monitor, org_workspace, T0)
        second = await _trigger(monitor, org_workspace, T0 + timedelta(hours=5))
        assert second is not None
        assert second != first

    async def test_other_channel_not_affected(self, monitor, org_workspace):
        first = await _trigger(monitor, org_workspace, T0, channel="C1")
        second = await _trigger(monitor, org_workspace, T0, channel="C2")
        assert first != second

    async def test_resolved_alert_does_not_suppress(self, monitor, org_workspace):
        first = await _trigger(monitor, org_workspace, T0)
        await monitor.resolve_alert(
            uuid.UUID(first), org_workspace.organization_id, resolved_by="UADMIN"
        )
        second = await _trigger(monitor, org_workspace, T0 + timedelta(minutes=10))
        assert second != first

    async def test_concurrent_triggers_create_one_alert(self, monitor, org_workspace):
        ids = await asyncio.gather(*(_trigger(monitor, org_workspace, T0) for _ in range(5)))
        assert len(set(ids)) == 1
        alerts = await monitor.get_escalation_alerts(org_workspace.organization_id)
        assert len(alerts) == 1

    async def test_idle_channel_locks_released(self, monitor, org_workspace):
        await asyncio.gather(
            _trigger(monitor, org_workspace, T0, channel="C1"),
            _trigger(monitor, org_workspace, T0, channel="C1"),
            _trigger(monitor, org_workspace, T0, channel="C2"),
        )
        assert monitor._channel_locks == {}


class TestAdminNotification:
    async def test_every_admin_notified(self, monitor, notifier, org_workspace, session_factory):
        await make_user(session_factory, org_workspace.id, "UADMIN1", role="admin")
        await make_user(session_factory, org_workspace.id, "UADMIN2", role="admin")
        await make_user(session_factory, org_workspace.id, "UMEMBER")

        alert_id = await _trigger(monitor, org_workspace, T0)

        notified = sorted(call.args[0] for call in notifier.notify.await_args_list)
        assert notified == ["UADMIN1", "UADMIN2"]
        notice = notifier.notify.await_args_list[0].args[1]
        assert isinstance(notice, EscalationNotice)
        assert notice.alert_id == alert_id
        assert notice.severity == "high"

    async def test_one_failing_admin_does_not_stop_others(
        self, monitor, notifier, org_workspace, session_factory
    ):
        await make_user(session_factory, org_workspace.id, "UADMIN1", role="admin")
        await make_user(session_factory, org_workspace.id, "UADMIN2", role="admin")

        async def notify(admin, notice):
            if admin == "UADMIN1":
                raise RuntimeError("user_not_found")

        notifier.notify.side_effect = notify
        alert_id = await _trigger(monitor, org_workspace, T0)

        assert alert_id is not None
        assert notifier.notify.await_count == 2

    async def test_cooldown_hit_does_not_renotify(
        self, monitor, notifier, org_workspace, session_factory
    ):
        await make_user(session_factory, org_workspace.id, "UADMIN1", role="admin")
        await _trigger(monitor, org_workspace, T0)
        await _trigger(monitor, org_workspace, T0 + timedelta(minutes=10))
        assert notifier.notify.await_count == 1


class TestNeverRaises:
    async def test_database_failure_returns_none(self, org_workspace):
        def broken():
            raise RuntimeError("db down")

        monitor = EscalationMonitor(session_factory=broken)  # type: ignore[arg-type]
        assert await _trigger(monitor, org_workspace, T0) is None


class TestAlertManagement:
    async def test_acknowledge_then_stats(self, monitor, org_workspace):
        alert_id = await _trigger(monitor, org_workspace, T0)
        await _trigger(monitor, org_workspace, T0, channel="C2")
        await monitor.acknowledge_alert(
            uuid.UUID(alert_id), org_workspace.organization_id, acknowledged_by="UADMIN"
        )

        stats = await monitor.get_alert_stats(org_workspace.organization_id, now=T0)
        assert stats["open"] == 1
        assert stats["acknowledged"] == 1
        assert stats["total_this_month"] == 2

    async def test_filter_by_status(self, monitor, org_workspace):
        alert_id = await _trigger(monitor, org_workspace, T0)
        await monitor.mark_false_positive(uuid.UUID(alert_id), org_workspace.organization_id)
        assert await monitor.get_escalation_alerts(org_workspace.organization_id, status="open") == []

    async def test_other_organization_cannot_update(self, monitor, org_workspace):
        alert_id = await _trigger(monitor, org_workspace, T0)
        await monitor.mark_false_positive(uuid.UUID(alert_id), uuid.uuid4())
        alerts = await monitor.get_escalation_alerts(org_workspace.organization_id, status="open")
        assert [str(a.id) for a in alerts] == [alert_id]


class TestSlackAdminNotifier:
    async def test_posts_dm(self):
        client = AsyncMock()
        notifier = SlackAdminNotifier(client, app_url="https://app.example")
        notice = EscalationNotice(
            alert_id="a1",
            channel_id="C1",
            severity="high",
            suggested_action="Review now",
            sentiment=HIGH_RISK,
        )
        await notifier.notify("UADMIN", notice)

        kwargs = client.chat_postMessage.await_args.kwargs
        assert kwargs["channel"] == "UADMIN"
        assert "*Severity:* HIGH" in kwargs["text"]
        assert "<#C1>" in kwargs["text"]
        assert "https://app.example/admin/escalations" in kwargs["text"]
