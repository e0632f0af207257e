"""Escalation alerts for high-risk client conversations.

At most one open alert per channel inside the cooldown window
(``escalation_cooldown_hours``). A later high-risk event in that window
gets the existing alert's id back instead of a new alert. The window is a
read-time comparison on ``created_at``; nothing expires alerts.

New alerts are DM'd to every admin of the workspace. One unreachable
admin never stops the others from being notified, and
``trigger_escalation_alert`` itself never raises: escalation must not
abort the suggestion path that spotted the tension.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Protocol
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from speakforme.config import settings
from speakforme.core.clock import utcnow
from speakforme.core.types import SentimentAnalysis
from speakforme.db.models import AlertStatus, EscalationAlert, User
from speakforme.db.session import db_session

logger = structlog.get_logger()

_SUGGESTED_ACTIONS = {
    "critical": "URGENT: Escalate to account manager immediately. Consider calling client directly.",
    "high": "Review conversation immediately. Respond within 1 hour with empathetic acknowledgment.",
    "medium": "Monitor conversation closely. Ensure next response addresses concerns directly.",
}


def severity_for(risk_level: str) -> str:
    if risk_level == "critical":
        return "critical"
    if risk_level == "high":
        return "high"
    return "medium"


def summarize(sentiment: SentimentAnalysis) -> str:
    return f"Client message shows {sentiment.tone} tone (confidence: {sentiment.confidence * 100:.0f}%)"


@dataclass(frozen=True)
class EscalationNotice:
    """What an admin is told about a new alert."""

    alert_id: str
    channel_id: str
    severity: str
    suggested_action: str
    sentiment: SentimentAnalysis


class AdminNotifier(Protocol):
    async def notify(self, admin_user_id: str, notice: EscalationNotice) -> None: ...


class SlackAdminNotifier:
    """Sends alert DMs through the Slack Web API."""

    def __init__(self, client: Any, app_url: str | None = None) -> None:
        self.client = client
        self.app_url = app_url or settings.app_url

    def format(self, notice: EscalationNotice) -> str:
        s = notice.sentiment
        return (
            ":rotating_light: *Escalation Alert*\n"
            f"*Severity:* {notice.severity.upper()}\n"
            f"*Channel:* <#{notice.channel_id}>\n"
            f"*Risk:* {s.tone} (confidence: {s.confidence * 100:.0f}%)\n"
            f"*Indicators:* {', '.join(s.indicators)}\n"
            f"*Suggested Action:* {notice.suggested_action}\n\n"
            f"<{self.app_url}/admin/escalations|View all alerts>"
        )

    async def notify(self, admin_user_id: str, notice: EscalationNotice) -> None:
        # Posting to a user id opens the bot DM with that user
        await self.client.chat_postMessage(channel=admin_user_id, text=self.format(notice))


class EscalationMonitor:
    """Creates, deduplicates and manages escalation alerts."""

    def __init__(
        self,
        notifier: AdminNotifier | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        cooldown_hours: int | None = None,
    ) -> None:
        self.notifier = notifier
        self._session_factory = session_factory
        self.cooldown = timedelta(
            hours=cooldown_hours if cooldown_hours is not None else settings.escalation_cooldown_hours
        )
        # Serializes check-then-insert per channel within this process.
        # channel_id -> (lock, holders and waiters); dropped when idle.
        self._channel_locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _channel_lock(self, channel_id: str) -> AsyncIterator[None]:
        lock, users = self._channel_locks.get(channel_id, (asyncio.Lock(), 0))
        self._channel_locks[channel_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._channel_locks[channel_id]
            if users <= 1:
                del self._channel_locks[channel_id]
            else:
                self._channel_locks[channel_id] = (lock, users - 1)

    async def trigger_escalation_alert(
        self,
        organization_id: UUID,
        workspace_id: UUID,
        channel_id: str,
        message_ts: str,
        sentiment: SentimentAnalysis,
        client_profile_id: UUID | None = None,
        now: datetime | None = None,
    ) -> str | None:
        """Return the id of the open alert for this channel, creating it if needed."""
        try:
            now = now or utcnow()
            async with self._channel_lock(channel_id):
                existing = await self._open_alert_within_cooldown(channel_id, now)
                if existing is not None:
                    logger.info(
                        "escalation_cooldown_active",
                        channel_id=channel_id,
                        alert_id=str(existing),
                    )
                    return str(existing)

                severity = severity_for(sentiment.risk_level)
                suggested_action = _SUGGESTED_ACTIONS[severity]
                alert = EscalationAlert(
                    organization_id=organization_id,
                    workspace_id=workspace_id,
                    client_profile_id=client_profile_id,
                    channel_id=channel_id,
                    message_ts=message_ts,
                    alert_type="tension_detected",
                    severity=severity,
                    summary=summarize(sentiment),
                    suggested_action=suggested_action,
                    sentiment=sentiment.to_dict(),
                    status=AlertStatus.OPEN.value,
                    created_at=now,
                )
                async with db_session(self._session_factory) as db:
                    db.add(alert)
                    await db.flush()
                    alert_id = str(alert.id)

            logger.info(
                "escalation_alert_created",
                alert_id=alert_id,
                channel_id=channel_id,
                severity=severity,
                tone=sentiment.tone,
            )
            await self._notify_admins(
                workspace_id,
                EscalationNotice(
                    alert_id=alert_id,
                    channel_id=channel_id,
                    severity=severity,
                    suggested_action=suggested_action,
                    sentiment=sentiment,
                ),
            )
            return alert_id
        except Exception as e:
            logger.error(
                "escalation_alert_failed",
                organization_id=str(organization_id),
                channel_id=channel_id,
                error=str(e),
                exc_info=True,
            )
            return None

    async def _open_alert_within_cooldown(self, channel_id: str, now: datetime) -> UUID | None:
        async with db_session(self._session_factory) as db:
            result = await db.execute(
                select(EscalationAlert.id)
                .where(
                    EscalationAlert.channel_id == channel_id,
                    EscalationAlert.status == AlertStatus.OPEN.value,
                    EscalationAlert.created_at > now - self.cooldown,
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def _notify_admins(self, workspace_id: UUID, notice: EscalationNotice) -> None:
        async with db_session(self._session_factory) as db:
            result = await db.execute(
                select(User.slack_user_id).where(
                    User.workspace_id == workspace_id,
                    User.role == "admin",
                )
            )
            admins = list(result.scalars().all())

        if not admins:
            logger.warning("escalation_no_admins", workspace_id=str(workspace_id))
            return
        if self.notifier is None:
            logger.warning("escalation_no_notifier", alert_id=notice.alert_id)
            return

        for admin in admins:
            try:
                await self.notifier.notify(admin, notice)
                logger.info("escalation_admin_notified", alert_id=notice.alert_id, admin=admin)
            except Exception as e:
                logger.warning(
                    "escalation_admin_notify_failed",
                    alert_id=notice.alert_id,
                    admin=admin,
                    error=str(e),
                )

    # ═══════════════════════════════════════════════════════════════════════
    # ALERT MANAGEMENT
    # ═══════════════════════════════════════════════════════════════════════

    async def acknowledge_alert(
        self, alert_id: UUID, organization_id: UUID, acknowledged_by: str
    ) -> None:
        await self._update(
            alert_id,
            organization_id,
            status=AlertStatus.ACKNOWLEDGED.value,
            acknowledged_by=acknowledged_by,
            acknowledged_at=utcnow(),
        )
        logger.info("escalation_alert_acknowledged", alert_id=str(alert_id), by=acknowledged_by)

    async def resolve_alert(
        self,
        alert_id: UUID,
        organization_id: UUID,
        resolved_by: str,
        resolution_notes: str | None = None,
    ) -> None:
        now = utcnow()
        await self._update(
            alert_id,
            organization_id,
            status=AlertStatus.RESOLVED.value,
            acknowledged_by=resolved_by,
            acknowledged_at=func.coalesce(EscalationAlert.acknowledged_at, now),
            resolved_at=now,
            resolution_notes=resolution_notes,
        )
        logger.info("escalation_alert_resolved", alert_id=str(alert_id), by=resolved_by)

    async def mark_false_positive(self, alert_id: UUID, organization_id: UUID) -> None:
        await self._update(alert_id, organization_id, status=AlertStatus.FALSE_POSITIVE.value)
        logger.info("escalation_alert_false_positive", alert_id=str(alert_id))

    async def get_escalation_alerts(
        self,
        organization_id: UUID,
        status: str | None = None,
        severity: str | None = None,
        limit: int = 50,
    ) -> list[EscalationAlert]:
        stmt = select(EscalationAlert).where(EscalationAlert.organization_id == organization_id)
        if status:
            stmt = stmt.where(EscalationAlert.status == status)
        if severity:
            stmt = stmt.where(EscalationAlert.severity == severity)
        stmt = stmt.order_by(EscalationAlert.created_at.desc()).limit(limit)
        async with db_session(self._session_factory) as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_alert_stats(
        self, organization_id: UUID, now: datetime | None = None
    ) -> dict[str, int]:
        """Counts by status plus alerts created this calendar month."""
        now = now or utcnow()
        first_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        stats = {
            "open": 0,
            "acknowledged": 0,
            "resolved": 0,
            "false_positive": 0,
            "total_this_month": 0,
        }
        async with db_session(self._session_factory) as db:
            result = await db.execute(
                select(EscalationAlert.status, func.count())
                .where(EscalationAlert.organization_id == organization_id)
                .group_by(EscalationAlert.status)
            )
            for status, count in result.all():
                if status in stats:
                    stats[status] = int(count)

            month = await db.execute(
                select(func.count()).where(
                    EscalationAlert.organization_id == organization_id,
                    EscalationAlert.created_at > first_of_month,
                )
            )
            stats["total_this_month"] = int(month.scalar_one())
        return stats

    async def _update(self, alert_id: UUID, organization_id: UUID, **values: Any) -> None:
        async with db_session(self._session_factory) as db:
            await db.execute(
                update(EscalationAlert)
                .where(
                    EscalationAlert.id == alert_id,
                    EscalationAlert.organization_id == organization_id,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
