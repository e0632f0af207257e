"""Database models for the suggestion core.

Design principles:
- Uniqueness constraints carry the idempotence guarantees (watch rows,
  thread participation, actionable dedupe, one metrics row per suggestion)
- Time windows are evaluated at read time; no row carries a TTL
- JSON columns map to JSONB on PostgreSQL, plain JSON elsewhere
- Counters are mutated with single atomic UPDATE statements only
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB as _JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from speakforme.core.clock import utcnow


class JSONB(TypeDecorator):
    """JSONB on PostgreSQL, JSON elsewhere; serialises UUID, datetime and Enum."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(_JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        return json.loads(json.dumps(value, default=self._json_default))

    @staticmethod
    def _json_default(obj: Any) -> Any:
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class Base(DeclarativeBase):
    """Base class with common utilities."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
        list[str]: JSONB,
        datetime: DateTime(timezone=True),
        uuid.UUID: Uuid,
    }

    def to_dict(self) -> dict[str, Any]:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


def _created_at() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class TriggerMode(str, Enum):
    """What happens to a suggestion that violates a guardrail."""
    HARD_BLOCK = "hard_block"
    REGENERATE = "regenerate"
    SOFT_WARNING = "soft_warning"


class AlertStatus(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class ActionableStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    DISMISSED = "dismissed"
    SNOOZED = "snoozed"


# ═══════════════════════════════════════════════════════════════════════════════
# TENANTS
# ═══════════════════════════════════════════════════════════════════════════════

class Workspace(Base):
    """Installed Slack workspace."""

    __tablename__ = "workspaces"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    slack_team_id: Mapped[str] = mapped_column(
        String(32), unique=True, nullable=False,
        comment="Slack workspace/team ID (T1234567890)"
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        nullable=True, comment="Owning organization (guardrails, escalations)"
    )
    created_at: Mapped[datetime] = _created_at()


class User(Base):
    """Workspace member known to the app."""

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("workspace_id", "slack_user_id", name="uix_user_workspace_slack"),
        Index("ix_users_workspace_role", "workspace_id", "role"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    slack_user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="Billing identity"
    )
    role: Mapped[str] = mapped_column(
        String(20), default="member", nullable=False, comment="member|admin"
    )
    created_at: Mapped[datetime] = _created_at()


class UserSubscription(Base):
    """Billing plan per email (owned by the billing collaborator)."""

    __tablename__ = "user_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    plan_id: Mapped[str] = mapped_column(String(32), default="free", nullable=False)
    subscription_status: Mapped[str] = mapped_column(
        String(20), default="active", nullable=False,
        comment="active|trialing|past_due|canceled"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


# ═══════════════════════════════════════════════════════════════════════════════
# WATCHING & PARTICIPATION
# ═══════════════════════════════════════════════════════════════════════════════

class WatchedConversation(Base):
    """A user's opt-in to suggestions for one conversation."""

    __tablename__ = "watched_conversations"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "user_id", "channel_id", name="uix_watched_workspace_user_channel"
        ),
        Index("ix_watched_workspace_channel", "workspace_id", "channel_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(32), nullable=False, comment="Slack user ID")
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    channel_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    channel_type: Mapped[str | None] = mapped_column(
        String(20), nullable=True, comment="channel|group|im|mpim"
    )
    auto_respond: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = _created_at()


class ThreadParticipant(Base):
    """Last time a user posted in a thread.

    "Participating" is derived at read time from last_message_at; the row
    itself never expires.
    """

    __tablename__ = "thread_participants"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "user_id", "channel_id", "thread_ts",
            name="uix_thread_participant",
        ),
        Index("ix_thread_participants_last_message", "last_message_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    thread_ts: Mapped[str] = mapped_column(String(50), nullable=False)
    last_message_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ═══════════════════════════════════════════════════════════════════════════════
# SUGGESTION TELEMETRY
# ═══════════════════════════════════════════════════════════════════════════════

class SuggestionMetrics(Base):
    """One row per suggestion, patched stage by stage in any order."""

    __tablename__ = "suggestion_metrics"
    __table_args__ = (
        Index("ix_suggestion_metrics_workspace_received", "workspace_id", "event_received_at"),
        Index("ix_suggestion_metrics_org", "organization_id"),
    )

    suggestion_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    trigger_type: Mapped[str | None] = mapped_column(String(20), nullable=True)

    event_received_at: Mapped[datetime | None] = mapped_column(nullable=True)
    job_queued_at: Mapped[datetime | None] = mapped_column(nullable=True)
    ai_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    ai_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Derived, only when both endpoints were recorded
    ai_processing_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    queue_delay_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    user_action: Mapped[str | None] = mapped_column(
        String(20), nullable=True, comment="accepted|refined|dismissed|sent|liked|disliked"
    )
    user_action_at: Mapped[datetime | None] = mapped_column(nullable=True)
    error_type: Mapped[str | None] = mapped_column(
        String(20), nullable=True, comment="usage_limit|guardrail|ai_error|delivery_error"
    )
    created_at: Mapped[datetime] = _created_at()


# ═══════════════════════════════════════════════════════════════════════════════
# USAGE METERING
# ═══════════════════════════════════════════════════════════════════════════════

class UsageRecord(Base):
    """Suggestions consumed by one billing identity in one calendar month."""

    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("email", "billing_period_start", name="uix_usage_email_period"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    billing_period_start: Mapped[datetime] = mapped_column(nullable=False)
    billing_period_end: Mapped[datetime] = mapped_column(nullable=False)
    suggestions_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    suggestions_included: Mapped[int] = mapped_column(Integer, nullable=False)
    bonus_suggestions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    overage_reported: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    @property
    def effective_limit(self) -> int:
        return self.suggestions_included + (self.bonus_suggestions or 0)


class UsageEvent(Base):
    """Immutable per-suggestion usage entry."""

    __tablename__ = "usage_events"
    __table_args__ = (
        Index("ix_usage_events_email_created", "email", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    slack_user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    workspace_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    event_type: Mapped[str] = mapped_column(
        String(20), nullable=False, comment="suggestion|refinement"
    )
    channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    estimated_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 6), nullable=True)
    created_at: Mapped[datetime] = _created_at()


# ═══════════════════════════════════════════════════════════════════════════════
# GUARDRAILS
# ═══════════════════════════════════════════════════════════════════════════════

class GuardrailConfig(Base):
    """Per-organization content policy."""

    __tablename__ = "guardrail_config"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(unique=True, nullable=False)
    enabled_categories: Mapped[list[str]] = mapped_column(JSONB, default=list)
    blocked_keywords: Mapped[list[str]] = mapped_column(JSONB, default=list)
    trigger_mode: Mapped[str] = mapped_column(
        String(20), default=TriggerMode.HARD_BLOCK.value, nullable=False,
        comment="hard_block|regenerate|soft_warning"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class GuardrailViolation(Base):
    """Audit trail of every matched rule."""

    __tablename__ = "guardrail_violations"
    __table_args__ = (
        Index("ix_guardrail_violations_org_created", "organization_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    workspace_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    violation_type: Mapped[str] = mapped_column(String(20), nullable=False, comment="category|keyword")
    violated_rule: Mapped[str] = mapped_column(String(255), nullable=False)
    suggestion_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False, comment="blocked|regenerated|warned")
    created_at: Mapped[datetime] = _created_at()


# ═══════════════════════════════════════════════════════════════════════════════
# ESCALATIONS
# ═══════════════════════════════════════════════════════════════════════════════

class EscalationAlert(Base):
    """High-risk conversation alert; at most one open per channel per cooldown."""

    __tablename__ = "escalation_alerts"
    __table_args__ = (
        Index("ix_escalation_alerts_channel_status_created", "channel_id", "status", "created_at"),
        Index("ix_escalation_alerts_org_status", "organization_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    workspace_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    client_profile_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    message_ts: Mapped[str] = mapped_column(String(50), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(40), default="tension_detected", nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, comment="critical|high|medium")
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    suggested_action: Mapped[str | None] = mapped_column(Text, nullable=True)
    sentiment: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=AlertStatus.OPEN.value, nullable=False,
        comment="open|acknowledged|resolved|false_positive"
    )
    acknowledged_by: Mapped[str | None] = mapped_column(String(32), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()


# ═══════════════════════════════════════════════════════════════════════════════
# ACTIONABLES & SURVEYS
# ═══════════════════════════════════════════════════════════════════════════════

class ActionableItem(Base):
    """Task, commitment or deadline detected in a watched message."""

    __tablename__ = "actionable_items"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "user_id", "channel_id", "message_ts",
            name="uix_actionable_message",
        ),
        Index("ix_actionable_items_user_status", "workspace_id", "user_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    message_ts: Mapped[str] = mapped_column(String(50), nullable=False)
    thread_ts: Mapped[str | None] = mapped_column(String(50), nullable=True)
    message_text: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    actionable_type: Mapped[str] = mapped_column(
        String(20), nullable=False, comment="action_request|commitment|deadline"
    )
    due_date: Mapped[datetime | None] = mapped_column(nullable=True)
    confidence_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=ActionableStatus.PENDING.value, nullable=False
    )
    snoozed_until: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    dismissed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    ai_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    detected_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class SatisfactionSurvey(Base):
    """NPS survey delivered to a user; frequency-capped per user."""

    __tablename__ = "satisfaction_surveys"
    __table_args__ = (
        Index("ix_surveys_workspace_user_delivered", "workspace_id", "user_id", "delivered_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    workspace_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    survey_type: Mapped[str] = mapped_column(String(20), default="nps", nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="delivered", nullable=False, comment="delivered|completed|dismissed"
    )
    delivered_at: Mapped[datetime] = mapped_column(nullable=False)
    slack_message_ts: Mapped[str | None] = mapped_column(String(50), nullable=True)
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    nps_category: Mapped[str | None] = mapped_column(String(20), nullable=True)
    feedback_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(nullable=True)
