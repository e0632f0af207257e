"""Initial schema: tenants, watch state, participation, metering, guardrails,
escalations, actionables, surveys and suggestion metrics.

Revision ID: c4d8e2f1a9b7
Revises:
Create Date: 2026-09-01 12:00:00.000000+00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision: str = "c4d8e2f1a9b7"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _ts(name: str, nullable: bool = True, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, **kwargs)


def _created_at() -> sa.Column:
    return _ts("created_at", nullable=False, server_default=sa.text("now()"))


def upgrade() -> None:
    # Tenants
    op.create_table(
        "workspaces",
        _id(),
        sa.Column("slack_team_id", sa.String(32), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        _created_at(),
    )

    op.create_table(
        "users",
        _id(),
        sa.Column(
            "workspace_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("slack_user_id", sa.String(32), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="member"),
        _created_at(),
        sa.UniqueConstraint("workspace_id", "slack_user_id", name="uix_user_workspace_slack"),
    )
    op.create_index("ix_users_workspace_role", "users", ["workspace_id", "role"])

    op.create_table(
        "user_subscriptions",
        _id(),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("plan_id", sa.String(32), nullable=False, server_default="free"),
        sa.Column("subscription_status", sa.String(20), nullable=False, server_default="active"),
        _ts("updated_at"),
    )

    # Watch state and participation
    op.create_table(
        "watched_conversations",
        _id(),
        sa.Column(
            "workspace_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(32), nullable=False),
        sa.Column("channel_id", sa.String(32), nullable=False),
        sa.Column("channel_name", sa.String(255), nullable=True),
        sa.Column("channel_type", sa.String(20), nullable=True),
        sa.Column("auto_respond", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.UniqueConstraint(
            "workspace_id", "user_id", "channel_id", name="uix_watched_workspace_user_channel"
        ),
    )
    op.create_index(
        "ix_watched_workspace_channel", "watched_conversations", ["workspace_id", "channel_id"]
    )

    op.create_table(
        "thread_participants",
        _id(),
        sa.Column(
            "workspace_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(32), nullable=False),
        sa.Column("channel_id", sa.String(32), nullable=False),
        sa.Column("thread_ts", sa.String(50), nullable=False),
        _ts("last_message_at", nullable=False),
        sa.UniqueConstraint(
            "workspace_id", "user_id", "channel_id", "thread_ts", name="uix_thread_participant"
        ),
    )
    op.create_index(
        "ix_thread_participants_last_message", "thread_participants", ["last_message_at"]
    )

    # Suggestion telemetry
    op.create_table(
        "suggestion_metrics",
        sa.Column("suggestion_id", sa.String(64), primary_key=True),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("user_id", sa.String(32), nullable=True),
        sa.Column("channel_id", sa.String(32), nullable=True),
        sa.Column("trigger_type", sa.String(20), nullable=True),
        _ts("event_received_at"),
        _ts("job_queued_at"),
        _ts("ai_started_at"),
        _ts("ai_completed_at"),
        _ts("delivered_at"),
        sa.Column("ai_processing_ms", sa.Integer(), nullable=True),
        sa.Column("total_duration_ms", sa.Integer(), nullable=True),
        sa.Column("queue_delay_ms", sa.Integer(), nullable=True),
        sa.Column("user_action", sa.String(20), nullable=True),
        _ts("user_action_at"),
        sa.Column("error_type", sa.String(20), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_suggestion_metrics_workspace_received",
        "suggestion_metrics",
        ["workspace_id", "event_received_at"],
    )
    op.create_index("ix_suggestion_metrics_org", "suggestion_metrics", ["organization_id"])

    # Usage metering
    op.create_table(
        "usage_records",
        _id(),
        sa.Column("email", sa.String(255), nullable=False),
        _ts("billing_period_start", nullable=False),
        _ts("billing_period_end", nullable=False),
        sa.Column("suggestions_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("suggestions_included", sa.Integer(), nullable=False),
        sa.Column("bonus_suggestions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overage_reported", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        _ts("updated_at"),
        sa.UniqueConstraint("email", "billing_period_start", name="uix_usage_email_period"),
    )

    op.create_table(
        "usage_events",
        _id(),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("slack_user_id", sa.String(32), nullable=False),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.String(20), nullable=False),
        sa.Column("channel_id", sa.String(32), nullable=True),
        sa.Column("input_tokens", sa.Integer(), nullable=True),
        sa.Column("output_tokens", sa.Integer(), nullable=True),
        sa.Column("estimated_cost", sa.Numeric(12, 6), nullable=True),
        _created_at(),
    )
    op.create_index("ix_usage_events_email_created", "usage_events", ["email", "created_at"])

    # Guardrails
    op.create_table(
        "guardrail_config",
        _id(),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column("enabled_categories", postgresql.JSONB(), server_default="[]"),
        sa.Column("blocked_keywords", postgresql.JSONB(), server_default="[]"),
        sa.Column("trigger_mode", sa.String(20), nullable=False, server_default="hard_block"),
        _ts("updated_at"),
    )

    op.create_table(
        "guardrail_violations",
        _id(),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(32), nullable=False),
        sa.Column("channel_id", sa.String(32), nullable=True),
        sa.Column("violation_type", sa.String(20), nullable=False),
        sa.Column("violated_rule", sa.String(255), nullable=False),
        sa.Column("suggestion_text", sa.Text(), nullable=True),
        sa.Column("action", sa.String(20), nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_guardrail_violations_org_created",
        "guardrail_violations",
        ["organization_id", "created_at"],
    )

    # Escalations
    op.create_table(
        "escalation_alerts",
        _id(),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("client_profile_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("channel_id", sa.String(32), nullable=False),
        sa.Column("message_ts", sa.String(50), nullable=False),
        sa.Column("alert_type", sa.String(40), nullable=False, server_default="tension_detected"),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("suggested_action", sa.Text(), nullable=True),
        sa.Column("sentiment", postgresql.JSONB(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("acknowledged_by", sa.String(32), nullable=True),
        _ts("acknowledged_at"),
        _ts("resolved_at"),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_escalation_alerts_channel_status_created",
        "escalation_alerts",
        ["channel_id", "status", "created_at"],
    )
    op.create_index(
        "ix_escalation_alerts_org_status", "escalation_alerts", ["organization_id", "status"]
    )

    # Actionables
    op.create_table(
        "actionable_items",
        _id(),
        sa.Column(
            "workspace_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(32), nullable=False),
        sa.Column("channel_id", sa.String(32), nullable=False),
        sa.Column("message_ts", sa.String(50), nullable=False),
        sa.Column("thread_ts", sa.String(50), nullable=True),
        sa.Column("message_text", sa.Text(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("actionable_type", sa.String(20), nullable=False),
        _ts("due_date"),
        sa.Column("confidence_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        _ts("snoozed_until"),
        _ts("completed_at"),
        _ts("dismissed_at"),
        sa.Column("ai_metadata", postgresql.JSONB(), nullable=True),
        _ts("detected_at", nullable=False, server_default=sa.text("now()")),
        _ts("updated_at"),
        sa.UniqueConstraint(
            "workspace_id", "user_id", "channel_id", "message_ts", name="uix_actionable_message"
        ),
    )
    op.create_index(
        "ix_actionable_items_user_status",
        "actionable_items",
        ["workspace_id", "user_id", "status"],
    )

    # Surveys
    op.create_table(
        "satisfaction_surveys",
        _id(),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(32), nullable=False),
        sa.Column("survey_type", sa.String(20), nullable=False, server_default="nps"),
        sa.Column("status", sa.String(20), nullable=False, server_default="delivered"),
        _ts("delivered_at", nullable=False),
        sa.Column("slack_message_ts", sa.String(50), nullable=True),
        sa.Column("rating", sa.Integer(), nullable=True),
        sa.Column("nps_category", sa.String(20), nullable=True),
        sa.Column("feedback_text", sa.Text(), nullable=True),
        _ts("responded_at"),
    )
    op.create_index(
        "ix_surveys_workspace_user_delivered",
        "satisfaction_surveys",
        ["workspace_id", "user_id", "delivered_at"],
    )


def downgrade() -> None:
    for table in (
        "satisfaction_surveys",
        "actionable_items",
        "escalation_alerts",
        "guardrail_violations",
        "guardrail_config",
        "usage_events",
        "usage_records",
        "suggestion_metrics",
        "thread_participants",
        "watched_conversations",
        "user_subscriptions",
        "users",
        "workspaces",
    ):
        op.drop_table(table)
