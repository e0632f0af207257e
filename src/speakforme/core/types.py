"""Shared types for the suggestion pipeline.

Kept in a separate file to avoid circular imports between the trigger,
enforcement and pipeline packages.
"""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_suggestion_id() -> str:
    """Generate a suggestion id: ``sug_{epoch_ms}_{7 base36 chars}``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
    return f"sug_{int(time.time() * 1000)}_{suffix}"


class TriggerType(str, Enum):
    """Why a suggestion was requested."""
    MENTION = "mention"
    REPLY = "reply"
    THREAD = "thread"
    DM = "dm"
    MESSAGE_ACTION = "message_action"


class EventKind(str, Enum):
    """Upstream Slack event type an InboundEvent was built from."""
    MESSAGE = "message"
    APP_MENTION = "app_mention"


class UserAction(str, Enum):
    ACCEPTED = "accepted"
    REFINED = "refined"
    DISMISSED = "dismissed"
    SENT = "sent"
    LIKED = "liked"
    DISLIKED = "disliked"


class PipelineErrorType(str, Enum):
    USAGE_LIMIT = "usage_limit"
    GUARDRAIL = "guardrail"
    AI_ERROR = "ai_error"
    DELIVERY_ERROR = "delivery_error"


@dataclass(frozen=True)
class ContextMessage:
    """One message of conversation context, oldest first."""

    user_id: str
    text: str
    ts: str

    def to_dict(self) -> dict[str, str]:
        return {"userId": self.user_id, "text": self.text, "ts": self.ts}


@dataclass(frozen=True)
class InboundEvent:
    """Message event as handed over by Slack event ingestion."""

    workspace_team_id: str
    author_user_id: str
    channel_id: str
    message_ts: str
    text: str
    thread_ts: str | None = None
    channel_type: str | None = None
    is_bot_or_subtype: bool = False
    kind: EventKind = EventKind.MESSAGE

    @property
    def is_dm(self) -> bool:
        return self.channel_type == "im" or self.channel_id.startswith("D")


@dataclass
class SuggestionRequest:
    """A single qualifying trigger addressed to exactly one recipient.

    The suggestion id is minted at construction so every downstream stage
    has a key to attach metrics to.
    """

    workspace_id: UUID
    user_id: str
    channel_id: str
    message_ts: str
    trigger_type: TriggerType
    trigger_message_text: str
    context_messages: list[ContextMessage] = field(default_factory=list)
    thread_ts: str | None = None
    author_user_id: str | None = None
    source_message_ts: str | None = None
    suggestion_id: str = field(default_factory=new_suggestion_id)

    def to_job(self) -> dict[str, Any]:
        """Outbound generation request payload."""
        return {
            "suggestionId": self.suggestion_id,
            "workspaceId": str(self.workspace_id),
            "userId": self.user_id,
            "channelId": self.channel_id,
            "messageTs": self.message_ts,
            "threadTs": self.thread_ts,
            "triggerMessageText": self.trigger_message_text,
            "contextMessages": [m.to_dict() for m in self.context_messages],
            "triggeredBy": self.trigger_type.value,
        }


@dataclass(frozen=True)
class GenerationResult:
    suggestion_text: str
    processing_time_ms: int
    tokens_used: int | None = None


@dataclass(frozen=True)
class SentimentAnalysis:
    """Upstream tone classification consumed by escalation."""

    tone: str
    confidence: float
    risk_level: str
    indicators: list[str] = field(default_factory=list)

    @property
    def is_high_risk(self) -> bool:
        return self.risk_level in ("high", "critical")

    def to_dict(self) -> dict[str, Any]:
        return {
            "tone": self.tone,
            "confidence": self.confidence,
            "riskLevel": self.risk_level,
            "indicators": list(self.indicators),
        }


NEUTRAL_SENTIMENT = SentimentAnalysis(tone="neutral", confidence=0.0, risk_level="low")


@dataclass(frozen=True)
class DetectedActionable:
    """Output of the external actionable detector."""

    type: str
    title: str
    description: str = ""
    due_date: str | None = None
    confidence_score: int = 0
    reasoning: str = ""


@dataclass(frozen=True)
class ActionableDetectionContext:
    """Input handed to the external actionable detector."""

    workspace_id: UUID
    user_id: str
    message_text: str
    message_author_id: str | None = None
    thread_context: str = ""
    current_date: str = ""
