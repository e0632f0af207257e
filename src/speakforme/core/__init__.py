"""Core: shared types, domain errors, deadline races and detached tasks."""

from speakforme.core.errors import (
    ContextFetchError,
    DeliveryError,
    GenerationError,
    QueueFullError,
    SpeakForMeError,
    WorkspaceNotFoundError,
)
from speakforme.core.types import (
    ContextMessage,
    EventKind,
    InboundEvent,
    SuggestionRequest,
    TriggerType,
    new_suggestion_id,
)

__all__ = [
    "ContextFetchError",
    "ContextMessage",
    "DeliveryError",
    "EventKind",
    "GenerationError",
    "InboundEvent",
    "QueueFullError",
    "SpeakForMeError",
    "SuggestionRequest",
    "TriggerType",
    "WorkspaceNotFoundError",
    "new_suggestion_id",
]
