"""Suggestion telemetry."""

from speakforme.telemetry.recorder import (
    SuggestionMetricsRecorder,
    generate_suggestion_id,
    get_metrics_recorder,
)

__all__ = ["SuggestionMetricsRecorder", "generate_suggestion_id", "get_metrics_recorder"]
