"""Observability: structlog configuration and pipeline statistics."""

from speakforme.observability.logging import configure_logging
from speakforme.observability.stats import PipelineStats, get_pipeline_stats

__all__ = ["PipelineStats", "configure_logging", "get_pipeline_stats"]
