"""Pipeline: generation queue and the suggestion orchestrator."""

from speakforme.pipeline.orchestrator import SuggestionPipeline
from speakforme.pipeline.queue import GenerationQueue, QueuedJob

__all__ = ["GenerationQueue", "QueuedJob", "SuggestionPipeline"]
