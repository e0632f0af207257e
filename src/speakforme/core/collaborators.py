"""Boundary protocols for external collaborators.

The pipeline only ever talks to the model, Slack and the detectors through
these shapes. Production wiring passes Slack-backed implementations, tests
pass AsyncMocks.
"""

from __future__ import annotations

from typing import Protocol

from speakforme.core.types import (
    ActionableDetectionContext,
    DetectedActionable,
    GenerationResult,
    SentimentAnalysis,
    SuggestionRequest,
)


class SuggestionGenerator(Protocol):
    async def generate(
        self,
        request: SuggestionRequest,
        enrichment: list[str],
        avoid_topics: list[str] | None = None,
    ) -> GenerationResult: ...


class SuggestionDeliverer(Protocol):
    async def deliver(
        self,
        request: SuggestionRequest,
        suggestion_text: str,
        warnings: list[str] | None = None,
    ) -> None: ...

    async def notify_limit_reached(
        self, request: SuggestionRequest, current_usage: int, limit: int
    ) -> None: ...


class ContextEnricher(Protocol):
    async def enrich(self, request: SuggestionRequest) -> list[str]: ...


class SentimentAnalyzer(Protocol):
    async def analyze(self, request: SuggestionRequest) -> SentimentAnalysis: ...


class ActionableDetector(Protocol):
    async def detect(self, context: ActionableDetectionContext) -> DetectedActionable | None: ...
