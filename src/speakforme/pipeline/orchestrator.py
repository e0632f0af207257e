"""Suggestion pipeline: classification → enforcement → generation → delivery.

Per inbound event:

    classify ──► for each request, concurrently and independently:
                   record_event_received
                   usage gate ── denied ──► record_error(usage_limit), tell the user
                   enqueue generation, record_job_queued
                   detached: actionable detection
                 detached, once per event: sentiment scan → escalation alert

Per generation job (worker side):

    record_ai_started
    enrichment (deadline race, neutral fallback)
    generate (tenacity retries) ── fails ──► record_error(ai_error)
    record_ai_completed
    guardrails (workspaces without an organization skip them)
      regenerate → one more generation avoiding the violated topics
      blocked    → record_error(guardrail)
    deliver ── fails ──► record_error(delivery_error)
    record_delivered
    record_usage_event

Failure policy: a failure for one recipient never affects another; the
metrics recorder and detached side effects never affect the suggestion.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

from speakforme.actionables.store import ActionableStore
from speakforme.billing.usage import UsageEnforcer
from speakforme.config import settings
from speakforme.core.background import BackgroundTasks, get_background_tasks
from speakforme.core.clock import utcnow
from speakforme.core.collaborators import (
    ContextEnricher,
    SentimentAnalyzer,
    SuggestionDeliverer,
    SuggestionGenerator,
)
from speakforme.core.errors import QueueFullError
from speakforme.core.timeout import Collaborator, with_deadline
from speakforme.core.types import (
    NEUTRAL_SENTIMENT,
    GenerationResult,
    InboundEvent,
    PipelineErrorType,
    SuggestionRequest,
)
from speakforme.escalation.monitor import EscalationMonitor
from speakforme.guardrails.enforcer import GuardrailEnforcer
from speakforme.observability.stats import PipelineStats, get_pipeline_stats
from speakforme.pipeline.queue import GenerationQueue
from speakforme.telemetry.recorder import SuggestionMetricsRecorder
from speakforme.triggers.classifier import TriggerClassifier

logger = structlog.get_logger()

_ENRICHMENT_TIMEOUT = object()


class SuggestionPipeline:
    """Wires the trigger, enforcement and telemetry components together."""

    def __init__(
        self,
        generator: SuggestionGenerator,
        deliverer: SuggestionDeliverer,
        *,
        classifier: TriggerClassifier | None = None,
        usage: UsageEnforcer | None = None,
        guardrails: GuardrailEnforcer | None = None,
        recorder: SuggestionMetricsRecorder | None = None,
        queue: GenerationQueue | None = None,
        enricher: ContextEnricher | None = None,
        sentiment: SentimentAnalyzer | None = None,
        actionables: ActionableStore | None = None,
        escalation: EscalationMonitor | None = None,
        background: BackgroundTasks | None = None,
        stats: PipelineStats | None = None,
        max_attempts: int | None = None,
        backoff_s: float | None = None,
    ) -> None:
        self.generator = generator
        self.deliverer = deliverer
        self.classifier = classifier or TriggerClassifier()
        self.usage = usage or UsageEnforcer()
        self.guardrails = guardrails or GuardrailEnforcer()
        self.recorder = recorder or SuggestionMetricsRecorder()
        self.queue = queue or GenerationQueue()
        self.enricher = enricher
        self.sentiment = sentiment
        self.actionables = actionables
        self.escalation = escalation
        self.background = background or get_background_tasks()
        self.stats = stats or get_pipeline_stats()
        self.max_attempts = max_attempts or settings.generation_max_attempts
        self.backoff_s = backoff_s if backoff_s is not None else settings.generation_backoff_s

    # ═══════════════════════════════════════════════════════════════════════
    # EVENT SIDE
    # ═══════════════════════════════════════════════════════════════════════

    async def handle_event(self, event: InboundEvent, client: Any = None) -> list[SuggestionRequest]:
        """Classify one event and admit each resulting request."""
        await self.stats.event_received()
        requests = await self.classifier.handle(event, client=client)
        if not requests:
            await self.stats.event_dropped()
            return []

        await asyncio.gather(*(self._admit(r) for r in requests))

        if self.escalation is not None and self.sentiment is not None:
            self.background.fire_and_forget(
                self._scan_for_escalation(requests[0]),
                name=f"escalation-scan-{requests[0].suggestion_id}",
            )
        return requests

    async def _admit(self, request: SuggestionRequest) -> None:
        """Gate and enqueue one request. Never raises."""
        sid = request.suggestion_id
        with structlog.contextvars.bound_contextvars(suggestion_id=sid):
            try:
                await self.stats.request_emitted(request.trigger_type.value)
                await self.recorder.record_event_received(
                    sid,
                    request.workspace_id,
                    request.user_id,
                    channel_id=request.channel_id,
                    trigger_type=request.trigger_type.value,
                )

                check = await self.usage.check_usage_allowed(request.workspace_id, request.user_id)
                if not check.allowed:
                    await self.recorder.record_error(sid, PipelineErrorType.USAGE_LIMIT)
                    await self.stats.outcome("usage_denied")
                    await self._notify_limit_reached(request, check.current_usage, check.limit)
                    return

                queued_at = utcnow()
                try:
                    self.queue.enqueue(
                        str(request.workspace_id), self.process, request, job_id=sid
                    )
                except QueueFullError as e:
                    await self.stats.outcome("queue_full")
                    logger.warning(
                        "suggestion_not_queued",
                        user_id=request.user_id,
                        depth=e.depth,
                    )
                    return
                await self.recorder.record_job_queued(sid, at=queued_at)

                if self.actionables is not None:
                    self.background.fire_and_forget(
                        self._detect_actionables(request),
                        name=f"actionables-{sid}",
                    )
            except Exception as e:
                logger.error(
                    "suggestion_admission_failed",
                    user_id=request.user_id,
                    error=str(e),
                    exc_info=True,
                )

    async def _notify_limit_reached(self, request: SuggestionRequest, used: int, limit: int) -> None:
        try:
            await self.deliverer.notify_limit_reached(request, used, limit)
        except Exception as e:
            logger.warning("usage_limit_notice_failed", user_id=request.user_id, error=str(e))

    # ═══════════════════════════════════════════════════════════════════════
    # WORKER SIDE
    # ═══════════════════════════════════════════════════════════════════════

    async def process(self, request: SuggestionRequest) -> None:
        """Generate, check and deliver one suggestion."""
        sid = request.suggestion_id
        with structlog.contextvars.bound_contextvars(suggestion_id=sid):
            t0 = time.monotonic()
            await self.recorder.record_ai_started(sid)

            enrichment = await self._enrich(request)

            try:
                result = await self._generate(request, enrichment)
            except Exception as e:
                await self._fail(sid, PipelineErrorType.AI_ERROR, "ai_error", e)
                return
            await self.recorder.record_ai_completed(sid, ai_processing_ms=result.processing_time_ms)

            text = result.suggestion_text
            tokens = result.tokens_used
            warnings: list[str] = []

            organization_id = await self.recorder.resolve_organization_id(request.workspace_id)
            if organization_id is not None:
                enforcement = await self.guardrails.check_and_enforce_guardrails(
                    organization_id, request.workspace_id, request.user_id, text, request.channel_id
                )
                if enforcement.should_regenerate:
                    await self.stats.guardrail_regenerated()
                    try:
                        result = await self._generate(
                            request, enrichment, avoid_topics=enforcement.avoid_topics
                        )
                    except Exception as e:
                        await self._fail(sid, PipelineErrorType.AI_ERROR, "ai_error", e)
                        return
                    if result.tokens_used is not None:
                        tokens = (tokens or 0) + result.tokens_used
                    text = result.suggestion_text
                    enforcement = await self.guardrails.check_and_enforce_guardrails(
                        organization_id, request.workspace_id, request.user_id, text, request.channel_id
                    )

                # Still violating after the one regeneration counts as blocked
                if enforcement.blocked or enforcement.should_regenerate or enforcement.text is None:
                    await self.recorder.record_error(sid, PipelineErrorType.GUARDRAIL)
                    await self.stats.outcome("blocked")
                    logger.info(
                        "suggestion_blocked",
                        user_id=request.user_id,
                        reason=enforcement.block_reason or ", ".join(enforcement.avoid_topics),
                    )
                    return
                text = enforcement.text
                warnings = enforcement.warnings

            try:
                await self.deliverer.deliver(request, text, warnings)
            except Exception as e:
                await self._fail(sid, PipelineErrorType.DELIVERY_ERROR, "delivery_error", e)
                return

            await self.recorder.record_delivered(sid)
            await self.usage.record_usage_event(
                request.workspace_id,
                request.user_id,
                event_type="suggestion",
                tokens_used=tokens,
                channel_id=request.channel_id,
            )
            await self.stats.outcome("delivered")
            await self.stats.record("end_to_end_latency_ms", (time.monotonic() - t0) * 1000)
            logger.info(
                "suggestion_delivered",
                user_id=request.user_id,
                trigger_type=request.trigger_type.value,
                warnings=len(warnings),
            )

    async def _enrich(self, request: SuggestionRequest) -> list[str]:
        if self.enricher is None:
            return []
        snippets = await with_deadline(
            self.enricher.enrich(request),
            fallback=_ENRICHMENT_TIMEOUT,
            collaborator=Collaborator.ENRICHMENT,
            name="context_enrichment",
        )
        if snippets is _ENRICHMENT_TIMEOUT:
            await self.stats.enrichment_fallback()
            return []
        return list(snippets)

    async def _generate(
        self,
        request: SuggestionRequest,
        enrichment: list[str],
        avoid_topics: list[str] | None = None,
    ) -> GenerationResult:
        @retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_s, max=30),
            before_sleep=lambda state: logger.warning(
                "generation_retry",
                attempt=state.attempt_number,
                error=str(state.outcome.exception()) if state.outcome else None,
            ),
            reraise=True,
        )
        async def _attempt() -> GenerationResult:
            return await self.generator.generate(request, enrichment, avoid_topics)

        async with self.stats.timer("generation_latency_ms"):
            return await _attempt()

    async def _fail(
        self, sid: str, error_type: PipelineErrorType, outcome: str, error: Exception
    ) -> None:
        await self.recorder.record_error(sid, error_type)
        await self.stats.outcome(outcome)
        logger.error("suggestion_failed", error_type=error_type.value, error=str(error))

    # ═══════════════════════════════════════════════════════════════════════
    # DETACHED SIDE EFFECTS
    # ═══════════════════════════════════════════════════════════════════════

    async def _detect_actionables(self, request: SuggestionRequest) -> None:
        assert self.actionables is not None
        await self.actionables.process_message(
            workspace_id=request.workspace_id,
            user_id=request.user_id,
            channel_id=request.channel_id,
            message_ts=request.source_message_ts or request.message_ts,
            message_text=request.trigger_message_text,
            message_author_id=request.author_user_id,
            thread_ts=request.thread_ts,
            thread_context="\n".join(f"{m.user_id}: {m.text}" for m in request.context_messages),
        )

    async def _scan_for_escalation(self, request: SuggestionRequest) -> None:
        assert self.escalation is not None and self.sentiment is not None
        organization_id = await self.recorder.resolve_organization_id(request.workspace_id)
        if organization_id is None:
            return
        analysis = await with_deadline(
            self.sentiment.analyze(request),
            fallback=NEUTRAL_SENTIMENT,
            collaborator=Collaborator.SENTIMENT,
            name="sentiment",
        )
        if not analysis.is_high_risk:
            return
        await self.escalation.trigger_escalation_alert(
            organization_id=organization_id,
            workspace_id=request.workspace_id,
            channel_id=request.channel_id,
            message_ts=request.source_message_ts or request.message_ts,
            sentiment=analysis,
        )
