"""End-to-end pipeline tests.

Real classifier, enforcers, recorder and queue on the in-memory database;
the generation model, Slack delivery and sentiment are AsyncMocks. The
scenario is a DM channel D1 watched by UA (and sometimes UB), with a
client (UCLIENT) writing in.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from conftest import FakeSlackClient, make_user
from speakforme.billing.usage import UsageEnforcer
from speakforme.core.background import BackgroundTasks
from speakforme.core.types import (
    GenerationResult,
    InboundEvent,
    SentimentAnalysis,
    SuggestionRequest,
    TriggerType,
)
from speakforme.db.models import GuardrailConfig, TriggerMode
from speakforme.db.session import db_session
from speakforme.guardrails.enforcer import GuardrailEnforcer
from speakforme.pipeline.orchestrator import SuggestionPipeline
from speakforme.pipeline.queue import GenerationQueue
from speakforme.telemetry.recorder import SuggestionMetricsRecorder
from speakforme.triggers.classifier import TriggerClassifier
from speakforme.triggers.participation import ParticipationTracker

CLEAN = GenerationResult(suggestion_text="Happy to help, sending it today.", processing_time_ms=850, tokens_used=400)
RISKY = GenerationResult(suggestion_text="We can offer a refund.", processing_time_ms=900, tokens_used=300)


def _event(team_id: str = "T0001", text: str = "Can you send over the contract?") -> InboundEvent:
    return InboundEvent(
        workspace_team_id=team_id,
        author_user_id="UCLIENT",
        channel_id="D1",
        message_ts="1700000000.000100",
        text=text,
        channel_type="im",
    )


def _outcomes(snapshot: dict) -> dict:
    return snapshot["labeled_counters"].get("outcomes_total", {})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def generator() -> AsyncMock:
    mock = AsyncMock()
    mock.generate.return_value = CLEAN
    return mock


@pytest.fixture
def deliverer() -> AsyncMock:
    return AsyncMock()


@pytest_asyncio.fixture
async def pipeline(session_factory, stats, generator, deliverer):
    tracker = ParticipationTracker(session_factory=session_factory)
    queue = GenerationQueue(num_workers=1, max_depth_per_workspace=10, max_total_depth=10)
    pipeline = SuggestionPipeline(
        generator,
        deliverer,
        classifier=TriggerClassifier(tracker=tracker, slack_client=FakeSlackClient()),
        usage=UsageEnforcer(session_factory=session_factory),
        guardrails=GuardrailEnforcer(session_factory=session_factory),
        recorder=SuggestionMetricsRecorder(session_factory=session_factory),
        queue=queue,
        background=BackgroundTasks(),
        stats=stats,
        max_attempts=3,
        backoff_s=0,
    )
    await queue.start()
    yield pipeline
    await queue.stop()


async def _watch(pipeline, workspace, *users: str) -> None:
    for user in users:
        await pipeline.classifier.tracker.watch_conversation(workspace.id, user, "D1")


async def _run(pipeline, event: InboundEvent):
    requests = await pipeline.handle_event(event)
    await asyncio.wait_for(pipeline.queue.join(), timeout=5)
    await pipeline.background.drain(timeout=2)
    return requests


async def _save_guardrails(session_factory, organization_id, mode: TriggerMode) -> None:
    async with db_session(session_factory) as db:
        db.add(
            GuardrailConfig(
                organization_id=organization_id,
                enabled_categories=[],
                blocked_keywords=["refund"],
                trigger_mode=mode.value,
            )
        )


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestDelivered:
    async def test_full_path(self, pipeline, workspace, session_factory, deliverer, stats):
        await make_user(session_factory, workspace.id, "UA", email="ua@acme.test")
        await _watch(pipeline, workspace, "UA")

        [request] = await _run(pipeline, _event())

        deliverer.deliver.assert_awaited_once_with(request, CLEAN.suggestion_text, [])
        row = await pipeline.recorder.get(request.suggestion_id)
        assert row.delivered_at is not None
        assert row.ai_processing_ms == 850
        assert row.error_type is None
        status = await pipeline.usage.get_usage_status(workspace.id, "UA")
        assert status.used == 1
        assert _outcomes(await stats.snapshot()) == {"delivered": 1}

    async def test_unwatched_channel_drops_event(self, pipeline, workspace, generator, stats):
        assert await _run(pipeline, _event()) == []
        generator.generate.assert_not_awaited()
        assert (await stats.snapshot())["counters"]["events_dropped_total"] == 1


class TestUsageDenied:
    async def test_capped_user_notified_not_generated(
        self, pipeline, workspace, session_factory, generator, deliverer
    ):
        await make_user(session_factory, workspace.id, "UA", email="ua@acme.test")
        await _watch(pipeline, workspace, "UA")
        for _ in range(5):
            await pipeline.usage.record_usage_event(workspace.id, "UA")

        [request] = await _run(pipeline, _event())

        generator.generate.assert_not_awaited()
        deliverer.notify_limit_reached.assert_awaited_once_with(request, 5, 5)
        row = await pipeline.recorder.get(request.suggestion_id)
        assert row.error_type == "usage_limit"


class TestGenerationFailure:
    async def test_retries_then_records_ai_error(
        self, pipeline, workspace, generator, deliverer, stats
    ):
        await _watch(pipeline, workspace, "UA")
        generator.generate.side_effect = RuntimeError("model overloaded")

        [request] = await _run(pipeline, _event())

        assert generator.generate.await_count == 3
        deliverer.deliver.assert_not_awaited()
        assert (await pipeline.recorder.get(request.suggestion_id)).error_type == "ai_error"
        assert _outcomes(await stats.snapshot()) == {"ai_error": 1}

    async def test_transient_failure_recovers(self, pipeline, workspace, generator, deliverer):
        await _watch(pipeline, workspace, "UA")
        generator.generate.side_effect = [RuntimeError("timeout"), CLEAN]

        await _run(pipeline, _event())

        deliverer.deliver.assert_awaited_once()


class TestGuardrails:
    async def test_regenerated_suggestion_delivered(
        self, pipeline, org_workspace, session_factory, generator, deliverer, stats
    ):
        await _save_guardrails(session_factory, org_workspace.organization_id, TriggerMode.REGENERATE)
        await _watch(pipeline, org_workspace, "UA")
        generator.generate.side_effect = [RISKY, CLEAN]

        [request] = await _run(pipeline, _event(team_id="T0002"))

        second_call = generator.generate.await_args_list[1]
        assert second_call.args[2] == ["refund"]
        deliverer.deliver.assert_awaited_once_with(request, CLEAN.suggestion_text, [])
        snapshot = await stats.snapshot()
        assert snapshot["counters"]["guardrail_regenerations_total"] == 1

    async def test_still_violating_after_regeneration_is_blocked(
        self, pipeline, org_workspace, session_factory, generator, deliverer
    ):
        await _save_guardrails(session_factory, org_workspace.organization_id, TriggerMode.REGENERATE)
        await _watch(pipeline, org_workspace, "UA")
        generator.generate.return_value = RISKY

        [request] = await _run(pipeline, _event(team_id="T0002"))

        assert generator.generate.await_count == 2
        deliverer.deliver.assert_not_awaited()
        assert (await pipeline.recorder.get(request.suggestion_id)).error_type == "guardrail"

    async def test_soft_warning_travels_with_suggestion(
        self, pipeline, org_workspace, session_factory, generator, deliverer
    ):
        await _save_guardrails(
            session_factory, org_workspace.organization_id, TriggerMode.SOFT_WARNING
        )
        await _watch(pipeline, org_workspace, "UA")
        generator.generate.return_value = RISKY

        [request] = await _run(pipeline, _event(team_id="T0002"))

        deliverer.deliver.assert_awaited_once_with(
            request, RISKY.suggestion_text, ["Contains refund"]
        )

    async def test_workspace_without_organization_skips_guardrails(
        self, pipeline, workspace, generator, deliverer
    ):
        await _watch(pipeline, workspace, "UA")
        generator.generate.return_value = RISKY

        await _run(pipeline, _event())

        deliverer.deliver.assert_awaited_once()


class TestRecipientIsolation:
    async def test_delivery_failure_for_one_recipient(
        self, pipeline, workspace, deliverer, stats
    ):
        await _watch(pipeline, workspace, "UA", "UB")

        async def deliver(request, text, warnings):
            if request.user_id == "UA":
                raise RuntimeError("channel_not_found")

        deliverer.deliver.side_effect = deliver

        requests = await _run(pipeline, _event())

        by_user = {r.user_id: r for r in requests}
        failed = await pipeline.recorder.get(by_user["UA"].suggestion_id)
        delivered = await pipeline.recorder.get(by_user["UB"].suggestion_id)
        assert failed.error_type == "delivery_error"
        assert delivered.delivered_at is not None
        assert _outcomes(await stats.snapshot()) == {"delivery_error": 1, "delivered": 1}


class TestDetachedSideEffects:
    async def test_escalation_scan_raises_alert(
        self, session_factory, stats, generator, deliverer, org_workspace
    ):
        sentiment = AsyncMock()
        sentiment.analyze.return_value = SentimentAnalysis(
            tone="angry", confidence=0.9, risk_level="critical", indicators=["lawyer"]
        )
        escalation = AsyncMock()
        pipeline = SuggestionPipeline(
            generator,
            deliverer,
            classifier=TriggerClassifier(
                tracker=ParticipationTracker(session_factory=session_factory),
                slack_client=FakeSlackClient(),
            ),
            usage=UsageEnforcer(session_factory=session_factory),
            guardrails=GuardrailEnforcer(session_factory=session_factory),
            recorder=SuggestionMetricsRecorder(session_factory=session_factory),
            queue=GenerationQueue(num_workers=1),
            sentiment=sentiment,
            escalation=escalation,
            actionables=AsyncMock(),
            background=BackgroundTasks(),
            stats=stats,
            backoff_s=0,
        )
        await _watch(pipeline, org_workspace, "UA", "UB")

        requests = await pipeline.handle_event(_event(team_id="T0002"))
        await pipeline.background.drain(timeout=2)

        assert len(requests) == 2
        sentiment.analyze.assert_awaited_once()
        kwargs = escalation.trigger_escalation_alert.await_args.kwargs
        assert kwargs["organization_id"] == org_workspace.organization_id
        assert kwargs["channel_id"] == "D1"
        assert pipeline.actionables.process_message.await_count == 2
        assert (
            pipeline.actionables.process_message.await_args.kwargs["message_ts"]
            == "1700000000.000100"
        )

    async def test_slow_enrichment_falls_back(
        self, pipeline, workspace, generator, stats, monkeypatch
    ):
        from speakforme.config import settings

        async def slow(request):
            await asyncio.sleep(5)
            return ["never"]

        monkeypatch.setattr(settings, "enrichment_timeout_s", 0.01)
        pipeline.enricher = AsyncMock()
        pipeline.enricher.enrich.side_effect = slow
        await _watch(pipeline, workspace, "UA")

        await _run(pipeline, _event())

        assert generator.generate.await_args.args[1] == []
        assert (await stats.snapshot())["counters"]["enrichment_fallbacks_total"] == 1


class FlakySessionFactory:
    """Session factory whose first *failures* calls raise."""

    def __init__(self, factory, failures: int = 1) -> None:
        self.factory = factory
        self.failures = failures

    def __call__(self):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("db blip")
        return self.factory()


class TestOrganizationLookupFailure:
    async def test_guardrails_apply_once_database_recovers(
        self, pipeline, org_workspace, session_factory, generator, deliverer
    ):
        await _save_guardrails(session_factory, org_workspace.organization_id, TriggerMode.HARD_BLOCK)
        pipeline.recorder = SuggestionMetricsRecorder(
            session_factory=FlakySessionFactory(session_factory)
        )
        # The failed lookup fails open for that call only
        assert await pipeline.recorder.resolve_organization_id(org_workspace.id) is None

        generator.generate.return_value = RISKY
        request = SuggestionRequest(
            workspace_id=org_workspace.id,
            user_id="UA",
            channel_id="D1",
            message_ts="1700000000.000100",
            trigger_type=TriggerType.DM,
            trigger_message_text="Can we get our money back?",
        )
        await pipeline.process(request)

        deliverer.deliver.assert_not_awaited()
        row = await pipeline.recorder.get(request.suggestion_id)
        assert row.error_type == "guardrail"
