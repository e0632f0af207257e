"""Staged suggestion metrics tests.

Stages are independent upserts: they may arrive out of order, twice, or
not at all, and derived durations only appear when both endpoints exist.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_workspace
from speakforme.core.types import PipelineErrorType, UserAction
from speakforme.telemetry.recorder import SuggestionMetricsRecorder, generate_suggestion_id

T0 = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@pytest.fixture
def recorder(session_factory) -> SuggestionMetricsRecorder:
    return SuggestionMetricsRecorder(session_factory=session_factory, org_cache_ttl_s=60)


class TestSuggestionIds:
    def test_format(self):
        sid = generate_suggestion_id()
        prefix, millis, suffix = sid.split("_")
        assert prefix == "sug"
        assert millis.isdigit()
        assert len(suffix) == 7

    def test_unique(self):
        assert len({generate_suggestion_id() for _ in range(200)}) == 200


class TestHappyPath:
    async def test_all_stages_and_derived_durations(self, recorder, workspace):
        sid = generate_suggestion_id()
        await recorder.record_event_received(
            sid, workspace.id, "U1", channel_id="C1", trigger_type="thread", at=T0
        )
        await recorder.record_job_queued(sid, at=T0 + timedelta(milliseconds=100))
        await recorder.record_ai_started(sid, at=T0 + timedelta(milliseconds=400))
        await recorder.record_ai_completed(sid, at=T0 + timedelta(milliseconds=2400))
        await recorder.record_delivered(sid, at=T0 + timedelta(milliseconds=2500))

        row = await recorder.get(sid)
        assert row is not None
        assert row.workspace_id == workspace.id
        assert row.trigger_type == "thread"
        assert row.ai_processing_ms == 2000
        assert row.queue_delay_ms == 300
        assert row.total_duration_ms == 2500

    async def test_explicit_processing_time_wins(self, recorder, workspace):
        sid = generate_suggestion_id()
        await recorder.record_ai_started(sid, at=T0)
        await recorder.record_ai_completed(sid, ai_processing_ms=1234, at=T0 + timedelta(seconds=5))
        row = await recorder.get(sid)
        assert row.ai_processing_ms == 1234


class TestPartialAndOutOfOrder:
    async def test_ai_started_then_delivered_only(self, recorder):
        sid = generate_suggestion_id()
        await recorder.record_ai_started(sid, at=T0)
        await recorder.record_delivered(sid, at=T0 + timedelta(seconds=3))

        row = await recorder.get(sid)
        assert _utc(row.delivered_at) == T0 + timedelta(seconds=3)
        assert row.ai_processing_ms is None
        assert row.total_duration_ms is None
        assert row.queue_delay_ms is None
        assert row.workspace_id is None

    async def test_total_duration_without_ai_processing(self, recorder, workspace):
        sid = generate_suggestion_id()
        await recorder.record_event_received(sid, workspace.id, "U1", at=T0)
        await recorder.record_delivered(sid, at=T0 + timedelta(seconds=3))

        row = await recorder.get(sid)
        assert row.total_duration_ms == 3000
        assert row.ai_processing_ms is None
        assert row.queue_delay_ms is None

    async def test_late_event_received_does_not_clobber(self, recorder, workspace):
        sid = generate_suggestion_id()
        await recorder.record_delivered(sid, at=T0 + timedelta(seconds=3))
        await recorder.record_event_received(sid, workspace.id, "U1", at=T0)

        row = await recorder.get(sid)
        assert _utc(row.delivered_at) == T0 + timedelta(seconds=3)
        assert _utc(row.event_received_at) == T0
        assert row.user_id == "U1"

    async def test_repeated_stage_overwrites_only_itself(self, recorder, workspace):
        sid = generate_suggestion_id()
        await recorder.record_event_received(sid, workspace.id, "U1", at=T0)
        await recorder.record_user_action(sid, UserAction.DISMISSED, at=T0 + timedelta(minutes=1))
        await recorder.record_user_action(sid, "sent", at=T0 + timedelta(minutes=2))

        row = await recorder.get(sid)
        assert row.user_action == "sent"
        assert _utc(row.event_received_at) == T0

    async def test_error_recorded(self, recorder):
        sid = generate_suggestion_id()
        await recorder.record_error(sid, PipelineErrorType.GUARDRAIL)
        assert (await recorder.get(sid)).error_type == "guardrail"


class TestOrganizationCache:
    async def test_organization_copied_onto_row(self, recorder, session_factory):
        org = uuid.uuid4()
        ws = await make_workspace(session_factory, team_id="T0100", organization_id=org)
        sid = generate_suggestion_id()
        await recorder.record_event_received(sid, ws.id, "U1", at=T0)
        assert (await recorder.get(sid)).organization_id == org

    async def test_failed_lookup_not_cached(self, session_factory):
        org = uuid.uuid4()
        ws = await make_workspace(session_factory, team_id="T0102", organization_id=org)
        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("db blip")
            return session_factory()

        recorder = SuggestionMetricsRecorder(session_factory=flaky, org_cache_ttl_s=60)
        assert await recorder.resolve_organization_id(ws.id) is None
        assert await recorder.resolve_organization_id(ws.id) == org

    async def test_lookup_cached(self, recorder, session_factory):
        org = uuid.uuid4()
        ws = await make_workspace(session_factory, team_id="T0101", organization_id=org)
        assert await recorder.resolve_organization_id(ws.id) == org

        recorder._session_factory = _explode
        assert await recorder.resolve_organization_id(ws.id) == org


class TestNeverRaises:
    async def test_invalid_action_is_swallowed(self, recorder):
        await recorder.record_user_action(generate_suggestion_id(), "shrugged")

    async def test_database_down_is_swallowed(self, workspace):
        recorder = SuggestionMetricsRecorder(session_factory=_explode)  # type: ignore[arg-type]
        sid = generate_suggestion_id()
        await recorder.record_event_received(sid, workspace.id, "U1")
        await recorder.record_job_queued(sid)
        await recorder.record_ai_started(sid)
        await recorder.record_ai_completed(sid)
        await recorder.record_delivered(sid)
        await recorder.record_user_action(sid, "sent")
        await recorder.record_error(sid, "ai_error")


def _explode():
    raise RuntimeError("db down")
