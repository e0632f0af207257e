"""Staged suggestion metrics.

One row per suggestion id, built up by independent calls from different
places (event ingestion, enqueue, worker start/end, delivery, a later
button click). Each call is an INSERT ... ON CONFLICT DO UPDATE touching
only its own columns, so stages may arrive in any order, more than once,
or not at all, without clobbering one another.

Derived durations are computed from whatever predecessor timestamps are
already stored when the later stage lands. A missing predecessor leaves
the derived column NULL.

Lifecycle:
    event_received → job_queued → ai_started → ai_completed → delivered → user_action
                                                               └─ error_type (any stage)

Telemetry never affects the suggestion path: every public method logs at
warning level and returns normally on failure.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from speakforme.config import settings
from speakforme.core.clock import elapsed_ms, utcnow
from speakforme.core.types import PipelineErrorType, UserAction, new_suggestion_id
from speakforme.db.models import SuggestionMetrics, Workspace
from speakforme.db.session import db_session
from speakforme.db.upsert import insert_for

logger = structlog.get_logger()


def generate_suggestion_id() -> str:
    return new_suggestion_id()


class SuggestionMetricsRecorder:
    """Idempotent per-stage upserts keyed by suggestion id."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        org_cache_ttl_s: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._org_cache_ttl = (
            org_cache_ttl_s if org_cache_ttl_s is not None else settings.org_cache_ttl_s
        )
        # workspace_id -> (organization_id, expires_at monotonic)
        self._org_cache: dict[UUID, tuple[UUID | None, float]] = {}

    # ── Organization lookup ─────────────────────────────────────────────

    async def resolve_organization_id(self, workspace_id: UUID) -> UUID | None:
        """Organization owning a workspace, cached.

        A failed lookup returns None for this call only and is not cached.
        """
        cached = self._org_cache.get(workspace_id)
        if cached is not None and cached[1] > time.monotonic():
            return cached[0]

        try:
            async with db_session(self._session_factory) as db:
                result = await db.execute(
                    select(Workspace.organization_id).where(Workspace.id == workspace_id).limit(1)
                )
                org_id = result.scalar_one_or_none()
        except Exception as e:
            logger.warning(
                "organization_lookup_failed", workspace_id=str(workspace_id), error=str(e)
            )
            return None
        self._org_cache[workspace_id] = (org_id, time.monotonic() + self._org_cache_ttl)
        return org_id

    # ═══════════════════════════════════════════════════════════════════════
    # STAGES
    # ═══════════════════════════════════════════════════════════════════════

    async def record_event_received(
        self,
        suggestion_id: str,
        workspace_id: UUID,
        user_id: str,
        channel_id: str | None = None,
        trigger_type: str | None = None,
        at: datetime | None = None,
    ) -> None:
        try:
            organization_id = await self.resolve_organization_id(workspace_id)
            await self._upsert(
                suggestion_id,
                "event_received",
                workspace_id=workspace_id,
                organization_id=organization_id,
                user_id=user_id,
                channel_id=channel_id,
                trigger_type=trigger_type,
                event_received_at=at or utcnow(),
            )
        except Exception as e:
            self._warn("event_received", suggestion_id, e)

    async def record_job_queued(self, suggestion_id: str, at: datetime | None = None) -> None:
        try:
            await self._upsert(suggestion_id, "job_queued", job_queued_at=at or utcnow())
        except Exception as e:
            self._warn("job_queued", suggestion_id, e)

    async def record_ai_started(self, suggestion_id: str, at: datetime | None = None) -> None:
        try:
            await self._upsert(suggestion_id, "ai_started", ai_started_at=at or utcnow())
        except Exception as e:
            self._warn("ai_started", suggestion_id, e)

    async def record_ai_completed(
        self,
        suggestion_id: str,
        ai_processing_ms: int | None = None,
        at: datetime | None = None,
    ) -> None:
        try:
            completed_at = at or utcnow()
            if ai_processing_ms is None:
                existing = await self._existing(suggestion_id)
                if existing is not None:
                    ai_processing_ms = elapsed_ms(existing.ai_started_at, completed_at)

            fields: dict[str, Any] = {"ai_completed_at": completed_at}
            if ai_processing_ms is not None:
                fields["ai_processing_ms"] = ai_processing_ms
            await self._upsert(suggestion_id, "ai_completed", **fields)
        except Exception as e:
            self._warn("ai_completed", suggestion_id, e)

    async def record_delivered(self, suggestion_id: str, at: datetime | None = None) -> None:
        try:
            delivered_at = at or utcnow()
            fields: dict[str, Any] = {"delivered_at": delivered_at}

            existing = await self._existing(suggestion_id)
            if existing is not None:
                total = elapsed_ms(existing.event_received_at, delivered_at)
                if total is not None:
                    fields["total_duration_ms"] = total
                queue_delay = elapsed_ms(existing.job_queued_at, existing.ai_started_at)
                if queue_delay is not None:
                    fields["queue_delay_ms"] = queue_delay

            await self._upsert(suggestion_id, "delivered", **fields)
        except Exception as e:
            self._warn("delivered", suggestion_id, e)

    async def record_user_action(
        self,
        suggestion_id: str,
        action: UserAction | str,
        at: datetime | None = None,
    ) -> None:
        try:
            action = UserAction(action)
            await self._upsert(
                suggestion_id,
                "user_action",
                user_action=action.value,
                user_action_at=at or utcnow(),
            )
        except Exception as e:
            self._warn("user_action", suggestion_id, e)

    async def record_error(self, suggestion_id: str, error_type: PipelineErrorType | str) -> None:
        try:
            error_type = PipelineErrorType(error_type)
            await self._upsert(suggestion_id, "error", error_type=error_type.value)
        except Exception as e:
            self._warn("error", suggestion_id, e)

    async def get(self, suggestion_id: str) -> SuggestionMetrics | None:
        """Current row for a suggestion (dashboards and tests)."""
        return await self._existing(suggestion_id)

    # ── Internals ───────────────────────────────────────────────────────

    async def _existing(self, suggestion_id: str) -> SuggestionMetrics | None:
        async with db_session(self._session_factory) as db:
            result = await db.execute(
                select(SuggestionMetrics).where(SuggestionMetrics.suggestion_id == suggestion_id)
            )
            return result.scalar_one_or_none()

    async def _upsert(self, suggestion_id: str, stage: str, **fields: Any) -> None:
        async with db_session(self._session_factory) as db:
            stmt = insert_for(db, SuggestionMetrics).values(
                suggestion_id=suggestion_id, created_at=utcnow(), **fields
            )
            await db.execute(
                stmt.on_conflict_do_update(
                    index_elements=["suggestion_id"],
                    set_={name: stmt.excluded[name] for name in fields},
                )
            )
        logger.debug("suggestion_stage_recorded", suggestion_id=suggestion_id, stage=stage)

    @staticmethod
    def _warn(stage: str, suggestion_id: str, error: Exception) -> None:
        logger.warning(
            "suggestion_metrics_failed",
            stage=stage,
            suggestion_id=suggestion_id,
            error=str(error),
        )


_recorder: SuggestionMetricsRecorder | None = None


def get_metrics_recorder() -> SuggestionMetricsRecorder:
    global _recorder
    if _recorder is None:
        _recorder = SuggestionMetricsRecorder()
    return _recorder
