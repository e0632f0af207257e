"""Conversation watch state and thread participation windowing.

Two questions are answered here for the trigger classifier:

- Is this user watching this conversation? (explicit opt-in rows)
- Has this user posted in this thread recently? (trailing window)

The participation window is a read-time comparison against
``last_message_at``. Rows are never expired for correctness;
``prune_stale_participation`` exists for storage hygiene only.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from speakforme.config import settings
from speakforme.core.clock import utcnow
from speakforme.db.models import ThreadParticipant, WatchedConversation, Workspace
from speakforme.db.session import db_session
from speakforme.db.upsert import insert_for

logger = structlog.get_logger()


class ParticipationTracker:
    """Watch membership and thread participation queries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        window_days: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.window = timedelta(
            days=window_days if window_days is not None else settings.participation_window_days
        )

    # ═══════════════════════════════════════════════════════════════════════
    # WORKSPACE RESOLUTION
    # ═══════════════════════════════════════════════════════════════════════

    async def resolve_workspace_id(self, team_id: str) -> UUID | None:
        """Map a Slack team id to the internal workspace id."""
        async with db_session(self._session_factory) as db:
            result = await db.execute(
                select(Workspace.id).where(Workspace.slack_team_id == team_id)
            )
            return result.scalar_one_or_none()

    # ═══════════════════════════════════════════════════════════════════════
    # WATCHING
    # ═══════════════════════════════════════════════════════════════════════

    async def watch_conversation(
        self,
        workspace_id: UUID,
        user_id: str,
        channel_id: str,
        channel_name: str | None = None,
        channel_type: str | None = None,
        auto_respond: bool = False,
    ) -> None:
        """Opt a user in. Watching twice is a no-op."""
        async with db_session(self._session_factory) as db:
            stmt = insert_for(db, WatchedConversation).values(
                workspace_id=workspace_id,
                user_id=user_id,
                channel_id=channel_id,
                channel_name=channel_name,
                channel_type=channel_type,
                auto_respond=auto_respond,
                created_at=utcnow(),
            )
            await db.execute(
                stmt.on_conflict_do_nothing(
                    index_elements=["workspace_id", "user_id", "channel_id"]
                )
            )
        logger.info(
            "conversation_watched",
            workspace_id=str(workspace_id),
            user_id=user_id,
            channel_id=channel_id,
        )

    async def unwatch_conversation(
        self, workspace_id: UUID, user_id: str, channel_id: str
    ) -> None:
        async with db_session(self._session_factory) as db:
            await db.execute(
                delete(WatchedConversation).where(
                    WatchedConversation.workspace_id == workspace_id,
                    WatchedConversation.user_id == user_id,
                    WatchedConversation.channel_id == channel_id,
                )
            )
        logger.info(
            "conversation_unwatched",
            workspace_id=str(workspace_id),
            user_id=user_id,
            channel_id=channel_id,
        )

    async def is_watching(self, workspace_id: UUID, user_id: str, channel_id: str) -> bool:
        async with db_session(self._session_factory) as db:
            result = await db.execute(
                select(WatchedConversation.id)
                .where(
                    WatchedConversation.workspace_id == workspace_id,
                    WatchedConversation.user_id == user_id,
                    WatchedConversation.channel_id == channel_id,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def watched_channels(self, workspace_id: UUID, user_id: str) -> list[str]:
        async with db_session(self._session_factory) as db:
            result = await db.execute(
                select(WatchedConversation.channel_id)
                .where(
                    WatchedConversation.workspace_id == workspace_id,
                    WatchedConversation.user_id == user_id,
                )
                .order_by(WatchedConversation.created_at)
            )
            return list(result.scalars().all())

    async def watchers_of(self, workspace_id: UUID, channel_id: str) -> set[str]:
        async with db_session(self._session_factory) as db:
            result = await db.execute(
                select(WatchedConversation.user_id).where(
                    WatchedConversation.workspace_id == workspace_id,
                    WatchedConversation.channel_id == channel_id,
                )
            )
            return set(result.scalars().all())

    # ═══════════════════════════════════════════════════════════════════════
    # THREAD PARTICIPATION
    # ═══════════════════════════════════════════════════════════════════════

    async def record_participation(
        self,
        workspace_id: UUID,
        user_id: str,
        channel_id: str,
        thread_ts: str,
        now: datetime | None = None,
    ) -> None:
        """Upsert ``last_message_at = now``. Best effort: never raises."""
        now = now or utcnow()
        try:
            async with db_session(self._session_factory) as db:
                stmt = insert_for(db, ThreadParticipant).values(
                    workspace_id=workspace_id,
                    user_id=user_id,
                    channel_id=channel_id,
                    thread_ts=thread_ts,
                    last_message_at=now,
                )
                await db.execute(
                    stmt.on_conflict_do_update(
                        index_elements=["workspace_id", "user_id", "channel_id", "thread_ts"],
                        set_={"last_message_at": stmt.excluded.last_message_at},
                    )
                )
        except Exception as e:
            logger.warning(
                "participation_record_failed",
                workspace_id=str(workspace_id),
                user_id=user_id,
                channel_id=channel_id,
                thread_ts=thread_ts,
                error=str(e),
            )

    async def is_active_participant(
        self,
        workspace_id: UUID,
        user_id: str,
        channel_id: str,
        thread_ts: str,
        now: datetime | None = None,
    ) -> bool:
        """True iff the user posted in this thread within the trailing window."""
        cutoff = (now or utcnow()) - self.window
        async with db_session(self._session_factory) as db:
            result = await db.execute(
                select(ThreadParticipant.id)
                .where(
                    ThreadParticipant.workspace_id == workspace_id,
                    ThreadParticipant.user_id == user_id,
                    ThreadParticipant.channel_id == channel_id,
                    ThreadParticipant.thread_ts == thread_ts,
                    ThreadParticipant.last_message_at > cutoff,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def prune_stale_participation(
        self, older_than_days: int | None = None, now: datetime | None = None
    ) -> int:
        """Delete participation rows far outside any window. Hygiene only."""
        days = older_than_days if older_than_days is not None else settings.participation_retention_days
        cutoff = (now or utcnow()) - timedelta(days=days)
        async with db_session(self._session_factory) as db:
            result = await db.execute(
                delete(ThreadParticipant).where(ThreadParticipant.last_message_at < cutoff)
            )
            deleted = result.rowcount or 0
        logger.info("participation_pruned", deleted=deleted, older_than_days=days)
        return deleted


_tracker: ParticipationTracker | None = None


def get_participation_tracker() -> ParticipationTracker:
    global _tracker
    if _tracker is None:
        _tracker = ParticipationTracker()
    return _tracker
