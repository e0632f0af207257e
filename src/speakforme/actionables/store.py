"""Actionable item detection with duplicate suppression.

A message yields at most one actionable per (workspace, user, channel,
message_ts). The pre-check avoids paying for detection twice; the unique
constraint is what actually guarantees it when two workers race, and an
IntegrityError on insert is read as "already present".
"""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from speakforme.core.clock import utcnow
from speakforme.core.collaborators import ActionableDetector
from speakforme.core.types import ActionableDetectionContext
from speakforme.db.models import ActionableItem, ActionableStatus
from speakforme.db.session import db_session

logger = structlog.get_logger()

MIN_MESSAGE_LENGTH = 10


def _parse_due_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class ActionableStore:
    def __init__(
        self,
        detector: ActionableDetector | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.detector = detector
        self._session_factory = session_factory

    async def exists(
        self, workspace_id: UUID, user_id: str, channel_id: str, message_ts: str
    ) -> bool:
        async with db_session(self._session_factory) as db:
            result = await db.execute(
                select(ActionableItem.id)
                .where(
                    ActionableItem.workspace_id == workspace_id,
                    ActionableItem.user_id == user_id,
                    ActionableItem.channel_id == channel_id,
                    ActionableItem.message_ts == message_ts,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def process_message(
        self,
        workspace_id: UUID,
        user_id: str,
        channel_id: str,
        message_ts: str,
        message_text: str,
        message_author_id: str | None = None,
        thread_ts: str | None = None,
        thread_context: str = "",
    ) -> ActionableItem | None:
        """Detect and store an actionable for one message.

        Returns the stored item, or None when nothing new was stored.
        """
        if len(message_text) < MIN_MESSAGE_LENGTH:
            return None
        if self.detector is None:
            return None

        if await self.exists(workspace_id, user_id, channel_id, message_ts):
            logger.debug("actionable_already_detected", message_ts=message_ts)
            return None

        detected = await self.detector.detect(
            ActionableDetectionContext(
                workspace_id=workspace_id,
                user_id=user_id,
                message_text=message_text,
                message_author_id=message_author_id,
                thread_context=thread_context,
                current_date=utcnow().date().isoformat(),
            )
        )
        if detected is None:
            return None

        item = ActionableItem(
            workspace_id=workspace_id,
            user_id=user_id,
            channel_id=channel_id,
            message_ts=message_ts,
            thread_ts=thread_ts,
            message_text=message_text,
            title=detected.title,
            description=detected.description,
            actionable_type=detected.type,
            due_date=_parse_due_date(detected.due_date),
            confidence_score=detected.confidence_score,
            ai_metadata={"reasoning": detected.reasoning},
            detected_at=utcnow(),
        )
        try:
            async with db_session(self._session_factory) as db:
                db.add(item)
        except IntegrityError:
            logger.debug("actionable_already_exists", message_ts=message_ts)
            return None

        logger.info(
            "actionable_stored",
            workspace_id=str(workspace_id),
            user_id=user_id,
            type=detected.type,
            confidence=detected.confidence_score,
        )
        return item

    async def get_pending(
        self, workspace_id: UUID, user_id: str, now: datetime | None = None
    ) -> list[ActionableItem]:
        """Pending items plus snoozed items whose snooze has run out."""
        now = now or utcnow()
        async with db_session(self._session_factory) as db:
            result = await db.execute(
                select(ActionableItem)
                .where(
                    ActionableItem.workspace_id == workspace_id,
                    ActionableItem.user_id == user_id,
                    or_(
                        ActionableItem.status == ActionableStatus.PENDING.value,
                        and_(
                            ActionableItem.status == ActionableStatus.SNOOZED.value,
                            ActionableItem.snoozed_until < now,
                        ),
                    ),
                )
                .order_by(
                    ActionableItem.due_date.asc().nulls_last(),
                    ActionableItem.confidence_score.desc(),
                    ActionableItem.detected_at.desc(),
                )
            )
            return list(result.scalars().all())

    async def update_status(
        self,
        workspace_id: UUID,
        user_id: str,
        actionable_id: UUID,
        status: ActionableStatus | str,
        snooze_for: timedelta | None = None,
    ) -> bool:
        status = ActionableStatus(status)
        now = utcnow()
        values: dict = {"status": status.value, "updated_at": now}
        if status is ActionableStatus.COMPLETED:
            values["completed_at"] = now
        elif status is ActionableStatus.DISMISSED:
            values["dismissed_at"] = now
        elif status is ActionableStatus.SNOOZED:
            values["snoozed_until"] = now + (snooze_for or timedelta(days=1))

        async with db_session(self._session_factory) as db:
            result = await db.execute(
                update(ActionableItem)
                .where(
                    ActionableItem.id == actionable_id,
                    ActionableItem.workspace_id == workspace_id,
                    ActionableItem.user_id == user_id,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            updated = (result.rowcount or 0) > 0
        logger.info(
            "actionable_status_updated",
            actionable_id=str(actionable_id),
            status=status.value,
            updated=updated,
        )
        return updated
