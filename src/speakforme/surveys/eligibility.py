"""Satisfaction (NPS) surveys with a per-user frequency cap.

Eligibility is a read-time check: no survey delivered to this user within
``survey_cooldown_days``. Errors make the user ineligible; being surveyed
twice is worse than being skipped once.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from speakforme.config import settings
from speakforme.core.clock import utcnow
from speakforme.db.models import SatisfactionSurvey
from speakforme.db.session import db_session

logger = structlog.get_logger()

SURVEY_QUESTION = (
    "On a scale from 0 to 10, how likely are you to recommend Speak for Me to a colleague?"
)


def categorize_nps(rating: int) -> str:
    if rating >= 9:
        return "promoter"
    if rating >= 7:
        return "passive"
    return "detractor"


def build_survey_blocks(survey_id: str) -> list[dict[str, Any]]:
    return [
        {"type": "section", "text": {"type": "plain_text", "text": SURVEY_QUESTION}},
        {
            "type": "actions",
            "block_id": f"satisfaction_survey_{survey_id}",
            "elements": [
                {
                    "type": "static_select",
                    "action_id": "satisfaction_rating",
                    "options": [
                        {"text": {"type": "plain_text", "text": str(n)}, "value": str(n)}
                        for n in range(11)
                    ],
                },
                {
                    "type": "button",
                    "action_id": "dismiss_satisfaction_survey",
                    "text": {"type": "plain_text", "text": "Dismiss"},
                    "value": survey_id,
                },
            ],
        },
    ]


class SurveyService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        cooldown_days: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.cooldown = timedelta(
            days=cooldown_days if cooldown_days is not None else settings.survey_cooldown_days
        )

    async def can_survey_user(
        self, workspace_id: UUID, user_id: str, now: datetime | None = None
    ) -> bool:
        now = now or utcnow()
        try:
            async with db_session(self._session_factory) as db:
                result = await db.execute(
                    select(SatisfactionSurvey.id)
                    .where(
                        SatisfactionSurvey.workspace_id == workspace_id,
                        SatisfactionSurvey.user_id == user_id,
                        SatisfactionSurvey.delivered_at > now - self.cooldown,
                    )
                    .limit(1)
                )
                return result.scalar_one_or_none() is None
        except Exception as e:
            logger.warning(
                "survey_eligibility_failed",
                workspace_id=str(workspace_id),
                user_id=user_id,
                error=str(e),
            )
            return False

    async def record_survey_delivered(
        self,
        workspace_id: UUID,
        user_id: str,
        organization_id: UUID | None = None,
        slack_message_ts: str | None = None,
        now: datetime | None = None,
    ) -> UUID:
        survey = SatisfactionSurvey(
            organization_id=organization_id,
            workspace_id=workspace_id,
            user_id=user_id,
            survey_type="nps",
            status="delivered",
            delivered_at=now or utcnow(),
            slack_message_ts=slack_message_ts,
        )
        async with db_session(self._session_factory) as db:
            db.add(survey)
            await db.flush()
            survey_id = survey.id
        logger.info("survey_delivered", survey_id=str(survey_id), user_id=user_id)
        return survey_id

    async def record_survey_response(
        self,
        survey_id: UUID,
        rating: int,
        feedback_text: str | None = None,
    ) -> str:
        if not 0 <= rating <= 10:
            raise ValueError(f"NPS rating out of range: {rating}")
        category = categorize_nps(rating)
        async with db_session(self._session_factory) as db:
            await db.execute(
                update(SatisfactionSurvey)
                .where(SatisfactionSurvey.id == survey_id)
                .values(
                    status="completed",
                    rating=rating,
                    nps_category=category,
                    feedback_text=feedback_text,
                    responded_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
        logger.info("survey_response_recorded", survey_id=str(survey_id), category=category)
        return category

    async def record_survey_dismissed(self, survey_id: UUID) -> None:
        async with db_session(self._session_factory) as db:
            await db.execute(
                update(SatisfactionSurvey)
                .where(
                    SatisfactionSurvey.id == survey_id,
                    SatisfactionSurvey.status == "delivered",
                )
                .values(status="dismissed", responded_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        logger.info("survey_dismissed", survey_id=str(survey_id))

    async def deliver_survey(
        self,
        client: Any,
        workspace_id: UUID,
        user_id: str,
        organization_id: UUID | None = None,
    ) -> UUID | None:
        """DM the survey if the user is eligible. Never raises."""
        try:
            if not await self.can_survey_user(workspace_id, user_id):
                logger.debug("survey_skipped_cooldown", user_id=user_id)
                return None
            survey_id = await self.record_survey_delivered(
                workspace_id, user_id, organization_id=organization_id
            )
            result = await client.chat_postMessage(
                channel=user_id,
                text="Quick feedback request",
                blocks=build_survey_blocks(str(survey_id)),
            )
            ts = result.get("ts")
            if ts:
                async with db_session(self._session_factory) as db:
                    await db.execute(
                        update(SatisfactionSurvey)
                        .where(SatisfactionSurvey.id == survey_id)
                        .values(slack_message_ts=ts)
                        .execution_options(synchronize_session=False)
                    )
            return survey_id
        except Exception as e:
            logger.warning(
                "survey_delivery_failed",
                workspace_id=str(workspace_id),
                user_id=user_id,
                error=str(e),
            )
            return None
