"""Slack event and action handlers.

Handles:
- Channel, thread and DM messages (``message``)
- App mentions (``app_mention``)
- Suggestion buttons (send / refine / dismiss / copy)
- Satisfaction survey responses
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog
from slack_bolt.async_app import AsyncAck, AsyncApp, AsyncBoltContext

from speakforme.core.types import EventKind, InboundEvent, UserAction
from speakforme.pipeline.orchestrator import SuggestionPipeline
from speakforme.surveys.eligibility import SurveyService

logger = structlog.get_logger()

# action_id → recorded user action
ACTION_MAP: dict[str, UserAction] = {
    "send_suggestion": UserAction.SENT,
    "refine_suggestion": UserAction.REFINED,
    "dismiss_suggestion": UserAction.DISMISSED,
    "copy_suggestion": UserAction.ACCEPTED,
}


async def resolve_team_id(body: dict[str, Any], context: AsyncBoltContext, client: Any) -> str | None:
    """Team id from the event envelope, the Bolt context, or ``auth.test``."""
    team_id = body.get("team_id") or context.get("team_id")
    if not team_id:
        team_id = (body.get("team") or {}).get("id")
    if not team_id and client is not None:
        auth = await client.auth_test()
        team_id = auth.get("team_id")
    return team_id


def build_inbound_event(
    event: dict[str, Any], team_id: str, kind: EventKind = EventKind.MESSAGE
) -> InboundEvent:
    return InboundEvent(
        workspace_team_id=team_id,
        author_user_id=event.get("user", ""),
        channel_id=event.get("channel", ""),
        message_ts=event.get("ts", ""),
        text=event.get("text", ""),
        thread_ts=event.get("thread_ts"),
        channel_type=event.get("channel_type"),
        is_bot_or_subtype=bool(event.get("bot_id") or event.get("subtype")),
        kind=kind,
    )


def register_handlers(
    app: AsyncApp,
    pipeline: SuggestionPipeline,
    surveys: SurveyService | None = None,
) -> None:
    """Register all Slack event handlers with the Bolt app."""

    async def _dispatch(
        event: dict[str, Any],
        body: dict[str, Any],
        context: AsyncBoltContext,
        client: Any,
        kind: EventKind,
    ) -> None:
        team_id = await resolve_team_id(body, context, client)
        if not team_id:
            logger.warning("event_missing_team_id", channel_id=event.get("channel"))
            return
        await pipeline.handle_event(build_inbound_event(event, team_id, kind), client=client)

    # ═══ MESSAGES ══════════════════════════════════════════════════════

    @app.event("message")
    async def handle_message(
        event: dict[str, Any],
        body: dict[str, Any],
        context: AsyncBoltContext,
        client: Any,
    ) -> None:
        await _dispatch(event, body, context, client, EventKind.MESSAGE)

    @app.event("app_mention")
    async def handle_app_mention(
        event: dict[str, Any],
        body: dict[str, Any],
        context: AsyncBoltContext,
        client: Any,
    ) -> None:
        await _dispatch(event, body, context, client, EventKind.APP_MENTION)

    # ═══ SUGGESTION ACTIONS ════════════════════════════════════════════

    async def _record_action(
        ack: AsyncAck,
        body: dict[str, Any],
        context: AsyncBoltContext,
        client: Any,
    ) -> None:
        await ack()
        action = (body.get("actions") or [{}])[0]
        action_id = action.get("action_id", "")
        suggestion_id = action.get("value", "")
        user_action = ACTION_MAP.get(action_id)
        if not suggestion_id or user_action is None:
            return

        logger.info("suggestion_action", suggestion_id=suggestion_id, action=user_action.value)
        await pipeline.recorder.record_user_action(suggestion_id, user_action)

        if user_action is UserAction.SENT and surveys is not None:
            await _offer_survey(body, context, client)

    for action_id in ACTION_MAP:
        app.action(action_id)(_record_action)

    async def _offer_survey(body: dict[str, Any], context: AsyncBoltContext, client: Any) -> None:
        assert surveys is not None
        user_id = (body.get("user") or {}).get("id")
        team_id = await resolve_team_id(body, context, client)
        if not user_id or not team_id:
            return
        try:
            workspace_id = await pipeline.classifier.tracker.resolve_workspace_id(team_id)
        except Exception as e:
            logger.warning("survey_workspace_lookup_failed", team_id=team_id, error=str(e))
            return
        if workspace_id is None:
            return
        organization_id = await pipeline.recorder.resolve_organization_id(workspace_id)
        await surveys.deliver_survey(client, workspace_id, user_id, organization_id=organization_id)

    # ═══ SATISFACTION SURVEY ═══════════════════════════════════════════

    @app.action("satisfaction_rating")
    async def handle_survey_rating(ack: AsyncAck, body: dict[str, Any]) -> None:
        await ack()
        if surveys is None:
            return
        action = (body.get("actions") or [{}])[0]
        survey_id = survey_id_from_block(action.get("block_id", ""))
        rating = (action.get("selected_option") or {}).get("value")
        if survey_id is None or rating is None:
            return
        try:
            await surveys.record_survey_response(survey_id, int(rating))
        except ValueError as e:
            logger.warning("survey_response_invalid", survey_id=str(survey_id), error=str(e))

    @app.action("dismiss_satisfaction_survey")
    async def handle_survey_dismiss(ack: AsyncAck, body: dict[str, Any]) -> None:
        await ack()
        if surveys is None:
            return
        action = (body.get("actions") or [{}])[0]
        try:
            survey_id = UUID(action.get("value", ""))
        except ValueError:
            return
        await surveys.record_survey_dismissed(survey_id)


def survey_id_from_block(block_id: str) -> UUID | None:
    prefix = "satisfaction_survey_"
    if not block_id.startswith(prefix):
        return None
    try:
        return UUID(block_id[len(prefix):])
    except ValueError:
        return None
