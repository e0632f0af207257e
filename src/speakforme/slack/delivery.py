"""Ephemeral suggestion delivery.

Suggestions are only ever visible to their recipient: they go out through
``chat.postEphemeral`` with a plain-text fallback and a minimal Block Kit
layout whose buttons carry the suggestion id back to the action handlers.
"""

from __future__ import annotations

from typing import Any

import structlog
from slack_sdk.errors import SlackApiError

from speakforme.core.errors import DeliveryError
from speakforme.core.types import SuggestionRequest

logger = structlog.get_logger()

MAX_SECTION_TEXT_CHARS = 3000

# action_id → button label
SUGGESTION_ACTIONS: dict[str, str] = {
    "send_suggestion": "Send",
    "refine_suggestion": "Refine",
    "copy_suggestion": "Copy",
    "dismiss_suggestion": "Dismiss",
}


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def build_suggestion_blocks(
    suggestion_id: str,
    suggestion_text: str,
    warnings: list[str] | None = None,
) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": _truncate(suggestion_text, MAX_SECTION_TEXT_CHARS)},
        },
    ]
    if warnings:
        blocks.append({
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": f":warning: {_truncate(w, 300)}"} for w in warnings[:5]
            ],
        })
    blocks.append({
        "type": "actions",
        "block_id": f"suggestion_{suggestion_id}",
        "elements": [
            {
                "type": "button",
                "action_id": action_id,
                "text": {"type": "plain_text", "text": label},
                "value": suggestion_id,
                **({"style": "primary"} if action_id == "send_suggestion" else {}),
            }
            for action_id, label in SUGGESTION_ACTIONS.items()
        ],
    })
    return blocks


class SlackSuggestionDeliverer:
    """Delivers suggestions and limit notices as ephemeral Slack messages."""

    def __init__(self, client: Any) -> None:
        self.client = client

    async def deliver(
        self,
        request: SuggestionRequest,
        suggestion_text: str,
        warnings: list[str] | None = None,
    ) -> None:
        try:
            await self.client.chat_postEphemeral(
                channel=request.channel_id,
                user=request.user_id,
                thread_ts=request.thread_ts,
                text=suggestion_text,
                blocks=build_suggestion_blocks(request.suggestion_id, suggestion_text, warnings),
            )
        except SlackApiError as e:
            raise DeliveryError(
                f"chat.postEphemeral failed: {e.response.get('error', 'unknown')}"
            ) from e

    async def notify_limit_reached(
        self, request: SuggestionRequest, current_usage: int, limit: int
    ) -> None:
        text = (
            f"You've used {current_usage} of {limit} suggestions this month. "
            "Upgrade your plan to keep getting suggestions."
        )
        try:
            await self.client.chat_postEphemeral(
                channel=request.channel_id,
                user=request.user_id,
                thread_ts=request.thread_ts,
                text=text,
            )
        except SlackApiError as e:
            raise DeliveryError(
                f"chat.postEphemeral failed: {e.response.get('error', 'unknown')}"
            ) from e
        logger.info("usage_limit_notice_sent", user_id=request.user_id, limit=limit)
