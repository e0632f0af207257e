"""Conversation context for suggestion requests.

Reads recent Slack history so the generator sees what was said before the
trigger. Bot messages are dropped and results are always oldest first.
"""

from __future__ import annotations

import time
from typing import Any

import structlog
from slack_sdk.errors import SlackApiError

from speakforme.config import settings
from speakforme.core.errors import ContextFetchError
from speakforme.core.types import ContextMessage

logger = structlog.get_logger()


def _oldest_ts(window_minutes: int) -> str:
    return f"{time.time() - window_minutes * 60:.6f}"


def _to_context(messages: list[dict[str, Any]]) -> list[ContextMessage]:
    return [
        ContextMessage(
            user_id=m.get("user") or "unknown",
            text=m.get("text", ""),
            ts=m.get("ts", ""),
        )
        for m in messages
        if m.get("type", "message") == "message" and not m.get("bot_id") and m.get("text")
    ]


async def fetch_channel_context(
    client: Any,
    channel_id: str,
    max_messages: int | None = None,
    window_minutes: int | None = None,
) -> list[ContextMessage]:
    """Top-level channel messages inside the context window."""
    limit = max_messages or settings.context_max_messages
    window = window_minutes or settings.context_window_minutes
    try:
        result = await client.conversations_history(
            channel=channel_id, limit=limit, oldest=_oldest_ts(window)
        )
    except SlackApiError as e:
        logger.error("channel_context_failed", channel_id=channel_id, error=str(e))
        raise ContextFetchError(f"conversations.history failed for {channel_id}") from e

    # conversations.history is newest first
    context = list(reversed(_to_context(result.get("messages") or [])))
    logger.debug(
        "channel_context_fetched",
        channel_id=channel_id,
        messages=len(context),
        window_minutes=window,
    )
    return context


async def fetch_thread_context(
    client: Any,
    channel_id: str,
    thread_ts: str,
    max_messages: int | None = None,
    window_minutes: int | None = None,
) -> list[ContextMessage]:
    """Thread parent plus replies inside the context window."""
    limit = max_messages or settings.context_max_messages
    window = window_minutes or settings.context_window_minutes
    try:
        result = await client.conversations_replies(
            channel=channel_id, ts=thread_ts, limit=limit, oldest=_oldest_ts(window)
        )
    except SlackApiError as e:
        logger.error(
            "thread_context_failed", channel_id=channel_id, thread_ts=thread_ts, error=str(e)
        )
        raise ContextFetchError(
            f"conversations.replies failed for {channel_id}/{thread_ts}"
        ) from e

    context = _to_context(result.get("messages") or [])
    logger.debug(
        "thread_context_fetched",
        channel_id=channel_id,
        thread_ts=thread_ts,
        messages=len(context),
    )
    return context


async def fetch_context_for_message(
    client: Any,
    channel_id: str,
    message_ts: str,
    thread_ts: str | None = None,
) -> list[ContextMessage]:
    """Thread context when the message belongs to a thread, channel context otherwise.

    A message is in a thread when ``thread_ts`` differs from its own ts, or
    when the message is itself a parent that already has replies.
    """
    if thread_ts and thread_ts != message_ts:
        return await fetch_thread_context(client, channel_id, thread_ts)

    try:
        probe = await client.conversations_replies(channel=channel_id, ts=message_ts, limit=2)
        if len(probe.get("messages") or []) > 1:
            return await fetch_thread_context(client, channel_id, message_ts)
    except SlackApiError as e:
        logger.debug(
            "thread_probe_failed", channel_id=channel_id, message_ts=message_ts, error=str(e)
        )

    return await fetch_channel_context(client, channel_id)
