"""Trigger classification: inbound message event -> suggestion requests.

Decision order for one event:

    bot / subtype ─────────────────────────────────────────→ []
    resolve workspace (unknown team → WorkspaceNotFoundError)
    thread_ts present → record author participation
    app_mention       → one `mention` request if the author watches the channel
    DM, no thread     → one `dm` request per watcher other than the author
    thread            → one `thread` request per context participant that
                        watches the channel AND posted in this thread recently
    anything else     → []   (inline replies are not detected)

Every request is minted with its suggestion id before it leaves this
module. Classification is at-most-once: ``handle`` logs and drops on any
failure, nothing is retried.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog

from speakforme.core.errors import WorkspaceNotFoundError
from speakforme.core.types import (
    ContextMessage,
    EventKind,
    InboundEvent,
    SuggestionRequest,
    TriggerType,
)
from speakforme.triggers.context import (
    fetch_context_for_message,
    fetch_thread_context,
)
from speakforme.triggers.participation import ParticipationTracker

logger = structlog.get_logger()


class TriggerClassifier:
    """Decides who, if anyone, gets a suggestion for an inbound event."""

    def __init__(
        self,
        tracker: ParticipationTracker | None = None,
        slack_client: Any = None,
    ) -> None:
        self.tracker = tracker or ParticipationTracker()
        self._client = slack_client

    async def handle(
        self, event: InboundEvent, client: Any = None
    ) -> list[SuggestionRequest]:
        """Classify, dropping the event on any failure."""
        try:
            return await self.classify(event, client=client)
        except WorkspaceNotFoundError as e:
            logger.error("event_dropped_unknown_workspace", team_id=e.team_id)
        except Exception as e:
            logger.error(
                "event_classification_failed",
                team_id=event.workspace_team_id,
                channel_id=event.channel_id,
                message_ts=event.message_ts,
                error=str(e),
                exc_info=True,
            )
        return []

    async def classify(
        self, event: InboundEvent, client: Any = None
    ) -> list[SuggestionRequest]:
        client = client or self._client

        if event.is_bot_or_subtype:
            return []

        workspace_id = await self.tracker.resolve_workspace_id(event.workspace_team_id)
        if workspace_id is None:
            raise WorkspaceNotFoundError(event.workspace_team_id)

        if event.thread_ts:
            await self.tracker.record_participation(
                workspace_id, event.author_user_id, event.channel_id, event.thread_ts
            )

        if event.kind is EventKind.APP_MENTION:
            requests = await self._mention_requests(event, workspace_id, client)
        elif event.is_dm and not event.thread_ts:
            requests = await self._dm_requests(event, workspace_id, client)
        elif event.thread_ts:
            requests = await self._thread_requests(event, workspace_id, client)
        else:
            logger.debug(
                "non_thread_message_skipped",
                channel_id=event.channel_id,
                message_ts=event.message_ts,
            )
            requests = []

        if requests:
            logger.info(
                "triggers_classified",
                workspace_id=str(workspace_id),
                channel_id=event.channel_id,
                trigger_type=requests[0].trigger_type.value,
                recipients=[r.user_id for r in requests],
            )
        return requests

    # ── Branches ────────────────────────────────────────────────────────

    async def _mention_requests(
        self, event: InboundEvent, workspace_id: UUID, client: Any
    ) -> list[SuggestionRequest]:
        if not await self.tracker.is_watching(
            workspace_id, event.author_user_id, event.channel_id
        ):
            logger.debug(
                "mention_ignored_unwatched",
                channel_id=event.channel_id,
                user_id=event.author_user_id,
            )
            return []

        context = await fetch_context_for_message(
            client, event.channel_id, event.message_ts, event.thread_ts
        )
        return [
            self._request(
                event,
                workspace_id,
                recipient=event.author_user_id,
                trigger_type=TriggerType.MENTION,
                context=context,
                message_ts=event.message_ts,
                thread_ts=event.thread_ts,
            )
        ]

    async def _dm_requests(
        self, event: InboundEvent, workspace_id: UUID, client: Any
    ) -> list[SuggestionRequest]:
        watchers = await self.tracker.watchers_of(workspace_id, event.channel_id)
        recipients = sorted(w for w in watchers if w != event.author_user_id)
        if not recipients:
            return []

        context = await fetch_context_for_message(client, event.channel_id, event.message_ts)
        return [
            self._request(
                event,
                workspace_id,
                recipient=recipient,
                trigger_type=TriggerType.DM,
                context=context,
                message_ts=event.message_ts,
                thread_ts=None,
            )
            for recipient in recipients
        ]

    async def _thread_requests(
        self, event: InboundEvent, workspace_id: UUID, client: Any
    ) -> list[SuggestionRequest]:
        thread_ts = event.thread_ts
        assert thread_ts is not None
        context = await fetch_thread_context(client, event.channel_id, thread_ts)

        participants: list[str] = []
        for message in context:
            if message.user_id != event.author_user_id and message.user_id not in participants:
                participants.append(message.user_id)

        requests: list[SuggestionRequest] = []
        for participant in participants:
            if not await self.tracker.is_watching(workspace_id, participant, event.channel_id):
                continue
            if not await self.tracker.is_active_participant(
                workspace_id, participant, event.channel_id, thread_ts
            ):
                continue
            requests.append(
                self._request(
                    event,
                    workspace_id,
                    recipient=participant,
                    trigger_type=TriggerType.THREAD,
                    context=context,
                    # Suggestions anchor on the thread root
                    message_ts=thread_ts,
                    thread_ts=thread_ts,
                )
            )
        return requests

    @staticmethod
    def _request(
        event: InboundEvent,
        workspace_id: UUID,
        *,
        recipient: str,
        trigger_type: TriggerType,
        context: list[ContextMessage],
        message_ts: str,
        thread_ts: str | None,
    ) -> SuggestionRequest:
        return SuggestionRequest(
            workspace_id=workspace_id,
            user_id=recipient,
            channel_id=event.channel_id,
            message_ts=message_ts,
            thread_ts=thread_ts,
            trigger_type=trigger_type,
            trigger_message_text=event.text,
            context_messages=list(context),
            author_user_id=event.author_user_id,
            source_message_ts=event.message_ts,
        )
