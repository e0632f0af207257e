"""Domain exceptions.

Raised at component seams and caught at the stage boundary that owns the
failure policy (drop, fail open, or log-and-swallow).
"""

from __future__ import annotations


class SpeakForMeError(Exception):
    """Root exception for all domain errors."""


class WorkspaceNotFoundError(SpeakForMeError):
    """The Slack team id does not map to an installed workspace."""

    def __init__(self, team_id: str) -> None:
        super().__init__(f"Workspace not found for team {team_id}")
        self.team_id = team_id


class ContextFetchError(SpeakForMeError):
    """Conversation history could not be read from Slack."""


class GenerationError(SpeakForMeError):
    """The AI collaborator failed to produce a suggestion."""


class DeliveryError(SpeakForMeError):
    """The suggestion could not be delivered to the recipient."""


class QueueFullError(SpeakForMeError):
    """The generation queue rejected a job (backpressure)."""

    def __init__(self, workspace_id: str, depth: int) -> None:
        super().__init__(f"Generation queue full for workspace {workspace_id} (depth={depth})")
        self.workspace_id = workspace_id
        self.depth = depth
