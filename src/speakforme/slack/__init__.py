"""Slack boundary: event ingestion, action handlers and ephemeral delivery."""

from speakforme.slack.delivery import SlackSuggestionDeliverer, build_suggestion_blocks
from speakforme.slack.handlers import build_inbound_event, register_handlers

__all__ = [
    "SlackSuggestionDeliverer",
    "build_inbound_event",
    "build_suggestion_blocks",
    "register_handlers",
]
