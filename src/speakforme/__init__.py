"""Speak for Me: Slack reply-suggestion trigger, enforcement and delivery core."""

__version__ = "0.4.0"
