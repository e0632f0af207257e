"""Escalation alerts with per-channel cooldown."""

from speakforme.escalation.monitor import (
    AdminNotifier,
    EscalationMonitor,
    EscalationNotice,
    SlackAdminNotifier,
    severity_for,
)

__all__ = [
    "AdminNotifier",
    "EscalationMonitor",
    "EscalationNotice",
    "SlackAdminNotifier",
    "severity_for",
]
