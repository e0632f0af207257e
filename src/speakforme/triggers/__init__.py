"""Trigger detection: watch state, participation windows, classification."""

from speakforme.triggers.classifier import TriggerClassifier
from speakforme.triggers.participation import ParticipationTracker, get_participation_tracker

__all__ = ["ParticipationTracker", "TriggerClassifier", "get_participation_tracker"]
