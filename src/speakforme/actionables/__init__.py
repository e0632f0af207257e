"""Actionable items detected in watched conversations."""

from speakforme.actionables.store import ActionableStore

__all__ = ["ActionableStore"]
