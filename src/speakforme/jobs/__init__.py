"""Scheduled background jobs."""

from speakforme.jobs.scheduler import HygieneScheduler

__all__ = ["HygieneScheduler"]
