"""Satisfaction surveys."""

from speakforme.surveys.eligibility import SurveyService, categorize_nps

__all__ = ["SurveyService", "categorize_nps"]
