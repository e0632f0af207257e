"""Guardrails: predefined categories and per-organization enforcement."""

from speakforme.guardrails.categories import PREDEFINED_CATEGORIES, GuardrailCategory
from speakforme.guardrails.enforcer import (
    EnforcementResult,
    GuardrailCheckResult,
    GuardrailEnforcer,
    GuardrailSettings,
    Violation,
    check_guardrails,
    get_guardrail_enforcer,
)

__all__ = [
    "PREDEFINED_CATEGORIES",
    "EnforcementResult",
    "GuardrailCategory",
    "GuardrailCheckResult",
    "GuardrailEnforcer",
    "GuardrailSettings",
    "Violation",
    "check_guardrails",
    "get_guardrail_enforcer",
]
