"""Predefined guardrail categories.

Each category is a named keyword list. Organizations enable categories by
id; matching is done by the enforcer.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class GuardrailCategory:
    id: str
    name: str
    description: str
    keywords: tuple[str, ...]


# ─────────────────────────────────────────────────────────────────────────────
# Category registry
# ─────────────────────────────────────────────────────────────────────────────

PREDEFINED_CATEGORIES: tuple[GuardrailCategory, ...] = (
    GuardrailCategory(
        id="legal_advice",
        name="Legal Advice",
        description="Prevents legal opinions or recommendations",
        keywords=("hereby", "pursuant", "legally binding", "sue", "litigation", "statute", "liability"),
    ),
    GuardrailCategory(
        id="pricing_commitments",
        name="Pricing Commitments",
        description="Blocks specific pricing quotes or discount promises",
        keywords=("guarantee price", "lock in rate", "special discount", "custom pricing", "waive fee"),
    ),
    GuardrailCategory(
        id="competitor_bashing",
        name="Competitor Mentions",
        description="Avoids negative competitor references",
        keywords=("better than", "unlike", "competitor fails"),
    ),
    GuardrailCategory(
        id="medical_advice",
        name="Medical Advice",
        description="Prevents health or medical recommendations",
        keywords=("diagnose", "prescribe", "treatment plan", "medical advice"),
    ),
    GuardrailCategory(
        id="financial_advice",
        name="Financial Advice",
        description="Blocks investment or financial guidance",
        keywords=(
            "invest in",
            "financial advice",
            "guaranteed returns",
            "buy recommendation",
            "sell recommendation",
        ),
    ),
    GuardrailCategory(
        id="hr_decisions",
        name="HR Decisions",
        description="Prevents employment-related commitments",
        keywords=("you are fired", "terminated", "promote you", "salary increase guaranteed"),
    ),
    GuardrailCategory(
        id="nda_confidential",
        name="Confidential Information",
        description="Blocks sharing of marked confidential content",
        keywords=("confidential", "proprietary", "trade secret", "under nda"),
    ),
)

CATEGORIES_BY_ID: dict[str, GuardrailCategory] = {c.id: c for c in PREDEFINED_CATEGORIES}

# Applied to organizations that never saved a config
DEFAULT_ENABLED_CATEGORIES: tuple[str, ...] = (
    "legal_advice",
    "pricing_commitments",
    "competitor_bashing",
)


def get_category(category_id: str) -> GuardrailCategory | None:
    return CATEGORIES_BY_ID.get(category_id)
