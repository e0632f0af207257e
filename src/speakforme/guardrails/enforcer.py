"""Guardrail enforcement for generated suggestion text.

Matching is case-insensitive and whole-word (``\\b...\\b`` around the
escaped keyword), so "sue" never matches inside "issue". Every occurrence
of every enabled rule is reported.

Enforcement dispatches on the organization's trigger mode:

    hard_block    → text None, blocked, block_reason = first rule
    regenerate    → text None, should_regenerate, avoid_topics = unique rules
    soft_warning  → original text plus "Contains {rule}" warnings

Every violation is written to the audit table; a failed audit write is
logged and skipped. Any other failure fails open and returns the
original text, since guardrails are a safety net and not the only one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from speakforme.core.clock import utcnow
from speakforme.db.models import GuardrailConfig, GuardrailViolation, TriggerMode
from speakforme.db.session import db_session
from speakforme.guardrails.categories import DEFAULT_ENABLED_CATEGORIES, get_category

logger = structlog.get_logger()

_ACTION_BY_MODE = {
    TriggerMode.HARD_BLOCK: "blocked",
    TriggerMode.REGENERATE: "regenerated",
    TriggerMode.SOFT_WARNING: "warned",
}


@dataclass(frozen=True)
class GuardrailSettings:
    """Effective policy for one organization."""

    enabled_categories: tuple[str, ...] = ()
    blocked_keywords: tuple[str, ...] = ()
    trigger_mode: TriggerMode = TriggerMode.HARD_BLOCK
    persisted: bool = False

    @property
    def has_rules(self) -> bool:
        return bool(self.enabled_categories or self.blocked_keywords)


DEFAULT_SETTINGS = GuardrailSettings(enabled_categories=DEFAULT_ENABLED_CATEGORIES)
EMPTY_SETTINGS = GuardrailSettings()


@dataclass(frozen=True)
class Violation:
    type: str  # "keyword" | "category"
    rule: str
    matched_text: str


@dataclass(frozen=True)
class GuardrailCheckResult:
    violations: list[Violation] = field(default_factory=list)

    @property
    def violated(self) -> bool:
        return bool(self.violations)


@dataclass(frozen=True)
class EnforcementResult:
    text: str | None
    blocked: bool = False
    block_reason: str | None = None
    should_regenerate: bool = False
    avoid_topics: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    violations: list[Violation] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# MATCHING
# ═══════════════════════════════════════════════════════════════════════════════

@lru_cache(maxsize=512)
def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(keyword.lower())}\b", re.IGNORECASE)


def check_guardrails(text: str, config: GuardrailSettings) -> GuardrailCheckResult:
    """Scan *text* against custom keywords, then enabled categories."""
    violations: list[Violation] = []

    for keyword in config.blocked_keywords:
        for match in _keyword_pattern(keyword).finditer(text):
            violations.append(Violation(type="keyword", rule=keyword, matched_text=match.group(0)))

    for category_id in config.enabled_categories:
        category = get_category(category_id)
        if category is None:
            continue
        for keyword in category.keywords:
            for match in _keyword_pattern(keyword).finditer(text):
                violations.append(
                    Violation(
                        type="category",
                        rule=f"{category.name} ({keyword})",
                        matched_text=match.group(0),
                    )
                )

    return GuardrailCheckResult(violations=violations)


# ═══════════════════════════════════════════════════════════════════════════════
# ENFORCEMENT
# ═══════════════════════════════════════════════════════════════════════════════

class GuardrailEnforcer:
    """Loads organization policy, enforces it, and audits violations."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    async def get_guardrail_config(self, organization_id: UUID) -> GuardrailSettings:
        """Stored policy, built-in defaults when absent, empty on read failure."""
        try:
            async with db_session(self._session_factory) as db:
                result = await db.execute(
                    select(GuardrailConfig)
                    .where(GuardrailConfig.organization_id == organization_id)
                    .limit(1)
                )
                row = result.scalar_one_or_none()
        except Exception as e:
            logger.warning(
                "guardrail_config_read_failed",
                organization_id=str(organization_id),
                error=str(e),
            )
            return EMPTY_SETTINGS

        if row is None:
            return DEFAULT_SETTINGS
        return GuardrailSettings(
            enabled_categories=tuple(row.enabled_categories or ()),
            blocked_keywords=tuple(
                keyword.strip() for keyword in row.blocked_keywords or () if keyword and keyword.strip()
            ),
            trigger_mode=TriggerMode(row.trigger_mode or TriggerMode.HARD_BLOCK.value),
            persisted=True,
        )

    async def check_and_enforce_guardrails(
        self,
        organization_id: UUID,
        workspace_id: UUID,
        user_id: str,
        suggestion_text: str,
        channel_id: str | None = None,
    ) -> EnforcementResult:
        try:
            config = await self.get_guardrail_config(organization_id)
            if not config.has_rules:
                return EnforcementResult(text=suggestion_text)

            check = check_guardrails(suggestion_text, config)
            if not check.violated:
                return EnforcementResult(text=suggestion_text)

            mode = config.trigger_mode
            await self._log_violations(
                organization_id,
                workspace_id,
                user_id,
                channel_id,
                check.violations,
                suggestion_text,
                _ACTION_BY_MODE[mode],
            )
            logger.info(
                "guardrail_violations",
                organization_id=str(organization_id),
                user_id=user_id,
                mode=mode.value,
                rules=[v.rule for v in check.violations],
            )

            if mode is TriggerMode.HARD_BLOCK:
                return EnforcementResult(
                    text=None,
                    blocked=True,
                    block_reason=check.violations[0].rule,
                    violations=check.violations,
                )
            if mode is TriggerMode.REGENERATE:
                return EnforcementResult(
                    text=None,
                    should_regenerate=True,
                    avoid_topics=list(dict.fromkeys(v.rule for v in check.violations)),
                    violations=check.violations,
                )
            return EnforcementResult(
                text=suggestion_text,
                warnings=[f"Contains {v.rule}" for v in check.violations],
                violations=check.violations,
            )
        except Exception as e:
            logger.error(
                "guardrail_enforcement_failed",
                organization_id=str(organization_id),
                workspace_id=str(workspace_id),
                user_id=user_id,
                error=str(e),
            )
            return EnforcementResult(text=suggestion_text)

    async def _log_violations(
        self,
        organization_id: UUID,
        workspace_id: UUID,
        user_id: str,
        channel_id: str | None,
        violations: list[Violation],
        suggestion_text: str,
        action: str,
    ) -> None:
        for violation in violations:
            try:
                async with db_session(self._session_factory) as db:
                    db.add(
                        GuardrailViolation(
                            organization_id=organization_id,
                            workspace_id=workspace_id,
                            user_id=user_id,
                            channel_id=channel_id,
                            violation_type=violation.type,
                            violated_rule=violation.rule,
                            suggestion_text=suggestion_text,
                            action=action,
                            created_at=utcnow(),
                        )
                    )
            except Exception as e:
                logger.warning(
                    "guardrail_violation_log_failed",
                    organization_id=str(organization_id),
                    rule=violation.rule,
                    error=str(e),
                )


_enforcer: GuardrailEnforcer | None = None


def get_guardrail_enforcer() -> GuardrailEnforcer:
    global _enforcer
    if _enforcer is None:
        _enforcer = GuardrailEnforcer()
    return _enforcer
