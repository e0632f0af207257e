"""Deadline races for best-effort collaborators.

Enrichment calls (knowledge-base search, sentiment scoring) are nice to
have but must never hold up a suggestion. ``with_deadline`` races the call
against a fixed budget and substitutes a neutral result when the budget is
exceeded or the call fails. The abandoned call is never retried.

Budget table
------------
  ENRICHMENT     settings.enrichment_timeout_s   (semantic / KB search)
  SENTIMENT      settings.sentiment_timeout_s    (tone classification)
  DEFAULT        2.0 s

Usage
-----
    from speakforme.core.timeout import with_deadline, Collaborator

    snippets = await with_deadline(
        enricher.enrich(request),
        fallback=[],
        collaborator=Collaborator.ENRICHMENT,
        name="kb_search",
    )
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Coroutine, TypeVar

import structlog

from speakforme.config import settings

logger = structlog.get_logger()

T = TypeVar("T")


class Collaborator(Enum):
    ENRICHMENT = "enrichment"
    SENTIMENT = "sentiment"
    DEFAULT = "default"


def budget_for(collaborator: Collaborator) -> float:
    """Return the deadline in seconds for a collaborator kind."""
    if collaborator is Collaborator.ENRICHMENT:
        return settings.enrichment_timeout_s
    if collaborator is Collaborator.SENTIMENT:
        return settings.sentiment_timeout_s
    return 2.0


async def with_deadline(
    coro: Coroutine[Any, Any, T],
    fallback: T,
    collaborator: Collaborator = Collaborator.DEFAULT,
    name: str = "unknown",
    override_seconds: float | None = None,
) -> T:
    """Await *coro* but give up after the collaborator's budget.

    Returns the awaited result, or *fallback* on timeout or error.
    """
    seconds = override_seconds if override_seconds is not None else budget_for(collaborator)
    try:
        return await asyncio.wait_for(coro, timeout=seconds)
    except asyncio.TimeoutError:
        logger.warning(
            "collaborator_deadline_exceeded",
            collaborator=collaborator.value,
            name=name,
            budget_s=seconds,
        )
        return fallback
    except Exception as e:
        logger.warning(
            "collaborator_failed",
            collaborator=collaborator.value,
            name=name,
            error=str(e),
        )
        return fallback
