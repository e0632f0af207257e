"""Token cost estimates for usage events."""

from __future__ import annotations

import structlog
from litellm import cost_per_token

from speakforme.config import settings

logger = structlog.get_logger()

# Share of a combined token count attributed to the prompt
INPUT_TOKEN_SHARE = 0.3

# USD per million tokens when litellm has no price for the model
_FALLBACK_RATES: dict[str, tuple[float, float]] = {
    "haiku": (0.80, 4.0),
    "sonnet": (3.0, 15.0),
    "opus": (15.0, 75.0),
    "mini": (0.15, 0.60),
    "flash": (0.15, 0.60),
}
_DEFAULT_RATE = (3.0, 15.0)


def split_tokens(tokens_used: int | None) -> tuple[int | None, int | None]:
    """Split a combined token count 30/70 into (input, output)."""
    if not tokens_used:
        return None, None
    return int(tokens_used * INPUT_TOKEN_SHARE), int(tokens_used * (1 - INPUT_TOKEN_SHARE))


def estimate_cost(
    input_tokens: int,
    output_tokens: int,
    model: str | None = None,
) -> float:
    """Estimated USD cost of one generation."""
    model = model or settings.cost_model
    try:
        prompt_cost, completion_cost = cost_per_token(
            model=model,
            prompt_tokens=input_tokens,
            completion_tokens=output_tokens,
        )
        return float(prompt_cost + completion_cost)
    except Exception as e:
        logger.debug("litellm_cost_calc_failed", model=model, error=str(e))

    input_rate, output_rate = next(
        (rates for key, rates in _FALLBACK_RATES.items() if key in model),
        _DEFAULT_RATE,
    )
    return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000
