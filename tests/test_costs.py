"""Cost estimation tests."""

from __future__ import annotations

import pytest

from speakforme.billing import costs
from speakforme.billing.costs import estimate_cost, split_tokens


class TestSplitTokens:
    def test_split(self):
        assert split_tokens(1000) == (300, 700)

    @pytest.mark.parametrize("value", [None, 0])
    def test_missing(self, value):
        assert split_tokens(value) == (None, None)


class TestEstimateCost:
    def test_fallback_rates_when_unpriced(self, monkeypatch):
        def unpriced(**kwargs):
            raise ValueError("model not mapped")

        monkeypatch.setattr(costs, "cost_per_token", unpriced)
        assert estimate_cost(1_000_000, 0, model="acme/haiku-x") == pytest.approx(0.80)
        assert estimate_cost(0, 1_000_000, model="unknown") == pytest.approx(15.0)

    def test_uses_litellm_price(self, monkeypatch):
        monkeypatch.setattr(costs, "cost_per_token", lambda **kwargs: (0.001, 0.002))
        assert estimate_cost(10, 20, model="gpt-4o-mini") == pytest.approx(0.003)
