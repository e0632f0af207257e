"""In-process pipeline statistics.

Counters and latency histograms for the suggestion pipeline, held in a
process-global singleton and exported as a plain dict on /metrics. These
are operational aggregates; the per-suggestion record of truth is the
``suggestion_metrics`` table.

Counters:
    events_total                     Inbound events handed to the pipeline
    events_dropped_total             Events dropped during classification
    requests_total[trigger_type]     Suggestion requests emitted
    outcomes_total[outcome]          delivered | usage_denied | blocked |
                                     ai_error | delivery_error | queue_full
    guardrail_regenerations_total    Regenerations forced by guardrails
    enrichment_fallbacks_total       Enrichment calls that hit the deadline

Histograms (milliseconds):
    generation_latency_ms            One generate() call
    end_to_end_latency_ms            Worker start to delivery
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

_LATENCY_BUCKETS_MS: tuple[float, ...] = (
    50, 100, 250, 500, 1_000, 2_000, 5_000, 10_000, 20_000, 30_000, 60_000, float("inf"),
)


@dataclass
class Histogram:
    """Fixed-bucket latency histogram with running stats."""

    name: str
    _buckets: list[int] = field(default_factory=lambda: [0] * len(_LATENCY_BUCKETS_MS))
    _count: int = 0
    _sum_ms: float = 0.0
    _max_ms: float = 0.0

    def record(self, value_ms: float) -> None:
        self._count += 1
        self._sum_ms += value_ms
        self._max_ms = max(self._max_ms, value_ms)
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            if value_ms <= bound:
                self._buckets[i] += 1
                break

    @property
    def count(self) -> int:
        return self._count

    def percentile(self, p: float) -> float:
        """Upper bound of the bucket holding the p-th percentile."""
        if self._count == 0:
            return 0.0
        target = math.ceil(p / 100 * self._count)
        cumulative = 0
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            cumulative += self._buckets[i]
            if cumulative >= target:
                return self._max_ms if math.isinf(bound) else min(bound, self._max_ms)
        return self._max_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self._count,
            "mean_ms": round(self._sum_ms / self._count, 2) if self._count else 0.0,
            "max_ms": round(self._max_ms, 2),
            "p50_ms": round(self.percentile(50), 2),
            "p95_ms": round(self.percentile(95), 2),
        }


class PipelineStats:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._counters: dict[str, int] = defaultdict(int)
        self._labeled: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms: dict[str, Histogram] = {
            "generation_latency_ms": Histogram("generation_latency_ms"),
            "end_to_end_latency_ms": Histogram("end_to_end_latency_ms"),
        }
        self._started_at = time.monotonic()

    async def inc(self, name: str, value: int = 1) -> None:
        async with self._lock:
            self._counters[name] += value

    async def inc_labeled(self, name: str, label: str, value: int = 1) -> None:
        async with self._lock:
            self._labeled[name][label] += value

    async def record(self, histogram: str, value_ms: float) -> None:
        async with self._lock:
            if histogram in self._histograms:
                self._histograms[histogram].record(value_ms)

    @asynccontextmanager
    async def timer(self, histogram: str) -> AsyncIterator[None]:
        t0 = time.monotonic()
        try:
            yield
        finally:
            await self.record(histogram, (time.monotonic() - t0) * 1000)

    # ── Semantic helpers ────────────────────────────────────────────────

    async def event_received(self) -> None:
        await self.inc("events_total")

    async def event_dropped(self) -> None:
        await self.inc("events_dropped_total")

    async def request_emitted(self, trigger_type: str) -> None:
        await self.inc_labeled("requests_total", trigger_type)

    async def outcome(self, outcome: str) -> None:
        await self.inc_labeled("outcomes_total", outcome)

    async def guardrail_regenerated(self) -> None:
        await self.inc("guardrail_regenerations_total")

    async def enrichment_fallback(self) -> None:
        await self.inc("enrichment_fallbacks_total")

    # ── Export ──────────────────────────────────────────────────────────

    async def snapshot(self) -> dict[str, Any]:
        async with self._lock:
            return {
                "uptime_seconds": round(time.monotonic() - self._started_at, 1),
                "counters": dict(self._counters),
                "labeled_counters": {k: dict(v) for k, v in self._labeled.items()},
                "histograms": {k: v.to_dict() for k, v in self._histograms.items()},
            }

    def reset_all(self) -> None:
        """Tests only."""
        self._counters.clear()
        self._labeled.clear()
        for name in list(self._histograms):
            self._histograms[name] = Histogram(name)


_stats: PipelineStats | None = None


def get_pipeline_stats() -> PipelineStats:
    global _stats
    if _stats is None:
        _stats = PipelineStats()
    return _stats
