"""Pipeline stats counters and histograms."""

from __future__ import annotations

from speakforme.observability.stats import Histogram


class TestHistogram:
    def test_empty(self):
        assert Histogram("h").to_dict()["p50_ms"] == 0.0

    def test_percentiles_capped_at_max(self):
        h = Histogram("h")
        for value in (40, 80, 90, 700):
            h.record(value)
        snapshot = h.to_dict()
        assert snapshot["count"] == 4
        assert snapshot["p50_ms"] == 100
        assert snapshot["p95_ms"] == 700
        assert snapshot["max_ms"] == 700


class TestPipelineStats:
    async def test_counters(self, stats):
        await stats.event_received()
        await stats.event_received()
        await stats.event_dropped()
        await stats.request_emitted("thread")
        await stats.outcome("delivered")
        await stats.outcome("blocked")

        snapshot = await stats.snapshot()
        assert snapshot["counters"] == {"events_total": 2, "events_dropped_total": 1}
        assert snapshot["labeled_counters"]["requests_total"] == {"thread": 1}
        assert snapshot["labeled_counters"]["outcomes_total"] == {"delivered": 1, "blocked": 1}

    async def test_timer_records(self, stats):
        async with stats.timer("generation_latency_ms"):
            pass
        snapshot = await stats.snapshot()
        assert snapshot["histograms"]["generation_latency_ms"]["count"] == 1

    async def test_unknown_histogram_ignored(self, stats):
        await stats.record("nope", 10)
        assert "nope" not in (await stats.snapshot())["histograms"]

    async def test_reset(self, stats):
        await stats.event_received()
        stats.reset_all()
        assert (await stats.snapshot())["counters"] == {}
