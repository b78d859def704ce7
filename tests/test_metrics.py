"""
Tests for metrics collection and emission.
"""

import asyncio

from grade_router.core.interfaces import MetricsSink
from grade_router.core.models import MetricsEvent, MetricsEventKind, Tier
from grade_router.utils.metrics import MetricsCollector, MetricsEmitter

from helpers import RecordingSink


def _batch_event(tier, duration_ms, quality=100.0, size=4):
    return MetricsEvent(
        kind=MetricsEventKind.BATCH_COMPLETED,
        tier=tier,
        payload={"duration_ms": duration_ms, "quality": quality, "size": size},
    )


def test_collector_aggregates_batches():
    collector = MetricsCollector()
    for duration in (10.0, 20.0, 30.0, 40.0):
        collector.record(_batch_event(Tier.LOCAL, duration))
    collector.record(_batch_event(Tier.PREMIUM_REMOTE, 500.0, quality=50.0, size=1))

    snapshot = collector.snapshot()

    assert collector.count(MetricsEventKind.BATCH_COMPLETED) == 5
    assert snapshot["items_graded"] == 17
    assert snapshot["mean_batch_quality"] == {"local": 100.0, "premium-remote": 50.0}
    assert collector.get_percentiles("local")["p50"] == 30.0
    assert collector.get_percentiles("cheap-remote") == {"p50": 0, "p95": 0, "p99": 0}


def test_cache_hit_rate():
    collector = MetricsCollector()
    collector.record(MetricsEvent(kind=MetricsEventKind.CACHE_HIT))
    collector.record(MetricsEvent(kind=MetricsEventKind.CACHE_MISS))
    collector.record(MetricsEvent(kind=MetricsEventKind.CACHE_MISS))
    collector.record(MetricsEvent(kind=MetricsEventKind.CACHE_MISS))

    assert collector.get_cache_hit_rate() == 25.0


def test_collector_bounds_event_history():
    collector = MetricsCollector()
    collector.max_events = 5
    for _ in range(8):
        collector.record(MetricsEvent(kind=MetricsEventKind.CACHE_MISS))

    assert len(collector.events) == 5
    assert collector.count(MetricsEventKind.CACHE_MISS) == 8


def test_emitter_outside_loop_delivers_directly():
    sink = RecordingSink()
    MetricsEmitter(sink).emit(MetricsEvent(kind=MetricsEventKind.ITEM_FAILED))

    assert sink.kinds() == ["item_failed"]


def test_emitter_inside_loop_defers_delivery():
    sink = RecordingSink()
    emitter = MetricsEmitter(sink)

    async def run():
        emitter.emit(MetricsEvent(kind=MetricsEventKind.CIRCUIT_TRIPPED))
        before = list(sink.kinds())
        await asyncio.sleep(0)
        return before

    before = asyncio.run(run())

    assert before == []
    assert sink.kinds() == ["circuit_tripped"]


def test_emitter_swallows_sink_errors():
    class BrokenSink(MetricsSink):
        def record(self, event):
            raise RuntimeError("sink down")

    MetricsEmitter(BrokenSink()).emit(MetricsEvent(kind=MetricsEventKind.CACHE_HIT))
    MetricsEmitter(None).emit(MetricsEvent(kind=MetricsEventKind.CACHE_HIT))
