"""
Metrics collection for grade-router.

MetricsEmitter hands pipeline events to a MetricsSink without ever
blocking the pipeline. MetricsCollector is the in-memory sink used by
default: it aggregates event counts and per-tier batch latencies and
logs snapshots through loguru.
"""

import asyncio
import threading
from collections import defaultdict
from typing import Dict, List, Optional

from loguru import logger

from grade_router.core.interfaces import MetricsSink
from grade_router.core.models import MetricsEvent, MetricsEventKind


class MetricsCollector(MetricsSink):
    """
    Collect and aggregate pipeline metrics for observability.

    Thread-safe in-memory metrics storage. Metrics are logged on demand
    and reset with the instance.
    """

    def __init__(self):
        self.event_counts: Dict[str, int] = defaultdict(int)
        self.batch_latencies: Dict[str, List[float]] = defaultdict(list)
        self.batch_quality: Dict[str, List[float]] = defaultdict(list)
        self.items_graded: int = 0
        self.events: List[MetricsEvent] = []
        self.max_events: int = 1000

        # Thread lock for thread safety
        self._lock = threading.Lock()

    def record(self, event: MetricsEvent) -> None:
        """Record one pipeline event."""
        with self._lock:
            self.event_counts[event.kind.value] += 1
            self.events.append(event)
            if len(self.events) > self.max_events:
                del self.events[: len(self.events) - self.max_events]

            if event.kind == MetricsEventKind.BATCH_COMPLETED:
                tier = event.tier.value if event.tier else "unknown"
                if "duration_ms" in event.payload:
                    self.batch_latencies[tier].append(float(event.payload["duration_ms"]))
                if "quality" in event.payload:
                    self.batch_quality[tier].append(float(event.payload["quality"]))
                self.items_graded += int(event.payload.get("size", 0))

    def count(self, kind: MetricsEventKind) -> int:
        with self._lock:
            return self.event_counts.get(kind.value, 0)

    def get_percentiles(self, tier: Optional[str] = None) -> Dict[str, float]:
        """Calculate batch latency percentiles (p50, p95, p99)."""
        with self._lock:
            if tier is not None:
                latencies = list(self.batch_latencies.get(tier, []))
            else:
                latencies = [v for values in self.batch_latencies.values() for v in values]

        if not latencies:
            return {"p50": 0, "p95": 0, "p99": 0}

        sorted_latencies = sorted(latencies)
        count = len(sorted_latencies)
        return {
            "p50": sorted_latencies[int(count * 0.5)],
            "p95": sorted_latencies[min(count - 1, int(count * 0.95))],
            "p99": sorted_latencies[min(count - 1, int(count * 0.99))]
        }

    def get_cache_hit_rate(self) -> float:
        """Cache hit rate in percent over every recorded lookup."""
        with self._lock:
            hits = self.event_counts.get(MetricsEventKind.CACHE_HIT.value, 0)
            misses = self.event_counts.get(MetricsEventKind.CACHE_MISS.value, 0)
        total = hits + misses
        if total == 0:
            return 0.0
        return (hits / total) * 100

    def snapshot(self) -> Dict:
        """Metrics summary as a plain dict."""
        with self._lock:
            tiers = sorted(self.batch_latencies)
            quality = {
                tier: round(sum(values) / len(values), 2)
                for tier, values in self.batch_quality.items() if values
            }
            counts = dict(self.event_counts)
            items = self.items_graded

        return {
            "event_counts": counts,
            "items_graded": items,
            "cache_hit_rate": round(self.get_cache_hit_rate(), 2),
            "latency_percentiles": {tier: self.get_percentiles(tier) for tier in tiers},
            "mean_batch_quality": quality,
        }

    def log_metrics(self) -> Dict:
        """Log all metrics as structured JSON."""
        metrics = self.snapshot()
        logger.bind(metrics=metrics).info("Metrics snapshot")
        return metrics


class MetricsEmitter:
    """
    Non-blocking front for a MetricsSink.

    Inside a running event loop delivery is deferred with
    ``loop.call_soon``; outside one the sink is called directly. Sink
    exceptions are logged and dropped.
    """

    def __init__(self, sink: Optional[MetricsSink] = None):
        self.sink = sink

    def emit(self, event: MetricsEvent) -> None:
        if self.sink is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deliver(event)
            return
        loop.call_soon(self._deliver, event)

    def _deliver(self, event: MetricsEvent) -> None:
        try:
            self.sink.record(event)
        except Exception as e:
            logger.warning(f"Metrics sink failed on {event.kind.value}: {e}")
