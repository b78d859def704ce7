"""
Grading orchestrator.

Runs the whole pipeline for one group of requests (one exam submission):

    cache lookup -> classify misses -> compose batches -> route
    -> dispatch every batch concurrently (remote batches staggered)
    -> progressive fallback per batch -> store results -> merge in order

Every component is an explicit instance owned by the orchestrator; there
is no module-level state, so two orchestrators never share a cache, a
breaker or a concurrency slot.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from loguru import logger

from grade_router.cache.file_store import JsonFileCacheStore
from grade_router.cache.fingerprint import fingerprint
from grade_router.cache.response_cache import ResponseCache
from grade_router.config.settings import Settings, get_settings
from grade_router.core.exceptions import AllTiersUnavailableError, ConfigurationError
from grade_router.core.interfaces import LocalBackend, MetricsSink, PersistentCacheStore, RemoteBackend
from grade_router.core.models import (
    Batch,
    BatchOutcome,
    GradingRequest,
    GradingResult,
    GroupGradingResult,
    ItemStatus,
    MetricsEvent,
    MetricsEventKind,
    RoutingDecision,
    Tier,
)
from grade_router.execution.dispatcher import Dispatcher
from grade_router.execution.fallback import FallbackController, fallback_report
from grade_router.routing.classifier import ComplexityClassifier
from grade_router.routing.composer import BatchComposer
from grade_router.routing.router import BatchRouter
from grade_router.utils.circuit_breaker import CircuitBreakerRegistry, CircuitState
from grade_router.utils.metrics import MetricsCollector, MetricsEmitter

ProgressCallback = Callable[[str, Dict[str, Any]], Any]


class GradingOrchestrator:
    """
    Wire classifier, cache, composer, router, dispatcher and fallback.

    Args:
        local_backend: Scorer for the local tier
        remote_backend: Scorer for the remote tiers
        settings: Configuration (defaults to get_settings())
        persistent_store: Durable cache level; built from
            ``settings.cache.persistent_dir`` when omitted
        metrics_sink: Event receiver (defaults to a MetricsCollector)
        progress_callback: ``(event_type, data)``, sync or async
        clock: Monotonic clock for the circuit breakers
        wall_clock: Epoch clock for cache timestamps
        sleep: Awaitable sleep used for remote staggering and retry backoff

    Usage:
        async with GradingOrchestrator(local, remote) as orchestrator:
            result = await orchestrator.grade_group(requests)
    """

    def __init__(
        self,
        local_backend: Optional[LocalBackend] = None,
        remote_backend: Optional[RemoteBackend] = None,
        settings: Optional[Settings] = None,
        persistent_store: Optional[PersistentCacheStore] = None,
        metrics_sink: Optional[MetricsSink] = None,
        progress_callback: Optional[ProgressCallback] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        if local_backend is None and remote_backend is None:
            raise ConfigurationError("At least one scoring backend is required")

        self.settings = settings or get_settings()
        self.progress_callback = progress_callback
        self.sleep = sleep

        self.metrics = metrics_sink if metrics_sink is not None else MetricsCollector()
        self.emitter = MetricsEmitter(self.metrics)

        if persistent_store is None and self.settings.cache.persistent_dir:
            persistent_store = JsonFileCacheStore(self.settings.cache.persistent_dir)

        self.cache = ResponseCache(
            self.settings.cache,
            store=persistent_store,
            clock=wall_clock,
            emitter=self.emitter,
        )
        self.classifier = ComplexityClassifier(self.settings.classifier)
        self.composer = BatchComposer(self.settings.tiers, self.settings.composer)
        self.router = BatchRouter(self.settings.tiers)
        self.breakers = CircuitBreakerRegistry(
            self.settings.breaker,
            clock=clock,
            on_transition=self._on_breaker_transition,
        )
        self.dispatcher = Dispatcher(
            local_backend,
            remote_backend,
            self.settings.tiers,
            self.breakers,
            emitter=self.emitter,
        )
        self.fallback = FallbackController(
            self.dispatcher,
            self.router,
            self.settings.fallback,
            emitter=self.emitter,
            sleep=sleep,
        )

    async def __aenter__(self) -> "GradingOrchestrator":
        if self.settings.cache.enabled:
            self.cache.start_sweeper()
        return self

    async def __aexit__(self, *args) -> None:
        await self.cache.stop_sweeper()

    # ==================== Pipeline ====================

    async def grade_group(
        self,
        requests: Sequence[GradingRequest],
        group_id: Optional[str] = None
    ) -> GroupGradingResult:
        """
        Grade every request of one group.

        Args:
            requests: Requests of the group, in presentation order
            group_id: Group identifier (defaults to the first request's)

        Returns:
            GroupGradingResult with one result per request, in input order

        Raises:
            ValueError: If two requests share the same identity
            AllTiersUnavailableError: If nothing could be graded because
                every tier was circuit-broken or unreachable
        """
        start = time.perf_counter()
        requests = list(requests)
        group_id = group_id or (requests[0].group_id if requests else "")
        if not requests:
            return GroupGradingResult(group_id=group_id, results=[])

        keys = [request.key for request in requests]
        if len(set(keys)) != len(keys):
            raise ValueError(f"Duplicate request identities in group {group_id}")

        group_log = logger.bind(group_id=group_id)

        # 1. Cache
        cached: Dict[tuple, GradingResult] = {}
        misses: List[GradingRequest] = list(requests)
        if self.settings.cache.enabled:
            lookups = await asyncio.gather(*(self.cache.lookup_request(r) for r in requests))
            misses = []
            for request, (result, found) in zip(requests, lookups):
                if found:
                    cached[request.key] = result
                else:
                    misses.append(request)

        # 2-4. Classify, compose, route
        analyses = self.classifier.classify_many(misses)
        batches = self.composer.compose(misses, analyses)
        decisions = self.router.route_all(batches)
        group_log.info(
            f"Group {group_id}: {len(requests)} requests, {len(cached)} cache hits, "
            f"{len(batches)} batches {BatchRouter.summarize(decisions)}"
        )

        # 5. Dispatch with fallback, remote batches staggered
        tasks = []
        remote_index = 0
        for batch, decision in zip(batches, decisions):
            delay = 0.0
            if batch.tier.is_remote:
                delay = remote_index * self.settings.dispatch.remote_stagger_s
                remote_index += 1
            tasks.append(self._run_batch(group_id, batch, decision, delay))
        outcomes: List[BatchOutcome] = list(await asyncio.gather(*tasks))

        # 6. Merge in original order
        computed: Dict[tuple, GradingResult] = {}
        errors: List[str] = []
        for outcome in outcomes:
            errors.extend(outcome.errors)
            for result in outcome.results:
                computed[result.key] = result

        results = [cached[key] if key in cached else computed[key] for key in keys]

        if outcomes and not cached and all(o.availability_failure for o in outcomes):
            raise AllTiersUnavailableError(
                f"No tier could grade group {group_id}",
                {"errors": errors[:10], "breakers": self.breakers.snapshot()},
            )

        group_result = GroupGradingResult(
            group_id=group_id,
            results=results,
            outcomes=outcomes,
            cache_hits=len(cached),
            cache_misses=len(misses),
            tier_distribution=ComplexityClassifier.tier_distribution(analyses),
            errors=errors,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        group_log.info(
            f"Group {group_id} graded: {group_result.graded_count}/{len(results)} graded, "
            f"{len(group_result.failed_items)} failed, {group_result.fallback_count} fallbacks "
            f"in {group_result.duration_ms:.0f}ms"
        )
        return group_result

    async def _run_batch(
        self,
        group_id: str,
        batch: Batch,
        decision: RoutingDecision,
        delay: float
    ) -> BatchOutcome:
        if delay > 0:
            await self.sleep(delay)

        await self._notify_progress("batch_start", {
            "group_id": group_id,
            "batch_id": batch.batch_id,
            "tier": batch.tier.value,
            "size": batch.size,
        })

        outcome = await self.fallback.run(batch, decision)

        if self.settings.cache.enabled:
            for request, result in zip(batch.requests, outcome.results):
                if result.status == ItemStatus.GRADED:
                    await self.cache.store_request(request, result)

        self.emitter.emit(MetricsEvent(
            kind=MetricsEventKind.BATCH_COMPLETED,
            tier=batch.tier,
            group_id=group_id,
            batch_id=batch.batch_id,
            payload={
                "size": batch.size,
                "quality": outcome.quality,
                "duration_ms": outcome.duration_ms,
                "fallback": outcome.fallback is not None,
            },
        ))

        await self._notify_progress("batch_done", {
            "group_id": group_id,
            "batch_id": batch.batch_id,
            "tier": batch.tier.value,
            "quality": outcome.quality,
            "failed": sum(1 for r in outcome.results if r.status == ItemStatus.FAILED),
        })
        return outcome

    # ==================== Reporting ====================

    def fallback_report(self, result: GroupGradingResult) -> Dict:
        """Fallback accounting for one graded group."""
        return fallback_report(result.fallback_records)

    def snapshot(self) -> Dict:
        """Current cache, breaker and metrics state."""
        snapshot = {
            "cache": self.cache.stats().model_dump(),
            "breakers": self.breakers.snapshot(),
            "in_flight": {tier.value: self.dispatcher.in_flight(tier) for tier in Tier.ordered()},
        }
        if isinstance(self.metrics, MetricsCollector):
            snapshot["metrics"] = self.metrics.snapshot()
        return snapshot

    @staticmethod
    def fingerprint(request: GradingRequest) -> str:
        return fingerprint(request)

    # ==================== Internals ====================

    async def _notify_progress(self, event_type: str, data: Dict[str, Any]) -> None:
        """Notify progress callback."""
        if self.progress_callback:
            result = self.progress_callback(event_type, data)
            if asyncio.iscoroutine(result):
                await result

    def _on_breaker_transition(self, name: str, previous: CircuitState, current: CircuitState) -> None:
        if current == CircuitState.CLOSED:
            self.emitter.emit(MetricsEvent(
                kind=MetricsEventKind.CIRCUIT_RECOVERED,
                tier=Tier(name),
                payload={"from": previous.value},
            ))
