"""
Circuit-breaker-gated dispatcher.

Executes one batch against the backend of its tier under a per-tier
concurrency cap and a per-call timeout. Remote tiers are gated by their
circuit breaker: while it is open the dispatcher fails fast without
calling the backend.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from loguru import logger

from grade_router.config.settings import TiersConfig
from grade_router.core.exceptions import (
    BackendError,
    BackendUnavailableError,
    CircuitOpenError,
    MalformedResultError,
    classify_backend_error,
)
from grade_router.core.interfaces import LocalBackend, RemoteBackend
from grade_router.core.models import (
    GradingRequest,
    GradingResult,
    ItemStatus,
    MetricsEvent,
    MetricsEventKind,
    Tier,
)
from grade_router.utils.circuit_breaker import CircuitBreakerRegistry
from grade_router.utils.metrics import MetricsEmitter


@dataclass
class TierSlots:
    """Concurrency slots of one tier, with in-flight accounting."""
    limit: int
    semaphore: asyncio.Semaphore
    loop: Optional[asyncio.AbstractEventLoop] = None
    in_flight: int = 0
    peak: int = 0
    calls: int = 0


class Dispatcher:
    """
    Execute batches against tier backends.

    Args:
        local_backend: Backend of the local tier
        remote_backend: Backend of both remote tiers
        tiers: Per-tier concurrency caps and call timeouts
        breakers: Per-tier circuit breakers
        emitter: Receives circuit events
    """

    def __init__(
        self,
        local_backend: Optional[LocalBackend],
        remote_backend: Optional[RemoteBackend],
        tiers: TiersConfig,
        breakers: CircuitBreakerRegistry,
        emitter: Optional[MetricsEmitter] = None
    ):
        self.local_backend = local_backend
        self.remote_backend = remote_backend
        self.tiers = tiers
        self.breakers = breakers
        self.emitter = emitter or MetricsEmitter()
        self._slots: Dict[Tier, TierSlots] = {}

    def _slots_for(self, tier: Tier) -> TierSlots:
        # A semaphore belongs to one event loop; a new loop gets fresh slots
        loop = asyncio.get_running_loop()
        slots = self._slots.get(tier)
        if slots is None:
            limit = self.tiers.for_tier(tier).max_concurrency
            slots = TierSlots(limit=limit, semaphore=asyncio.Semaphore(limit), loop=loop)
            self._slots[tier] = slots
        elif slots.loop is not loop:
            slots.semaphore = asyncio.Semaphore(slots.limit)
            slots.loop = loop
            slots.in_flight = 0
        return slots

    def in_flight(self, tier: Tier) -> int:
        slots = self._slots.get(tier)
        return slots.in_flight if slots else 0

    def peak_in_flight(self, tier: Tier) -> int:
        slots = self._slots.get(tier)
        return slots.peak if slots else 0

    def call_count(self, tier: Tier) -> int:
        slots = self._slots.get(tier)
        return slots.calls if slots else 0

    def is_available(self, tier: Tier) -> bool:
        """Whether a backend exists for the tier and its breaker is closed."""
        if tier.is_remote and self.remote_backend is None:
            return False
        if not tier.is_remote and self.local_backend is None:
            return False
        return self.breakers.is_available(tier)

    async def dispatch(
        self,
        requests: Sequence[GradingRequest],
        tier: Tier,
        batch_id: str = "",
        attempt: int = 1,
        retry: bool = False
    ) -> List[GradingResult]:
        """
        Score a batch at one tier.

        Args:
            requests: Batch items in order
            tier: Tier to execute on
            batch_id: Batch id for logging
            attempt: Attempt number, recorded on every result
            retry: Passed to the backend so it can adjust its strategy

        Returns:
            One result per request, in request order. Items the backend
            could not grade come back as FAILED results; the rest of the
            batch is unaffected.

        Raises:
            CircuitOpenError: Breaker open, no backend call was made
            RateLimitedError, BackendTimeoutError: The call failed and
                counted against the breaker
            BackendUnavailableError: Any other backend failure
            MalformedResultError: Backend output did not match the batch
        """
        requests = list(requests)
        backend = self.remote_backend if tier.is_remote else self.local_backend
        if backend is None:
            raise BackendUnavailableError(f"No backend configured for tier {tier.value}", {"tier": tier.value})

        breaker = self.breakers.for_tier(tier)
        if breaker is not None and not breaker.allow_request():
            raise CircuitOpenError(tier, breaker.retry_after())

        slots = self._slots_for(tier)
        async with slots.semaphore:
            # The breaker may have tripped while this batch waited for a slot
            if breaker is not None and not breaker.allow_request():
                raise CircuitOpenError(tier, breaker.retry_after())

            slots.in_flight += 1
            slots.peak = max(slots.peak, slots.in_flight)
            slots.calls += 1
            start = time.perf_counter()
            logger.debug(f"Dispatching {batch_id or 'batch'} ({len(requests)} items) to {tier.value}")
            try:
                raw = await asyncio.wait_for(
                    self._call(backend, requests, tier, retry),
                    timeout=self.tiers.for_tier(tier).call_timeout_s,
                )
            except Exception as e:
                error = classify_backend_error(e)
                self._record_failure(tier, error)
                logger.warning(
                    f"Dispatch of {batch_id or 'batch'} to {tier.value} failed: "
                    f"{type(error).__name__}: {error.message}"
                )
                if error is e:
                    raise
                raise error from e
            finally:
                slots.in_flight -= 1

        results = self._validate(requests, raw, tier, attempt)
        if breaker is not None:
            breaker.record_success()

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"{batch_id or 'batch'} done on {tier.value} in {elapsed_ms:.0f}ms")
        return results

    async def _call(
        self,
        backend,
        requests: List[GradingRequest],
        tier: Tier,
        retry: bool
    ) -> List[GradingResult]:
        if tier.is_remote:
            return await backend.score(requests, tier, retry=retry)
        return await backend.score(requests, retry=retry)

    def _record_failure(self, tier: Tier, error: BackendError) -> None:
        breaker = self.breakers.for_tier(tier)
        if breaker is None or not error.counts_toward_breaker:
            return
        if breaker.record_failure():
            self.emitter.emit(MetricsEvent(
                kind=MetricsEventKind.CIRCUIT_TRIPPED,
                tier=tier,
                payload={"error": type(error).__name__, "trip_count": breaker.trip_count},
            ))

    def _validate(
        self,
        requests: List[GradingRequest],
        raw: Sequence[GradingResult],
        tier: Tier,
        attempt: int
    ) -> List[GradingResult]:
        """
        Check identity and order of backend results.

        A wrong count or a result for a different request invalidates the
        batch; a bad score on one item only fails that item.
        """
        if raw is None or len(raw) != len(requests):
            got = 0 if raw is None else len(raw)
            raise MalformedResultError(
                f"Backend returned {got} results for {len(requests)} requests",
                {"tier": tier.value},
            )

        results = []
        for request, result in zip(requests, raw):
            if not isinstance(result, GradingResult) or result.key != request.key:
                raise MalformedResultError(
                    "Backend result does not match its request",
                    {"tier": tier.value, "expected": list(request.key)},
                )
            stamped = result.model_copy(update={
                "tier": tier,
                "attempts": attempt,
                "max_points": request.max_points,
                "from_cache": False,
            })
            if stamped.status != ItemStatus.FAILED and not stamped.is_well_formed:
                stamped = GradingResult.failure(
                    request,
                    result.error or f"Score {result.score} outside 0..{request.max_points}",
                    tier=tier,
                    attempts=attempt,
                )
            results.append(stamped)
        return results
