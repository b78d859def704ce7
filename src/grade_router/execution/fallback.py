"""
Progressive fallback controller.

After a batch is dispatched its quality is the share of items with a
well-formed result at or above the per-item confidence floor. Below the
quality threshold the controller escalates through fallback levels:

    level 1   split by complexity (very low quality, wide confidence range),
              escalate to the strongest tier (small batch or tier down),
              or retry once with the backend told it is a retry
    level 2   split the remaining items into single-item batches
    level N   (N = max_attempts) every remaining item alone at the
              strongest available tier, then stop whatever the outcome

Only items that are still below the floor carry over to the next level,
so each item is dispatched at most ``max_attempts + 1`` times. Steps that
stay on an item's tier move to the strongest available tier once that
tier's breaker is open.

The policy is the pure function ``decide_next_action``; FallbackController
runs it as an explicit state machine against the dispatcher.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from grade_router.config.settings import FallbackConfig
from grade_router.core.exceptions import BackendError, ItemIrrecoverableError
from grade_router.core.models import (
    Batch,
    BatchItem,
    BatchOutcome,
    ComplexityBucket,
    FallbackRecord,
    FallbackStrategy,
    GradingResult,
    ItemStatus,
    MetricsEvent,
    MetricsEventKind,
    RoutingDecision,
    Tier,
)
from grade_router.execution.dispatcher import Dispatcher
from grade_router.routing.router import BatchRouter
from grade_router.utils.metrics import MetricsEmitter
from grade_router.utils.retry import calculate_delay


class FallbackState(str, Enum):
    INITIAL = "initial"
    EVALUATED = "evaluated"
    RETRYING = "retrying"
    SPLITTING = "splitting"
    INDIVIDUAL = "individual"
    ESCALATED = "escalated"
    TERMINAL = "terminal"


STATE_FOR_STRATEGY: Dict[FallbackStrategy, FallbackState] = {
    FallbackStrategy.RETRY: FallbackState.RETRYING,
    FallbackStrategy.SPLIT: FallbackState.SPLITTING,
    FallbackStrategy.INDIVIDUAL: FallbackState.INDIVIDUAL,
    FallbackStrategy.ESCALATE: FallbackState.ESCALATED,
}

_ACTING_STATES = frozenset(STATE_FOR_STRATEGY.values())

ALLOWED_TRANSITIONS: Dict[FallbackState, frozenset] = {
    FallbackState.INITIAL: frozenset({FallbackState.EVALUATED}),
    FallbackState.EVALUATED: _ACTING_STATES | {FallbackState.TERMINAL},
    FallbackState.RETRYING: frozenset({FallbackState.EVALUATED}),
    FallbackState.SPLITTING: frozenset({FallbackState.EVALUATED}),
    FallbackState.INDIVIDUAL: frozenset({FallbackState.EVALUATED}),
    FallbackState.ESCALATED: frozenset({FallbackState.EVALUATED}),
    FallbackState.TERMINAL: frozenset(),
}


@dataclass(frozen=True)
class FallbackAction:
    """Output of the fallback policy for one evaluation."""
    strategy: Optional[FallbackStrategy]  # None: accept the current results
    terminal: bool
    reason: str


def quality_score(results: Sequence[GradingResult], min_item_confidence: float) -> float:
    """
    Percentage of results that are well-formed and confident enough.

    Args:
        results: Results of one batch
        min_item_confidence: Per-item confidence floor, 0-100

    Returns:
        Quality in 0-100 (0 for an empty batch)
    """
    if not results:
        return 0.0
    good = sum(1 for r in results if r.meets_confidence(min_item_confidence))
    return 100.0 * good / len(results)


def decide_next_action(
    quality: float,
    confidence_range: Tuple[float, float],
    batch_size: int,
    attempt: int,
    config: FallbackConfig,
    tier_available: bool = True
) -> FallbackAction:
    """
    Choose the next fallback step.

    Args:
        quality: Current batch quality, 0-100
        confidence_range: (min, max) detection confidence of the batch
        batch_size: Number of items still to recover
        attempt: Fallback level about to run (1-based)
        config: Fallback thresholds
        tier_available: False when the tier the items last ran on is
            circuit-broken or has no backend

    Returns:
        FallbackAction; ``strategy`` is None when the results are accepted
    """
    if quality >= config.quality_threshold:
        return FallbackAction(None, True, f"quality {quality:.0f} meets threshold")
    if attempt > config.max_attempts:
        return FallbackAction(None, True, "attempts exhausted")
    if attempt == config.max_attempts:
        return FallbackAction(
            FallbackStrategy.INDIVIDUAL, True,
            "final attempt: each item alone at the strongest tier"
        )

    if attempt == 1:
        width = confidence_range[1] - confidence_range[0]
        if (
            quality < config.split_quality_threshold
            and width >= config.wide_range_threshold
            and batch_size > 1
        ):
            return FallbackAction(
                FallbackStrategy.SPLIT, False,
                f"quality {quality:.0f} with confidence range width {width:.0f}"
            )
        if not tier_available:
            return FallbackAction(
                FallbackStrategy.ESCALATE, False,
                "tier unavailable: escalate to the strongest available tier"
            )
        if batch_size <= config.small_batch_size:
            return FallbackAction(
                FallbackStrategy.ESCALATE, False,
                f"small batch of {batch_size} below quality threshold"
            )
        return FallbackAction(FallbackStrategy.RETRY, False, "retry once at the same tier")

    if attempt == 2:
        return FallbackAction(FallbackStrategy.SPLIT, False, "split into single-item batches")

    return FallbackAction(FallbackStrategy.ESCALATE, False, "single items one tier stronger")


def _result_rank(result: GradingResult, min_item_confidence: float) -> tuple:
    return (
        result.meets_confidence(min_item_confidence),
        result.is_well_formed,
        result.confidence,
    )


@dataclass
class _Dispatch:
    """One sub-batch to send during a fallback level."""
    items: List[BatchItem]
    tier: Tier


@dataclass
class _Run:
    """Mutable state of one controller execution."""
    batch: Batch
    decision: RoutingDecision
    state: FallbackState = FallbackState.INITIAL
    results: Dict[Tuple[str, int], GradingResult] = field(default_factory=dict)
    item_tiers: Dict[Tuple[str, int], Tier] = field(default_factory=dict)
    dispatch_counts: Dict[Tuple[str, int], int] = field(default_factory=dict)
    strategies: List[FallbackStrategy] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    availability_errors: int = 0
    other_errors: int = 0
    dispatch_calls: int = 0
    spent_cost: float = 0.0

    def transition(self, target: FallbackState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid fallback transition {self.state.value} -> {target.value}")
        self.state = target


class FallbackController:
    """
    Run one batch through dispatch and progressive fallback.

    Args:
        dispatcher: Executes sub-batches
        router: Cost estimates for fallback accounting
        config: Fallback policy
        emitter: Receives fallback and item failure events
        sleep: Awaitable sleep, replaceable in tests
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        router: BatchRouter,
        config: Optional[FallbackConfig] = None,
        emitter: Optional[MetricsEmitter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.dispatcher = dispatcher
        self.router = router
        self.config = config or FallbackConfig()
        self.emitter = emitter or MetricsEmitter()
        self.sleep = sleep

    async def run(self, batch: Batch, decision: RoutingDecision) -> BatchOutcome:
        """
        Dispatch a batch and recover until accepted or exhausted.

        Args:
            batch: Composed batch
            decision: Its routing decision

        Returns:
            BatchOutcome with one terminal result per item, in batch order
        """
        start = time.perf_counter()
        run = _Run(batch=batch, decision=decision)
        for item in batch.items:
            run.item_tiers[item.request.key] = batch.tier

        await self._execute(run, [_Dispatch(list(batch.items), batch.tier)], level=0)
        run.transition(FallbackState.EVALUATED)
        initial_quality = self._quality(run)
        quality = initial_quality
        attempts = 0

        if self.config.enabled:
            attempt = 1
            while True:
                pending = self._pending(run)
                action = decide_next_action(
                    quality,
                    batch.confidence_range,
                    len(pending),
                    attempt,
                    self.config,
                    tier_available=all(
                        self.dispatcher.is_available(run.item_tiers[item.request.key])
                        for item in pending
                    ),
                )
                if action.strategy is None or not pending:
                    break

                if attempt == 1:
                    self.emitter.emit(MetricsEvent(
                        kind=MetricsEventKind.FALLBACK_TRIGGERED,
                        tier=batch.tier,
                        batch_id=batch.batch_id,
                        payload={"quality": quality, "strategy": action.strategy.value},
                    ))
                logger.info(
                    f"Fallback level {attempt} for {batch.batch_id}: {action.strategy.value} "
                    f"on {len(pending)} items ({action.reason})"
                )

                run.transition(STATE_FOR_STRATEGY[action.strategy])
                run.strategies.append(action.strategy)
                await self._apply(run, action.strategy, pending, attempt)
                run.transition(FallbackState.EVALUATED)
                quality = self._quality(run)
                attempts = attempt

                if action.terminal:
                    break
                attempt += 1

        run.transition(FallbackState.TERMINAL)
        results = self._finalize(run)
        final_quality = quality_score(results, self.config.min_item_confidence)

        record = None
        if run.strategies:
            record = FallbackRecord(
                batch_id=batch.batch_id,
                strategies=list(run.strategies),
                final_strategy=run.strategies[-1],
                initial_quality=round(initial_quality, 2),
                final_quality=round(final_quality, 2),
                cost_multiplier=round(self._cost_multiplier(run), 4),
                attempts=attempts,
                dispatch_count=run.dispatch_calls,
                success=final_quality >= self.config.quality_threshold,
            )
            logger.info(
                f"Fallback for {batch.batch_id} finished after {attempts} levels: "
                f"quality {initial_quality:.0f} -> {final_quality:.0f}, "
                f"cost x{record.cost_multiplier}"
            )

        failed = [r for r in results if r.status == ItemStatus.FAILED]
        for result in failed:
            self.emitter.emit(MetricsEvent(
                kind=MetricsEventKind.ITEM_FAILED,
                tier=result.tier,
                group_id=result.group_id,
                batch_id=batch.batch_id,
                payload={"item_index": result.item_index, "error": result.error},
            ))

        return BatchOutcome(
            batch=batch,
            decision=decision,
            results=results,
            quality=round(final_quality, 2),
            fallback=record,
            errors=list(run.errors),
            availability_failure=(
                len(failed) == len(results)
                and run.availability_errors > 0
                and run.other_errors == 0
            ),
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )

    # ==================== Levels ====================

    async def _apply(
        self,
        run: _Run,
        strategy: FallbackStrategy,
        pending: List[BatchItem],
        attempt: int
    ) -> None:
        strongest = self._strongest_available()

        if strategy == FallbackStrategy.RETRY:
            delay = calculate_delay(attempt - 1, self.config.retry_backoff_s)
            if delay > 0:
                await self.sleep(delay)
            plan = self._group_by_tier(run, pending)

        elif strategy == FallbackStrategy.ESCALATE and attempt == 1:
            plan = [_Dispatch(pending, strongest)]

        elif strategy == FallbackStrategy.ESCALATE:
            plan = [
                _Dispatch([item], self._available_at_most(run.item_tiers[item.request.key].stronger()))
                for item in pending
            ]

        elif strategy == FallbackStrategy.SPLIT and attempt == 1:
            simple = [item for item in pending if item.analysis.bucket == ComplexityBucket.SIMPLE]
            rest = [item for item in pending if item.analysis.bucket != ComplexityBucket.SIMPLE]
            plan = []
            if simple:
                plan.append(_Dispatch(simple, self._cheaper_available(run.batch.tier)))
            plan.extend(_Dispatch([item], strongest) for item in rest)

        elif strategy == FallbackStrategy.SPLIT:
            plan = [_Dispatch([item], self._reachable_tier(run, item)) for item in pending]

        else:
            plan = [_Dispatch([item], strongest) for item in pending]

        # Backends see the retry flag and may adjust their prompt
        await self._execute(run, plan, level=attempt, retry=strategy == FallbackStrategy.RETRY)

    async def _execute(self, run: _Run, plan: List[_Dispatch], level: int, retry: bool = False) -> None:
        """Dispatch every sub-batch of a level concurrently and merge results."""
        outcomes = await asyncio.gather(
            *(self._dispatch_one(run, sub, level, retry) for sub in plan)
        )
        for sub, results in zip(plan, outcomes):
            for item, result in zip(sub.items, results):
                key = item.request.key
                run.item_tiers[key] = sub.tier
                current = run.results.get(key)
                if current is None or (
                    _result_rank(result, self.config.min_item_confidence)
                    > _result_rank(current, self.config.min_item_confidence)
                ):
                    run.results[key] = result

    async def _dispatch_one(
        self,
        run: _Run,
        sub: _Dispatch,
        level: int,
        retry: bool = False
    ) -> List[GradingResult]:
        requests = [item.request for item in sub.items]
        for request in requests:
            run.dispatch_counts[request.key] = run.dispatch_counts.get(request.key, 0) + 1
        run.dispatch_calls += 1
        run.spent_cost += self.router.estimate_cost(sub.tier, len(requests))

        try:
            return await self.dispatcher.dispatch(
                requests, sub.tier, batch_id=run.batch.batch_id, attempt=level + 1, retry=retry
            )
        except BackendError as e:
            if e.availability_failure:
                run.availability_errors += 1
            else:
                run.other_errors += 1
            message = f"{type(e).__name__}: {e.message}"
            run.errors.append(f"level {level} at {sub.tier.value}: {message}")
            return [
                GradingResult.failure(request, message, tier=sub.tier, attempts=level + 1)
                for request in requests
            ]

    # ==================== Helpers ====================

    def _quality(self, run: _Run) -> float:
        return quality_score(list(run.results.values()), self.config.min_item_confidence)

    def _pending(self, run: _Run) -> List[BatchItem]:
        return [
            item for item in run.batch.items
            if not run.results[item.request.key].meets_confidence(self.config.min_item_confidence)
        ]

    def _group_by_tier(self, run: _Run, items: List[BatchItem]) -> List[_Dispatch]:
        groups: Dict[Tier, List[BatchItem]] = {}
        for item in items:
            groups.setdefault(self._reachable_tier(run, item), []).append(item)
        return [_Dispatch(group, tier) for tier, group in groups.items()]

    def _reachable_tier(self, run: _Run, item: BatchItem) -> Tier:
        """The tier the item last ran on, or the strongest available one if that tier is down."""
        tier = run.item_tiers[item.request.key]
        return tier if self.dispatcher.is_available(tier) else self._strongest_available()

    def _strongest_available(self) -> Tier:
        for tier in reversed(Tier.ordered()):
            if self.dispatcher.is_available(tier):
                return tier
        return Tier.strongest()

    def _available_at_most(self, tier: Tier) -> Tier:
        """The strongest available tier not above ``tier``."""
        for candidate in reversed(Tier.ordered()[: tier.rank + 1]):
            if self.dispatcher.is_available(candidate):
                return candidate
        return tier

    def _cheaper_available(self, tier: Tier) -> Tier:
        cheaper = tier.cheaper()
        if self.dispatcher.is_available(cheaper):
            return cheaper
        return tier if self.dispatcher.is_available(tier) else self._strongest_available()

    def _cost_multiplier(self, run: _Run) -> float:
        baseline = run.decision.estimated_cost
        if baseline > 0:
            return run.spent_cost / baseline
        return float(run.dispatch_calls)

    def _finalize(self, run: _Run) -> List[GradingResult]:
        """Assign terminal statuses, in batch order."""
        final = []
        for item in run.batch.items:
            key = item.request.key
            result = run.results[key]
            attempts = run.dispatch_counts.get(key, 1)
            if result.meets_confidence(self.config.min_item_confidence):
                final.append(result.model_copy(update={"status": ItemStatus.GRADED, "attempts": attempts}))
            elif result.is_well_formed:
                final.append(result.model_copy(update={"status": ItemStatus.LOW_CONFIDENCE, "attempts": attempts}))
            else:
                error = ItemIrrecoverableError(key[0], key[1], result.error)
                final.append(GradingResult.failure(
                    item.request, str(error), tier=result.tier, attempts=attempts
                ))
        return final


def fallback_report(records: Sequence[FallbackRecord]) -> Dict:
    """
    Aggregate fallback records for cost accounting.

    Args:
        records: Records of finished fallback runs

    Returns:
        Dict with success rate, average quality delta, total cost
        multiplier and how often each strategy was used
    """
    if not records:
        return {
            "total": 0,
            "success_rate": 0.0,
            "average_quality_delta": 0.0,
            "total_cost_multiplier": 0.0,
            "strategy_distribution": {s.value: 0 for s in FallbackStrategy},
        }

    distribution = {s.value: 0 for s in FallbackStrategy}
    for record in records:
        for strategy in record.strategies:
            distribution[strategy.value] += 1

    return {
        "total": len(records),
        "success_rate": round(100.0 * sum(1 for r in records if r.success) / len(records), 2),
        "average_quality_delta": round(sum(r.quality_delta for r in records) / len(records), 2),
        "total_cost_multiplier": round(sum(r.cost_multiplier for r in records), 4),
        "strategy_distribution": distribution,
    }
