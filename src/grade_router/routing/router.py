"""
Batch routing decisions.

Assigns each composed batch its cost and latency estimates, a risk level
and a planned fallback strategy. Decisions are computed before dispatch,
frozen, and used for cost accounting and reporting.
"""

from typing import Dict, Iterable, List, Optional

from loguru import logger

from grade_router.config import constants as C
from grade_router.config.settings import TiersConfig
from grade_router.core.models import (
    Batch,
    ComplexityBucket,
    FallbackStrategy,
    RiskLevel,
    RoutingDecision,
    Tier,
)


def assess_risk(confidence_range: tuple, bucket: ComplexityBucket) -> RiskLevel:
    """
    Risk level from a batch's confidence range and complexity bucket.

    Args:
        confidence_range: (min, max) detection confidence, 0-100
        bucket: Declared complexity bucket of the batch

    Returns:
        RiskLevel (a complex bucket is never low risk)
    """
    low, high = confidence_range
    spread = high - low
    mean = (low + high) / 2

    if spread > C.HIGH_RISK_SPREAD or mean < C.HIGH_RISK_MEAN:
        return RiskLevel.HIGH
    if spread > C.MEDIUM_RISK_SPREAD or mean < C.MEDIUM_RISK_MEAN:
        return RiskLevel.MEDIUM
    if bucket == ComplexityBucket.COMPLEX:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class BatchRouter:
    """Compute RoutingDecisions from tier cost and latency profiles."""

    def __init__(self, tiers: Optional[TiersConfig] = None):
        self.tiers = tiers or TiersConfig()

    def estimate_cost(self, tier: Tier, size: int) -> float:
        config = self.tiers.for_tier(tier)
        cost = config.cost_per_call + config.cost_per_item * size
        if size > 1:
            cost *= C.BATCH_COST_DISCOUNT
        return round(cost, 6)

    def estimate_time_ms(self, tier: Tier, size: int) -> float:
        latency = self.tiers.for_tier(tier).latency_ms
        return latency * C.BATCH_TIME_FACTOR if size > 1 else latency

    def plan_strategy(self, batch: Batch, risk: RiskLevel) -> FallbackStrategy:
        """Fallback strategy to prefer if this batch underperforms."""
        if batch.size == 1:
            return FallbackStrategy.RETRY if batch.tier == Tier.strongest() else FallbackStrategy.ESCALATE
        if risk == RiskLevel.HIGH:
            return FallbackStrategy.INDIVIDUAL
        if risk == RiskLevel.MEDIUM and batch.size > C.SPLIT_PLAN_MIN_SIZE:
            return FallbackStrategy.SPLIT
        return FallbackStrategy.RETRY

    def route(self, batch: Batch) -> RoutingDecision:
        """
        Assign a batch its routing decision.

        Args:
            batch: Composed batch

        Returns:
            Frozen RoutingDecision
        """
        risk = assess_risk(batch.confidence_range, batch.bucket)
        decision = RoutingDecision(
            batch_id=batch.batch_id,
            tier=batch.tier,
            estimated_cost=self.estimate_cost(batch.tier, batch.size),
            estimated_time_ms=self.estimate_time_ms(batch.tier, batch.size),
            fallback_strategy=self.plan_strategy(batch, risk),
            risk_level=risk,
        )
        logger.debug(
            f"Routed {batch.batch_id} ({batch.size} items) to {batch.tier.value}: "
            f"risk={risk.value} cost={decision.estimated_cost} plan={decision.fallback_strategy.value}"
        )
        return decision

    def route_all(self, batches: Iterable[Batch]) -> List[RoutingDecision]:
        return [self.route(batch) for batch in batches]

    @staticmethod
    def summarize(decisions: Iterable[RoutingDecision]) -> Dict:
        """Totals of a set of decisions, for logging and reports."""
        decisions = list(decisions)
        risk_counts = {level.value: 0 for level in RiskLevel}
        for decision in decisions:
            risk_counts[decision.risk_level.value] += 1
        return {
            "batches": len(decisions),
            "estimated_cost": round(sum(d.estimated_cost for d in decisions), 6),
            "estimated_time_ms": max((d.estimated_time_ms for d in decisions), default=0.0),
            "risk": risk_counts,
        }
