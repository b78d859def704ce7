"""
Tests for routing decisions.
"""

import pytest

from grade_router.core.models import (
    Batch,
    BatchingDiscipline,
    BatchItem,
    ComplexityBucket,
    FallbackStrategy,
    RiskLevel,
    Tier,
)
from grade_router.routing.classifier import ComplexityClassifier
from grade_router.routing.router import BatchRouter, assess_risk

from helpers import make_request


def _batch(size, tier=Tier.CHEAP_REMOTE, confidence_range=(90.0, 95.0), bucket=ComplexityBucket.SIMPLE):
    requests = [make_request(i) for i in range(size)]
    analyses = ComplexityClassifier().classify_many(requests)
    return Batch(
        items=tuple(BatchItem(request=r, analysis=a) for r, a in zip(requests, analyses)),
        tier=tier,
        bucket=bucket,
        discipline=BatchingDiscipline.CONSERVATIVE,
        confidence_range=confidence_range,
    )


def test_assess_risk():
    assert assess_risk((20.0, 95.0), ComplexityBucket.SIMPLE) == RiskLevel.HIGH
    assert assess_risk((40.0, 50.0), ComplexityBucket.SIMPLE) == RiskLevel.HIGH
    assert assess_risk((70.0, 90.0), ComplexityBucket.SIMPLE) == RiskLevel.MEDIUM
    assert assess_risk((65.0, 70.0), ComplexityBucket.SIMPLE) == RiskLevel.MEDIUM
    assert assess_risk((90.0, 95.0), ComplexityBucket.SIMPLE) == RiskLevel.LOW
    assert assess_risk((90.0, 95.0), ComplexityBucket.COMPLEX) == RiskLevel.MEDIUM


def test_estimate_cost(tiers):
    router = BatchRouter(tiers)

    assert router.estimate_cost(Tier.LOCAL, 8) == 0.0
    assert router.estimate_cost(Tier.PREMIUM_REMOTE, 1) == pytest.approx(0.03)
    assert router.estimate_cost(Tier.PREMIUM_REMOTE, 3) == pytest.approx((0.02 + 0.03) * 0.8)


def test_estimate_time(tiers):
    router = BatchRouter(tiers)

    assert router.estimate_time_ms(Tier.CHEAP_REMOTE, 1) == 1500.0
    assert router.estimate_time_ms(Tier.CHEAP_REMOTE, 4) == pytest.approx(900.0)


def test_plan_strategy(tiers):
    router = BatchRouter(tiers)

    assert router.plan_strategy(_batch(1), RiskLevel.LOW) == FallbackStrategy.ESCALATE
    assert router.plan_strategy(_batch(1, tier=Tier.PREMIUM_REMOTE), RiskLevel.LOW) == FallbackStrategy.RETRY
    assert router.plan_strategy(_batch(3), RiskLevel.HIGH) == FallbackStrategy.INDIVIDUAL
    assert router.plan_strategy(_batch(5), RiskLevel.MEDIUM) == FallbackStrategy.SPLIT
    assert router.plan_strategy(_batch(3), RiskLevel.MEDIUM) == FallbackStrategy.RETRY
    assert router.plan_strategy(_batch(3), RiskLevel.LOW) == FallbackStrategy.RETRY


def test_route_is_frozen(tiers):
    router = BatchRouter(tiers)
    batch = _batch(2, confidence_range=(20.0, 95.0))

    decision = router.route(batch)

    assert decision.batch_id == batch.batch_id
    assert decision.tier == Tier.CHEAP_REMOTE
    assert decision.risk_level == RiskLevel.HIGH
    assert decision.fallback_strategy == FallbackStrategy.INDIVIDUAL
    with pytest.raises(Exception):
        decision.tier = Tier.LOCAL


def test_summarize(tiers):
    router = BatchRouter(tiers)
    decisions = router.route_all([_batch(2), _batch(1, confidence_range=(30.0, 30.0))])

    summary = BatchRouter.summarize(decisions)

    assert summary["batches"] == 2
    assert summary["risk"] == {"low": 1, "medium": 0, "high": 1}
    assert summary["estimated_cost"] == pytest.approx(sum(d.estimated_cost for d in decisions))
    assert summary["estimated_time_ms"] == 1500.0
