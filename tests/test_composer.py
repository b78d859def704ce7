"""
Tests for batch composition.
"""

import pytest

from grade_router.config.settings import ComposerConfig
from grade_router.core.models import BatchingDiscipline, BatchItem, ComplexityBucket, Tier
from grade_router.routing.classifier import ComplexityClassifier
from grade_router.routing.composer import BatchComposer, skill_alignment, skill_domain

from helpers import make_long_form, make_request


@pytest.fixture
def composer(tiers):
    return BatchComposer(tiers)


def _compose(composer, requests):
    analyses = ComplexityClassifier().classify_many(requests)
    return composer.compose(requests, analyses)


def test_aggressive_local_batches(composer):
    """Ten simple local items fit in one batch of eight and one of two."""
    batches = _compose(composer, [make_request(i) for i in range(10)])

    assert [b.size for b in batches] == [8, 2]
    assert all(b.tier == Tier.LOCAL for b in batches)
    assert all(b.discipline == BatchingDiscipline.AGGRESSIVE for b in batches)
    assert [r.item_index for r in batches[0].requests] == list(range(8))


def test_every_request_in_exactly_one_batch(composer):
    requests = (
        [make_request(i) for i in range(5)]
        + [make_long_form(i, confidence=90) for i in range(5, 9)]
        + [make_request(i, detection_confidence=40) for i in range(9, 12)]
    )

    batches = _compose(composer, requests)
    keys = [r.key for b in batches for r in b.requests]

    assert sorted(keys) == sorted(r.key for r in requests)
    assert len(keys) == len(set(keys))


def test_batch_size_limits_respected(composer, tiers):
    requests = [make_long_form(i, confidence=95) for i in range(7)]

    batches = _compose(composer, requests)

    limit = tiers.premium_remote.max_batch_size.complex
    assert all(b.size <= limit for b in batches)
    assert all(b.tier == Tier.PREMIUM_REMOTE for b in batches)


def test_wide_confidence_range_is_split(composer):
    """Three long-form items spanning 20-95 fail the isolation check."""
    requests = [
        make_long_form(0, confidence=20),
        make_long_form(1, confidence=60),
        make_long_form(2, confidence=95),
    ]

    batches = _compose(composer, requests)

    assert [b.size for b in batches] == [1, 1, 1]
    assert all(b.discipline == BatchingDiscipline.CONSERVATIVE for b in batches)


def test_narrow_confidence_range_stays_batched(composer):
    requests = [make_long_form(i, confidence=95) for i in range(3)]

    batches = _compose(composer, requests)

    assert [b.size for b in batches] == [3]
    assert batches[0].isolation_score >= 0.6


def test_conservative_groups_by_subject(composer):
    requests = [
        make_long_form(0, confidence=95),
        make_long_form(1, confidence=95, subject="history"),
        make_long_form(2, confidence=95),
    ]

    batches = _compose(composer, requests)

    assert sorted(b.size for b in batches) == [1, 2]
    for batch in batches:
        assert len({r.subject for r in batch.requests}) == 1


def test_misaligned_skills_are_split(tiers):
    composer = BatchComposer(tiers, ComposerConfig(min_skill_alignment=0.9))
    requests = [
        make_long_form(0, confidence=95, skill_tags=["optics:scattering"]),
        make_long_form(1, confidence=95, skill_tags=["optics:lenses"]),
    ]

    batches = _compose(composer, requests)

    assert [b.size for b in batches] == [1, 1]


def test_batches_ordered_by_tier_then_bucket(composer):
    requests = [
        make_long_form(0, confidence=95),
        make_request(1, detection_confidence=40),
        make_request(2),
    ]

    batches = _compose(composer, requests)

    order = [(b.tier.rank, b.bucket.rank) for b in batches]
    assert order == sorted(order)
    assert batches[0].tier == Tier.LOCAL
    assert batches[-1].tier == Tier.PREMIUM_REMOTE


def test_compose_rejects_mismatched_analyses(composer):
    requests = [make_request(0), make_request(1)]
    analyses = ComplexityClassifier().classify_many(requests)

    with pytest.raises(ValueError):
        composer.compose(requests, analyses[:1])
    with pytest.raises(ValueError):
        composer.compose(requests, list(reversed(analyses)))


def test_compose_empty(composer):
    assert composer.compose([], []) == []


def test_isolation_score(composer):
    assert composer.isolation_score(1) == 1.0
    assert composer.isolation_score(2) > composer.isolation_score(4)
    assert composer.isolation_score(3, spread=0) > composer.isolation_score(3, spread=75)


def test_skill_helpers():
    tagged = make_request(0, skill_tags=["Algebra:linear", "algebra:quadratic"])
    untagged = make_request(1)

    assert skill_domain(tagged) == "algebra"
    assert skill_domain(untagged) == "general"
    assert skill_alignment([untagged]) == 1.0
    assert skill_alignment([tagged, tagged]) == pytest.approx(0.75)


def test_build_batch_priority_and_range(composer):
    requests = [make_request(0, detection_confidence=80), make_request(1, detection_confidence=90)]
    analyses = ComplexityClassifier().classify_many(requests)

    batch = composer.build_batch(
        [BatchItem(request=r, analysis=a) for r, a in zip(requests, analyses)],
        Tier.LOCAL,
    )

    assert batch.confidence_range == (80.0, 90.0)
    assert batch.bucket == ComplexityBucket.SIMPLE
    assert batch.priority == pytest.approx(100 - (18.0 + 14.0) / 2)
