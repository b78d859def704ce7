"""
Tests for the complexity classifier.
"""

import pytest

from grade_router.config.settings import ClassifierConfig
from grade_router.core.models import AnswerFormat, ComplexityBucket, QualityFlag, Tier
from grade_router.routing.classifier import ComplexityClassifier

from helpers import make_long_form, make_request


@pytest.fixture
def classifier():
    return ComplexityClassifier()


def test_simple_multiple_choice_goes_local(classifier):
    """A confident multiple-choice answer is cheap to grade."""
    analysis = classifier.classify(make_request(0))

    assert analysis.used_fast_path
    assert analysis.complexity_score == 12.0
    assert analysis.recommended_tier == Tier.LOCAL
    assert analysis.bucket == ComplexityBucket.SIMPLE
    assert analysis.request_key == ("exam-1", 0)


def test_long_form_goes_premium(classifier):
    analysis = classifier.classify(make_long_form(0, confidence=95))

    assert not analysis.used_fast_path
    assert analysis.complexity_score == 67.0
    assert analysis.recommended_tier == Tier.PREMIUM_REMOTE
    assert analysis.bucket == ComplexityBucket.COMPLEX


def test_numeric_answer_goes_cheap_remote(classifier):
    request = make_request(
        0,
        answer_format=None,
        choices=(),
        reference_answer="42",
        candidate_answer="41",
        detection_confidence=50,
    )

    analysis = classifier.classify(request)

    # 50 * 0.4 + 15 (numeric) + 10 (not cross-validated)
    assert analysis.answer_format == AnswerFormat.NUMERIC
    assert analysis.complexity_score == 45.0
    assert analysis.recommended_tier == Tier.CHEAP_REMOTE


def test_fast_path_matches_full_path():
    """The fast path is an optimisation and never changes the outcome."""
    fast = ComplexityClassifier()
    full = ComplexityClassifier(ClassifierConfig(fast_path_enabled=False))

    for confidence in (70, 80, 95, 100):
        for cross_validated in (False, True):
            request = make_request(0, detection_confidence=confidence, cross_validated=cross_validated)
            a = fast.classify(request)
            b = full.classify(request)

            assert a.used_fast_path and not b.used_fast_path
            assert a.complexity_score == b.complexity_score
            assert a.recommended_tier == b.recommended_tier
            assert a.bucket == b.bucket


def test_fast_path_rejects_flagged_or_uncertain_items(classifier):
    flagged = make_request(0, quality_flags=[QualityFlag.MULTIPLE_MARKS])
    uncertain = make_request(1, detection_confidence=60)
    blank = make_request(2, candidate_answer="  ")
    too_many_choices = make_request(3, choices=("A", "B", "C", "D", "E", "F"))
    no_choices = make_request(4, choices=())

    for request in (flagged, uncertain, blank, too_many_choices, no_choices):
        assert not classifier.classify(request).used_fast_path

    # True/false needs no choice list
    assert classifier.classify(
        make_request(5, answer_format=AnswerFormat.TRUE_FALSE, choices=(), reference_answer="true")
    ).used_fast_path


def test_quality_flags_raise_complexity(classifier):
    clean = classifier.classify(make_request(0, detection_confidence=60))
    flagged = classifier.classify(
        make_request(1, detection_confidence=60, quality_flags=[QualityFlag.AMBIGUOUS_MARK])
    )

    assert flagged.complexity_score == clean.complexity_score + 25.0
    assert flagged.recommended_tier == Tier.CHEAP_REMOTE
    assert any("ambiguous_mark" in line for line in flagged.reasoning)


def test_blank_answer_penalty(classifier):
    analysis = classifier.classify(make_request(0, candidate_answer=""))

    assert analysis.complexity_score == 32.0
    assert "blank candidate answer" in analysis.reasoning


def test_missing_reference_goes_to_strongest_tier(classifier):
    analysis = classifier.classify(make_request(0, reference_answer=None))

    assert analysis.complexity_score == 100.0
    assert analysis.recommended_tier == Tier.strongest()
    assert not analysis.used_fast_path


def test_score_is_clamped(classifier):
    request = make_long_form(
        0,
        confidence=0,
        candidate_answer="",
        quality_flags=[QualityFlag.AMBIGUOUS_MARK, QualityFlag.MULTIPLE_MARKS],
    )

    assert classifier.classify(request).complexity_score == 100.0


def test_classify_is_deterministic(classifier):
    request = make_long_form(0, confidence=40)

    assert classifier.classify(request) == classifier.classify(request)


def test_thresholds_are_inclusive(classifier):
    assert classifier.tier_for_score(25.0) == Tier.LOCAL
    assert classifier.tier_for_score(25.01) == Tier.CHEAP_REMOTE
    assert classifier.tier_for_score(60.0) == Tier.CHEAP_REMOTE
    assert classifier.tier_for_score(60.01) == Tier.PREMIUM_REMOTE


def test_decision_confidence_lowest_on_boundary(classifier):
    assert classifier.decision_confidence(25.0) == 50.0
    assert classifier.decision_confidence(60.0) == 50.0
    assert classifier.decision_confidence(0.0) > classifier.decision_confidence(20.0)
    assert classifier.decision_confidence(100.0) == 100.0


def test_infer_answer_format(classifier):
    def infer(reference):
        return classifier.infer_answer_format(
            make_request(0, answer_format=None, choices=(), reference_answer=reference)
        )

    assert infer("C") == AnswerFormat.MULTIPLE_CHOICE
    assert infer("(b)") == AnswerFormat.MULTIPLE_CHOICE
    assert infer("False") == AnswerFormat.TRUE_FALSE
    assert infer("3,14") == AnswerFormat.NUMERIC
    assert infer("the mitochondria") == AnswerFormat.SHORT_ANSWER
    assert infer(" ".join(["word"] * 20)) == AnswerFormat.LONG_FORM
    assert infer(None) == AnswerFormat.UNKNOWN


def test_classify_many_preserves_order(classifier):
    requests = [make_request(0), make_long_form(1, confidence=95), make_request(2)]

    analyses = classifier.classify_many(requests)

    assert [a.request_key for a in analyses] == [r.key for r in requests]
    assert classifier.tier_distribution(analyses) == {
        "local": 2,
        "cheap-remote": 0,
        "premium-remote": 1,
    }


def test_threshold_order_is_validated():
    with pytest.raises(ValueError):
        ClassifierConfig(simple_threshold=60, medium_threshold=40)
