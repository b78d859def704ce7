"""
Complexity classifier.

Scores one grading request for difficulty and ambiguity and recommends
the cheapest tier expected to grade it reliably. Pure and deterministic:
no I/O, no shared state, safe to call from any task.
"""

import re
from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger

from grade_router.config.settings import ClassifierConfig
from grade_router.core.models import (
    AnswerFormat,
    ComplexityAnalysis,
    ComplexityBucket,
    GradingRequest,
    Tier,
)


_CHOICE_LETTER = re.compile(r"^\(?[a-hA-H][\).]?$")
_NUMBER = re.compile(r"^[-+]?\d+([.,]\d+)?(\s*%)?$")
_TRUE_FALSE_WORDS = frozenset({"true", "false", "t", "f", "yes", "no", "vrai", "faux"})


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


class ComplexityClassifier:
    """
    Weighted complexity scoring with a fast path for fixed-choice items.

    Score factors (each adds to a 0-100 score, higher is harder):
    - inverse upstream detection confidence, weighted
    - a fixed penalty per quality flag
    - a structural penalty per answer format
    - a penalty when the answer was not cross-validated
    - a penalty for a blank candidate answer

    A request without a reference answer is scored 100 and sent to the
    strongest tier.
    """

    def __init__(self, config: Optional[ClassifierConfig] = None):
        self.config = config or ClassifierConfig()

    # ==================== Public API ====================

    def classify(self, request: GradingRequest) -> ComplexityAnalysis:
        """
        Classify one request.

        Args:
            request: Request to score

        Returns:
            ComplexityAnalysis attached to the request's key
        """
        if self._fast_path_eligible(request):
            return self._classify_fast(request)
        return self._classify_full(request)

    def classify_many(self, requests: Iterable[GradingRequest]) -> List[ComplexityAnalysis]:
        """Classify requests in order and log the resulting tier distribution."""
        analyses = [self.classify(request) for request in requests]
        if analyses:
            distribution = self.tier_distribution(analyses)
            fast = sum(1 for a in analyses if a.used_fast_path)
            logger.info(
                f"Classified {len(analyses)} requests: {distribution} "
                f"({fast} via fast path)"
            )
        return analyses

    @staticmethod
    def tier_distribution(analyses: Iterable[ComplexityAnalysis]) -> Dict[str, int]:
        """Count of recommended tiers, every tier present."""
        counts = Counter(a.recommended_tier for a in analyses)
        return {tier.value: counts.get(tier, 0) for tier in Tier.ordered()}

    def tier_for_score(self, score: float) -> Tier:
        if score <= self.config.simple_threshold:
            return Tier.LOCAL
        if score <= self.config.medium_threshold:
            return Tier.CHEAP_REMOTE
        return Tier.PREMIUM_REMOTE

    def bucket_for_score(self, score: float) -> ComplexityBucket:
        if score <= self.config.simple_threshold:
            return ComplexityBucket.SIMPLE
        if score <= self.config.medium_threshold:
            return ComplexityBucket.MEDIUM
        return ComplexityBucket.COMPLEX

    def decision_confidence(self, score: float) -> float:
        """
        Confidence in the tier decision: lowest on a threshold boundary,
        rising with distance from the nearest threshold.
        """
        distance = min(
            abs(score - self.config.simple_threshold),
            abs(score - self.config.medium_threshold),
        )
        return _clamp(50.0 + 2.0 * distance, 50.0, 100.0)

    def infer_answer_format(self, request: GradingRequest) -> AnswerFormat:
        """
        Infer the expected answer format when no hint is given.

        Args:
            request: Request whose reference answer is inspected

        Returns:
            Inferred AnswerFormat (UNKNOWN without a reference answer)
        """
        if request.answer_format is not None:
            return request.answer_format
        if request.choices:
            return AnswerFormat.MULTIPLE_CHOICE

        reference = (request.reference_answer or "").strip()
        if not reference:
            return AnswerFormat.UNKNOWN
        if _CHOICE_LETTER.match(reference):
            return AnswerFormat.MULTIPLE_CHOICE
        if reference.lower().rstrip(".") in _TRUE_FALSE_WORDS:
            return AnswerFormat.TRUE_FALSE
        if _NUMBER.match(reference):
            return AnswerFormat.NUMERIC
        if len(reference.split()) <= self.config.short_answer_max_words:
            return AnswerFormat.SHORT_ANSWER
        return AnswerFormat.LONG_FORM

    # ==================== Scoring ====================

    def _fast_path_eligible(self, request: GradingRequest) -> bool:
        hint = request.answer_format
        if not self.config.fast_path_enabled or hint is None or not hint.is_fixed_choice:
            return False
        if hint == AnswerFormat.MULTIPLE_CHOICE and not request.choices:
            return False
        return (
            len(request.choices) <= self.config.fast_path_max_choices
            and request.detection_confidence >= self.config.fast_path_min_confidence
            and not request.quality_flags
            and bool((request.reference_answer or "").strip())
            and bool(request.candidate_answer.strip())
        )

    def _base_score(self, request: GradingRequest, answer_format: AnswerFormat) -> float:
        """Detection, format and cross-validation factors shared by both paths."""
        score = (100.0 - request.detection_confidence) * self.config.detection_confidence_weight
        score += self.config.answer_format_penalties.get(answer_format.value, 0.0)
        if not request.cross_validated:
            score += self.config.no_cross_validation_penalty
        return score

    def _analysis(
        self,
        request: GradingRequest,
        score: float,
        answer_format: AnswerFormat,
        reasoning: Tuple[str, ...],
        used_fast_path: bool,
        tier: Optional[Tier] = None
    ) -> ComplexityAnalysis:
        score = round(_clamp(score), 2)
        return ComplexityAnalysis(
            request_key=request.key,
            complexity_score=score,
            recommended_tier=tier or self.tier_for_score(score),
            bucket=self.bucket_for_score(score),
            decision_confidence=round(self.decision_confidence(score), 2),
            answer_format=answer_format,
            reasoning=reasoning,
            used_fast_path=used_fast_path,
        )

    def _classify_fast(self, request: GradingRequest) -> ComplexityAnalysis:
        answer_format = request.answer_format
        score = self._base_score(request, answer_format)
        return self._analysis(
            request,
            score,
            answer_format,
            (f"fast path: {answer_format.value} with {len(request.choices)} choices",),
            used_fast_path=True,
        )

    def _classify_full(self, request: GradingRequest) -> ComplexityAnalysis:
        if not (request.reference_answer or "").strip():
            return self._analysis(
                request,
                100.0,
                self.infer_answer_format(request),
                ("missing reference answer: treated as maximum complexity",),
                used_fast_path=False,
                tier=Tier.strongest(),
            )

        answer_format = self.infer_answer_format(request)
        reasoning: List[str] = []

        score = self._base_score(request, answer_format)
        reasoning.append(f"detection confidence {request.detection_confidence:.0f}")
        reasoning.append(f"answer format {answer_format.value}")
        if not request.cross_validated:
            reasoning.append("no independent cross-validation")

        for flag in sorted(request.quality_flags, key=lambda f: f.value):
            penalty = self.config.flag_penalties.get(flag.value, 0.0)
            score += penalty
            reasoning.append(f"quality flag {flag.value} (+{penalty:.0f})")

        if not request.candidate_answer.strip():
            score += self.config.blank_answer_penalty
            reasoning.append("blank candidate answer")

        analysis = self._analysis(request, score, answer_format, tuple(reasoning), used_fast_path=False)
        logger.debug(
            f"Classified {request.group_id}#{request.item_index}: "
            f"score={analysis.complexity_score} tier={analysis.recommended_tier.value}"
        )
        return analysis
