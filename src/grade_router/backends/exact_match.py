"""
Exact-match local scoring backend.

Grades closed answers (choice letters, true/false, numbers, short
phrases) by normalized comparison with high confidence. Open-ended
answers get a token-overlap estimate with low confidence, which leaves
them to the fallback controller and the remote tiers.
"""

import re
from typing import List, Optional

from grade_router.cache.fingerprint import normalize_text
from grade_router.core.interfaces import LocalBackend
from grade_router.core.models import AnswerFormat, GradingRequest, GradingResult

_TOKEN = re.compile(r"\w+", re.UNICODE)
_CHOICE_WRAPPER = re.compile(r"^[\(\[]?\s*([a-z0-9])\s*[\)\].]?$")

_TRUE_WORDS = frozenset({"true", "t", "yes", "vrai", "v"})
_FALSE_WORDS = frozenset({"false", "f", "no", "faux"})

CLOSED_CONFIDENCE = 95.0
NUMERIC_CONFIDENCE = 90.0
BLANK_CONFIDENCE = 90.0
OPEN_CONFIDENCE = 35.0


def _as_number(text: str) -> Optional[float]:
    cleaned = text.replace(",", ".").replace("%", "").strip()
    try:
        return float(cleaned)
    except ValueError:
        return None


def _canonical(text: str) -> str:
    normalized = normalize_text(text).rstrip(".")
    match = _CHOICE_WRAPPER.match(normalized)
    if match:
        return match.group(1)
    if normalized in _TRUE_WORDS:
        return "true"
    if normalized in _FALSE_WORDS:
        return "false"
    return normalized


class ExactMatchBackend(LocalBackend):
    """
    In-process scorer for the local tier.

    Args:
        max_closed_words: References up to this many words are compared exactly
        numeric_tolerance: Relative tolerance for numeric answers
    """

    def __init__(self, max_closed_words: int = 3, numeric_tolerance: float = 1e-6):
        self.max_closed_words = max_closed_words
        self.numeric_tolerance = numeric_tolerance

    async def score(self, items: List[GradingRequest], retry: bool = False) -> List[GradingResult]:
        # Exact matching is deterministic; a retry scores the same way
        return [self.score_one(request) for request in items]

    def score_one(self, request: GradingRequest) -> GradingResult:
        reference = request.reference_answer or ""
        if not reference.strip():
            return GradingResult.failure(request, "No reference answer to compare against")

        if not request.candidate_answer.strip():
            return self._result(request, False, BLANK_CONFIDENCE, "blank answer")

        expected = _as_number(reference)
        given = _as_number(request.candidate_answer)
        if expected is not None and given is not None:
            tolerance = self.numeric_tolerance * max(1.0, abs(expected))
            correct = abs(expected - given) <= tolerance
            return self._result(request, correct, NUMERIC_CONFIDENCE, "numeric comparison")

        closed = (
            (request.answer_format is not None and request.answer_format.is_fixed_choice)
            or len(reference.split()) <= self.max_closed_words
        )
        if closed:
            correct = _canonical(request.candidate_answer) == _canonical(reference)
            return self._result(request, correct, CLOSED_CONFIDENCE, "exact match")

        if request.answer_format == AnswerFormat.NUMERIC:
            return self._result(request, False, NUMERIC_CONFIDENCE, "answer is not a number")

        expected_tokens = set(_TOKEN.findall(normalize_text(reference)))
        given_tokens = set(_TOKEN.findall(normalize_text(request.candidate_answer)))
        union = expected_tokens | given_tokens
        overlap = len(expected_tokens & given_tokens) / len(union) if union else 0.0
        return GradingResult(
            group_id=request.group_id,
            item_index=request.item_index,
            score=round(request.max_points * overlap, 2),
            max_points=request.max_points,
            is_correct=None,
            confidence=OPEN_CONFIDENCE,
            reasoning=f"token overlap {overlap:.2f}",
        )

    @staticmethod
    def _result(request: GradingRequest, correct: bool, confidence: float, reasoning: str) -> GradingResult:
        return GradingResult(
            group_id=request.group_id,
            item_index=request.item_index,
            score=request.max_points if correct else 0.0,
            max_points=request.max_points,
            is_correct=correct,
            confidence=confidence,
            reasoning=reasoning,
        )
