"""
Test doubles shared by the test modules.
"""

import asyncio
from typing import Callable, Dict, List, Optional, Tuple

from grade_router.core.interfaces import LocalBackend, MetricsSink, PersistentCacheStore, RemoteBackend
from grade_router.core.models import (
    AnswerFormat,
    CacheEntry,
    GradingRequest,
    GradingResult,
    MetricsEvent,
    Tier,
)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_request(index: int, group_id: str = "exam-1", **kwargs) -> GradingRequest:
    """Simple high-confidence multiple-choice request unless overridden."""
    fields = dict(
        group_id=group_id,
        item_index=index,
        question_text=f"Question {index}",
        candidate_answer="B",
        reference_answer="B",
        detection_confidence=95.0,
        answer_format=AnswerFormat.MULTIPLE_CHOICE,
        choices=("A", "B", "C", "D"),
        subject="math",
    )
    fields.update(kwargs)
    return GradingRequest(**fields)


def make_long_form(index: int, confidence: float, group_id: str = "exam-1", **kwargs) -> GradingRequest:
    fields = dict(
        group_id=group_id,
        item_index=index,
        question_text="Explain why the sky is blue.",
        candidate_answer="Because of Rayleigh scattering of sunlight by air molecules.",
        reference_answer=(
            "Shorter blue wavelengths are scattered more strongly by the molecules "
            "of the atmosphere than longer red wavelengths, so scattered blue light "
            "reaches the observer from every direction."
        ),
        detection_confidence=confidence,
        answer_format=AnswerFormat.LONG_FORM,
        subject="physics",
    )
    fields.update(kwargs)
    return GradingRequest(**fields)


class _ScriptedBackend:
    """
    Backend whose behaviour is scripted per call.

    ``script`` entries are consumed one per call: an exception instance is
    raised, a callable receives the requests and returns results, None
    falls through to the default confident answer.
    """

    def __init__(
        self,
        script: Optional[list] = None,
        confidence: float = 95.0,
        confidence_for: Optional[Callable[[GradingRequest, int], float]] = None,
        delay: float = 0.0
    ):
        self.script = list(script or [])
        self.confidence = confidence
        self.confidence_for = confidence_for
        self.delay = delay
        self.calls: List[Tuple[Optional[Tier], List[Tuple[str, int]]]] = []
        self.retry_flags: List[bool] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def item_dispatch_counts(self) -> Dict[Tuple[str, int], int]:
        counts: Dict[Tuple[str, int], int] = {}
        for _tier, keys in self.calls:
            for key in keys:
                counts[key] = counts.get(key, 0) + 1
        return counts

    async def _score(
        self,
        items: List[GradingRequest],
        tier: Optional[Tier],
        retry: bool = False
    ) -> List[GradingResult]:
        call_number = len(self.calls)
        self.calls.append((tier, [item.key for item in items]))
        self.retry_flags.append(retry)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            action = self.script.pop(0) if self.script else None
            if isinstance(action, BaseException):
                raise action
            if callable(action):
                return action(items)
            return [
                GradingResult(
                    group_id=item.group_id,
                    item_index=item.item_index,
                    score=item.max_points,
                    max_points=item.max_points,
                    is_correct=True,
                    confidence=(
                        self.confidence_for(item, call_number)
                        if self.confidence_for else self.confidence
                    ),
                    reasoning="scripted",
                )
                for item in items
            ]
        finally:
            self.in_flight -= 1


class FakeLocalBackend(_ScriptedBackend, LocalBackend):
    async def score(self, items, retry=False):
        return await self._score(items, Tier.LOCAL, retry)


class FakeRemoteBackend(_ScriptedBackend, RemoteBackend):
    async def score(self, items, tier_hint, retry=False):
        return await self._score(items, tier_hint, retry)


class RecordingSink(MetricsSink):
    def __init__(self):
        self.events: List[MetricsEvent] = []

    def record(self, event: MetricsEvent) -> None:
        self.events.append(event)

    def kinds(self) -> List[str]:
        return [event.kind.value for event in self.events]


class MemoryStore(PersistentCacheStore):
    def __init__(self, fail: bool = False):
        self.entries: Dict[str, CacheEntry] = {}
        self.fail = fail
        self.puts = 0

    async def get(self, fingerprint):
        if self.fail:
            raise OSError("store offline")
        return self.entries.get(fingerprint)

    async def put(self, fingerprint, entry):
        if self.fail:
            raise OSError("store offline")
        self.puts += 1
        self.entries[fingerprint] = entry


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)
