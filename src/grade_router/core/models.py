"""
Core data models for grade-router.

This module defines the Pydantic models shared by every stage of the
routing pipeline. Request-side models are frozen: once a request, its
analysis or a batch is handed to the dispatcher nothing mutates it, and
every stage produces fresh result objects instead.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Tier(str, Enum):
    """Scoring backend tier, ordered by cost and strength."""
    LOCAL = "local"
    CHEAP_REMOTE = "cheap-remote"
    PREMIUM_REMOTE = "premium-remote"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    @property
    def is_remote(self) -> bool:
        return self is not Tier.LOCAL

    @classmethod
    def ordered(cls) -> List["Tier"]:
        """All tiers, cheapest first."""
        return list(_TIER_ORDER)

    @classmethod
    def strongest(cls) -> "Tier":
        return _TIER_ORDER[-1]

    def cheaper(self) -> "Tier":
        """The next cheaper tier, or this tier if it is already the cheapest."""
        return _TIER_ORDER[max(0, self.rank - 1)]

    def stronger(self) -> "Tier":
        """The next stronger tier, or this tier if it is already the strongest."""
        return _TIER_ORDER[min(len(_TIER_ORDER) - 1, self.rank + 1)]


_TIER_ORDER: Tuple[Tier, ...] = (Tier.LOCAL, Tier.CHEAP_REMOTE, Tier.PREMIUM_REMOTE)


class ComplexityBucket(str, Enum):
    """Coarse complexity class used for batch sizing and ordering."""
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"

    @property
    def rank(self) -> int:
        return {"simple": 0, "medium": 1, "complex": 2}[self.value]


class AnswerFormat(str, Enum):
    """Expected answer type of a question."""
    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    NUMERIC = "numeric"
    SHORT_ANSWER = "short_answer"
    LONG_FORM = "long_form"
    UNKNOWN = "unknown"

    @property
    def is_fixed_choice(self) -> bool:
        return self in (AnswerFormat.MULTIPLE_CHOICE, AnswerFormat.TRUE_FALSE)


class QualityFlag(str, Enum):
    """Quality problems reported by the upstream answer detection."""
    AMBIGUOUS_MARK = "ambiguous_mark"
    MULTIPLE_MARKS = "multiple_marks"
    NEEDS_REVIEW = "needs_review"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FallbackStrategy(str, Enum):
    """Recovery strategies applied when a batch result is not good enough."""
    RETRY = "retry"
    SPLIT = "split"
    INDIVIDUAL = "individual"
    ESCALATE = "escalate"


class BatchingDiscipline(str, Enum):
    """How requests of one tier are grouped into backend calls."""
    AGGRESSIVE = "aggressive"      # Large batches, grouped by complexity only
    CONSERVATIVE = "conservative"  # Small homogeneous batches with isolation checks


class ItemStatus(str, Enum):
    """Terminal status of one grading request."""
    GRADED = "graded"                  # Well-formed and confident
    LOW_CONFIDENCE = "low_confidence"  # Well-formed but below the confidence floor
    FAILED = "failed"                  # No well-formed result after every fallback level


def generate_id(prefix: str = "") -> str:
    """Generate a short unique identifier."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}{short}" if prefix else short


# ==================== Requests ====================

class GradingRequest(BaseModel):
    """
    One question of one submission to be scored.

    Identity is ``(group_id, item_index)``, e.g. exam submission id and
    question number.
    """
    model_config = ConfigDict(frozen=True)

    group_id: str = Field(..., min_length=1)
    item_index: int = Field(..., ge=0)

    question_text: str = ""
    candidate_answer: str = ""
    reference_answer: Optional[str] = None
    max_points: float = Field(default=1.0, gt=0)

    skill_tags: Tuple[str, ...] = ()
    subject: str = "general"

    # Upstream detection (OCR / mark recognition), 0-100
    detection_confidence: float = Field(default=100.0, ge=0, le=100)
    quality_flags: frozenset[QualityFlag] = frozenset()
    cross_validated: bool = False

    # Optional hints from the answer key
    answer_format: Optional[AnswerFormat] = None
    choices: Tuple[str, ...] = ()

    @field_validator("skill_tags", mode="before")
    @classmethod
    def strip_skill_tags(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple)):
            return tuple(str(tag).strip() for tag in v if str(tag).strip())
        return v

    @property
    def key(self) -> Tuple[str, int]:
        return (self.group_id, self.item_index)


class ComplexityAnalysis(BaseModel):
    """Classifier output attached to exactly one GradingRequest."""
    model_config = ConfigDict(frozen=True)

    request_key: Tuple[str, int]
    complexity_score: float = Field(..., ge=0, le=100)
    recommended_tier: Tier
    bucket: ComplexityBucket
    decision_confidence: float = Field(..., ge=0, le=100)
    answer_format: AnswerFormat
    reasoning: Tuple[str, ...] = ()
    used_fast_path: bool = False


# ==================== Results ====================

class GradingResult(BaseModel):
    """
    Score produced for one request by a backend, the cache, or the
    fallback controller when every level failed.
    """
    group_id: str
    item_index: int
    status: ItemStatus = ItemStatus.GRADED

    score: Optional[float] = None
    max_points: float = 1.0
    is_correct: Optional[bool] = None
    confidence: float = Field(default=0.0, ge=0, le=100)
    reasoning: str = ""

    tier: Optional[Tier] = None
    from_cache: bool = False
    error: Optional[str] = None
    attempts: int = 1

    @property
    def key(self) -> Tuple[str, int]:
        return (self.group_id, self.item_index)

    @property
    def is_well_formed(self) -> bool:
        """A usable score with no error attached."""
        return (
            self.status != ItemStatus.FAILED
            and self.error is None
            and self.score is not None
            and 0 <= self.score <= self.max_points
        )

    def meets_confidence(self, min_confidence: float) -> bool:
        return self.is_well_formed and self.confidence >= min_confidence

    @classmethod
    def failure(
        cls,
        request: GradingRequest,
        error: str,
        tier: Optional[Tier] = None,
        attempts: int = 1
    ) -> "GradingResult":
        """Build the terminal failure result for a request."""
        return cls(
            group_id=request.group_id,
            item_index=request.item_index,
            status=ItemStatus.FAILED,
            max_points=request.max_points,
            tier=tier,
            error=error,
            attempts=attempts,
        )


# ==================== Batching ====================

class BatchItem(BaseModel):
    """A request paired with its complexity analysis."""
    model_config = ConfigDict(frozen=True)

    request: GradingRequest
    analysis: ComplexityAnalysis


class Batch(BaseModel):
    """
    Ephemeral group of requests sent to one tier in one backend call.

    Created by the composer, consumed once by the dispatcher.
    """
    model_config = ConfigDict(frozen=True)

    batch_id: str = Field(default_factory=lambda: generate_id("batch_"))
    items: Tuple[BatchItem, ...] = Field(..., min_length=1)
    tier: Tier
    bucket: ComplexityBucket
    discipline: BatchingDiscipline
    confidence_range: Tuple[float, float] = (100.0, 100.0)
    priority: float = 0.0
    isolation_score: float = 1.0
    skill_alignment: float = 1.0

    @property
    def size(self) -> int:
        return len(self.items)

    @property
    def requests(self) -> List[GradingRequest]:
        return [item.request for item in self.items]

    @property
    def analyses(self) -> List[ComplexityAnalysis]:
        return [item.analysis for item in self.items]

    @property
    def confidence_spread(self) -> float:
        low, high = self.confidence_range
        return high - low


class RoutingDecision(BaseModel):
    """Routing plan for one batch, fixed before dispatch."""
    model_config = ConfigDict(frozen=True)

    batch_id: str
    tier: Tier
    estimated_cost: float
    estimated_time_ms: float
    fallback_strategy: FallbackStrategy
    risk_level: RiskLevel


# ==================== Caching ====================

class CacheEntry(BaseModel):
    """A cached grading result keyed by request fingerprint."""
    fingerprint: str
    result: GradingResult
    backend_tier: Optional[Tier] = None
    cached_at: float = Field(default_factory=time.time)
    expires_at: float
    schema_version: str

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


# ==================== Fallback and outcomes ====================

class FallbackRecord(BaseModel):
    """Accounting record of one progressive fallback execution."""
    batch_id: str
    strategies: List[FallbackStrategy] = Field(default_factory=list)
    final_strategy: Optional[FallbackStrategy] = None
    initial_quality: float = 0.0
    final_quality: float = 0.0
    cost_multiplier: float = 1.0
    attempts: int = 0
    dispatch_count: int = 0
    success: bool = False

    @property
    def quality_delta(self) -> float:
        return self.final_quality - self.initial_quality


class BatchOutcome(BaseModel):
    """Everything the pipeline learned while processing one batch."""
    batch: Batch
    decision: RoutingDecision
    results: List[GradingResult]
    quality: float
    fallback: Optional[FallbackRecord] = None
    errors: List[str] = Field(default_factory=list)
    availability_failure: bool = False
    duration_ms: float = 0.0


class GroupGradingResult(BaseModel):
    """Best-effort result set for one group of requests, in request order."""
    group_id: str
    results: List[GradingResult]
    outcomes: List[BatchOutcome] = Field(default_factory=list)
    cache_hits: int = 0
    cache_misses: int = 0
    tier_distribution: Dict[str, int] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def failed_items(self) -> List[GradingResult]:
        return [r for r in self.results if r.status == ItemStatus.FAILED]

    @property
    def graded_count(self) -> int:
        return sum(1 for r in self.results if r.status == ItemStatus.GRADED)

    @property
    def fallback_count(self) -> int:
        return sum(1 for o in self.outcomes if o.fallback is not None)

    @property
    def fallback_records(self) -> List[FallbackRecord]:
        return [o.fallback for o in self.outcomes if o.fallback is not None]


# ==================== Metrics ====================

class MetricsEventKind(str, Enum):
    BATCH_COMPLETED = "batch_completed"
    FALLBACK_TRIGGERED = "fallback_triggered"
    CIRCUIT_TRIPPED = "circuit_tripped"
    CIRCUIT_RECOVERED = "circuit_recovered"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    ITEM_FAILED = "item_failed"


class MetricsEvent(BaseModel):
    """Structured observability event handed to a MetricsSink."""
    kind: MetricsEventKind
    tier: Optional[Tier] = None
    group_id: Optional[str] = None
    batch_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)
