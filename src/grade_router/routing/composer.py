"""
Batch composer.

Groups classified requests into per-tier batches. One composer serves
both batching disciplines; the tier's configuration selects which one
applies:

- aggressive: large batches grouped only by complexity bucket, for the
  local tier where a call has no monetary cost.
- conservative: small batches that are also homogeneous in subject,
  skill domain and answer format, accepted only when their isolation and
  skill-alignment scores clear the configured minimums. A rejected batch
  is split into single-item batches.
"""

from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger

from grade_router.config.constants import GENERAL_DOMAIN
from grade_router.config.settings import ComposerConfig, TiersConfig
from grade_router.core.models import (
    Batch,
    BatchingDiscipline,
    BatchItem,
    ComplexityAnalysis,
    ComplexityBucket,
    GradingRequest,
    Tier,
)


def skill_domain(request: GradingRequest) -> str:
    """Skill domain of a request: prefix of its first skill tag, or 'general'."""
    if not request.skill_tags:
        return GENERAL_DOMAIN
    first = sorted(tag.lower() for tag in request.skill_tags)[0]
    return first.split(":", 1)[0].split(".", 1)[0].strip() or GENERAL_DOMAIN


def skill_alignment(requests: Sequence[GradingRequest]) -> float:
    """
    How strongly the requests of a batch share skills (1.0 = identical).

    Computed as ``1 - (unique_skills - 1) / total_skill_mentions``; a batch
    without skill tags is fully aligned.
    """
    mentions = [tag.lower() for request in requests for tag in request.skill_tags]
    if not mentions:
        return 1.0
    return max(0.0, 1.0 - (len(set(mentions)) - 1) / len(mentions))


def confidence_range(items: Sequence[BatchItem]) -> Tuple[float, float]:
    confidences = [item.request.detection_confidence for item in items]
    return (min(confidences), max(confidences))


class BatchComposer:
    """Compose dispatch-ready batches from classified requests."""

    def __init__(self, tiers: Optional[TiersConfig] = None, config: Optional[ComposerConfig] = None):
        self.tiers = tiers or TiersConfig()
        self.config = config or ComposerConfig()

    def isolation_score(self, size: int, spread: float = 0.0) -> float:
        """
        Cross-item interference estimate for a remote batch.

        Decreases with batch size and with the batch's confidence spread.
        A single item scores 1.0 minus its (zero) spread penalty.
        """
        if size <= 1:
            return 1.0
        size_factor = 1.0 / (1.0 + self.config.isolation_decay * (size - 1))
        spread_factor = max(0.0, 1.0 - spread / self.config.confidence_spread_divisor)
        return size_factor * spread_factor

    def compose(
        self,
        requests: Sequence[GradingRequest],
        analyses: Sequence[ComplexityAnalysis]
    ) -> List[Batch]:
        """
        Group requests into batches.

        Args:
            requests: Requests to batch
            analyses: One analysis per request, same order

        Returns:
            Batches ordered by tier (cheapest first) then simple, medium,
            complex; request order is preserved within each batch

        Raises:
            ValueError: If requests and analyses do not pair up
        """
        if len(requests) != len(analyses):
            raise ValueError(
                f"{len(requests)} requests but {len(analyses)} analyses"
            )
        for request, analysis in zip(requests, analyses):
            if request.key != analysis.request_key:
                raise ValueError(
                    f"Analysis {analysis.request_key} does not belong to request {request.key}"
                )

        by_tier: Dict[Tier, List[BatchItem]] = OrderedDict()
        for request, analysis in zip(requests, analyses):
            by_tier.setdefault(analysis.recommended_tier, []).append(
                BatchItem(request=request, analysis=analysis)
            )

        batches: List[Batch] = []
        for tier in Tier.ordered():
            items = by_tier.get(tier)
            if not items:
                continue
            discipline = self.tiers.for_tier(tier).discipline
            if discipline == BatchingDiscipline.AGGRESSIVE:
                batches.extend(self._compose_aggressive(tier, items))
            else:
                batches.extend(self._compose_conservative(tier, items))

        batches.sort(key=lambda b: (b.tier.rank, b.bucket.rank))
        if batches:
            sizes = [b.size for b in batches]
            logger.info(
                f"Composed {len(batches)} batches for {len(requests)} requests "
                f"(sizes {sizes})"
            )
        return batches

    def build_batch(
        self,
        items: Sequence[BatchItem],
        tier: Tier,
        bucket: Optional[ComplexityBucket] = None,
        discipline: Optional[BatchingDiscipline] = None
    ) -> Batch:
        """Build one batch with its confidence range, priority and scores."""
        bucket = bucket or max((item.analysis.bucket for item in items), key=lambda b: b.rank)
        discipline = discipline or self.tiers.for_tier(tier).discipline
        low, high = confidence_range(items)
        mean_score = sum(item.analysis.complexity_score for item in items) / len(items)
        return Batch(
            items=tuple(items),
            tier=tier,
            bucket=bucket,
            discipline=discipline,
            confidence_range=(low, high),
            priority=round(100.0 - mean_score, 2),
            isolation_score=round(self.isolation_score(len(items), high - low), 4),
            skill_alignment=round(skill_alignment([item.request for item in items]), 4),
        )

    # ==================== Disciplines ====================

    def _chunks(self, items: List[BatchItem], size: int) -> List[List[BatchItem]]:
        return [items[i:i + size] for i in range(0, len(items), size)]

    def _compose_aggressive(self, tier: Tier, items: List[BatchItem]) -> List[Batch]:
        limits = self.tiers.for_tier(tier).max_batch_size
        batches = []
        for bucket in ComplexityBucket:
            bucket_items = [item for item in items if item.analysis.bucket == bucket]
            for chunk in self._chunks(bucket_items, limits.for_bucket(bucket)):
                batches.append(self.build_batch(chunk, tier, bucket, BatchingDiscipline.AGGRESSIVE))
        return batches

    def _compose_conservative(self, tier: Tier, items: List[BatchItem]) -> List[Batch]:
        limits = self.tiers.for_tier(tier).max_batch_size
        groups: Dict[tuple, List[BatchItem]] = OrderedDict()
        for item in items:
            key = (
                item.analysis.bucket,
                item.request.subject.lower(),
                skill_domain(item.request),
                item.analysis.answer_format,
            )
            groups.setdefault(key, []).append(item)

        batches = []
        for (bucket, subject, domain, _fmt), group in groups.items():
            for chunk in self._chunks(group, limits.for_bucket(bucket)):
                batch = self.build_batch(chunk, tier, bucket, BatchingDiscipline.CONSERVATIVE)
                if self._accepts(batch):
                    batches.append(batch)
                    continue

                logger.debug(
                    f"Splitting {tier.value} batch of {batch.size} ({subject}/{domain}): "
                    f"isolation={batch.isolation_score:.2f} alignment={batch.skill_alignment:.2f}"
                )
                batches.extend(
                    self.build_batch([item], tier, bucket, BatchingDiscipline.CONSERVATIVE)
                    for item in chunk
                )
        return batches

    def _accepts(self, batch: Batch) -> bool:
        if batch.size == 1:
            return True
        return (
            batch.isolation_score >= self.config.min_isolation_score
            and batch.skill_alignment >= self.config.min_skill_alignment
        )
