"""
grade-router - cost-aware routing of exam grading requests.

Routes each grading request to the cheapest scoring backend able to
produce an acceptable result, batches requests per backend tier, and
recovers from low-quality or failed batches with a bounded progressive
fallback policy.
"""

from grade_router.core.models import (
    GradingRequest,
    GradingResult,
    GroupGradingResult,
    ItemStatus,
    Tier,
)
from grade_router.execution.orchestrator import GradingOrchestrator

__version__ = "0.1.0"

__all__ = [
    "GradingOrchestrator",
    "GradingRequest",
    "GradingResult",
    "GroupGradingResult",
    "ItemStatus",
    "Tier",
]
