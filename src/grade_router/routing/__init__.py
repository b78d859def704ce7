"""Classification, batch composition and routing decisions."""

from grade_router.routing.classifier import ComplexityClassifier
from grade_router.routing.composer import BatchComposer
from grade_router.routing.router import BatchRouter, assess_risk

__all__ = ["BatchComposer", "BatchRouter", "ComplexityClassifier", "assess_risk"]
