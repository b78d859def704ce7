"""Stable request fingerprints for the response cache."""

import hashlib
import json
import re

from grade_router.core.models import GradingRequest

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str | None) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text.strip().lower())


def fingerprint(request: GradingRequest) -> str:
    """
    Content-addressed key of a grading request.

    Two requests share a fingerprint when their group, item index,
    normalized candidate answer, normalized reference answer and skill
    tags (order-insensitive) are equal.

    Args:
        request: Request to fingerprint

    Returns:
        Hex SHA-256 digest
    """
    payload = json.dumps(
        [
            request.group_id,
            request.item_index,
            normalize_text(request.candidate_answer),
            normalize_text(request.reference_answer),
            sorted(normalize_text(tag) for tag in request.skill_tags),
        ],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
