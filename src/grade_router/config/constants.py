"""
Constants and default values for grade-router.

Defaults only: every threshold and size that drives a routing decision is
also exposed through Settings so deployments can tune it.
"""

from typing import Dict, Final

# Classifier thresholds (complexity score, 0-100)
DEFAULT_SIMPLE_THRESHOLD: Final[float] = 25.0
DEFAULT_MEDIUM_THRESHOLD: Final[float] = 60.0
FAST_PATH_MIN_CONFIDENCE: Final[float] = 70.0
FAST_PATH_MAX_CHOICES: Final[int] = 5

# Classifier factor weights
DETECTION_CONFIDENCE_WEIGHT: Final[float] = 0.4
NO_CROSS_VALIDATION_PENALTY: Final[float] = 10.0
BLANK_ANSWER_PENALTY: Final[float] = 20.0
FLAG_PENALTIES: Final[Dict[str, float]] = {
    "ambiguous_mark": 25.0,
    "multiple_marks": 30.0,
    "needs_review": 25.0,
}
ANSWER_FORMAT_PENALTIES: Final[Dict[str, float]] = {
    "multiple_choice": 0.0,
    "true_false": 0.0,
    "numeric": 15.0,
    "short_answer": 30.0,
    "long_form": 55.0,
    "unknown": 20.0,
}
SHORT_ANSWER_MAX_WORDS: Final[int] = 12

# Composer
DEFAULT_MIN_ISOLATION_SCORE: Final[float] = 0.6
DEFAULT_MIN_SKILL_ALIGNMENT: Final[float] = 0.8
DEFAULT_ISOLATION_DECAY: Final[float] = 0.15
GENERAL_DOMAIN: Final[str] = "general"

# Routing risk (confidence range, 0-100)
HIGH_RISK_SPREAD: Final[float] = 30.0
HIGH_RISK_MEAN: Final[float] = 60.0
MEDIUM_RISK_SPREAD: Final[float] = 15.0
MEDIUM_RISK_MEAN: Final[float] = 75.0
BATCH_COST_DISCOUNT: Final[float] = 0.8
BATCH_TIME_FACTOR: Final[float] = 0.6
SPLIT_PLAN_MIN_SIZE: Final[int] = 4

# Circuit breaker
BREAKER_FAILURE_THRESHOLD: Final[int] = 3
BREAKER_WINDOW_S: Final[float] = 300.0
BREAKER_RECOVERY_TIMEOUT_S: Final[float] = 90.0

# Progressive fallback
FALLBACK_QUALITY_THRESHOLD: Final[float] = 75.0
FALLBACK_SPLIT_QUALITY_THRESHOLD: Final[float] = 60.0
FALLBACK_WIDE_RANGE: Final[float] = 30.0
FALLBACK_SMALL_BATCH: Final[int] = 3
FALLBACK_MIN_ITEM_CONFIDENCE: Final[float] = 50.0
FALLBACK_MAX_ATTEMPTS: Final[int] = 3

# Response cache
CACHE_SCHEMA_VERSION: Final[str] = "v2"
CACHE_TTL_S: Final[float] = 7 * 24 * 3600.0
SKILL_CACHE_TTL_S: Final[float] = 14 * 24 * 3600.0
CACHE_CAPACITY: Final[int] = 5000
CACHE_EVICT_FRACTION: Final[float] = 0.25
CACHE_SWEEP_INTERVAL_S: Final[float] = 300.0

# Dispatch
REMOTE_STAGGER_S: Final[float] = 1.0
LOCAL_CALL_TIMEOUT_S: Final[float] = 30.0
REMOTE_CALL_TIMEOUT_S: Final[float] = 120.0

# Remote API
API_CONNECT_TIMEOUT: Final[float] = 30.0
API_READ_TIMEOUT: Final[float] = 120.0
MAX_TOKENS: Final[int] = 4096
CONNECTION_RETRIES: Final[int] = 2
TEMPERATURE: Final[float] = 0.0
RETRY_TEMPERATURE: Final[float] = 0.1
QUESTION_DELIMITER: Final[str] = "\n---END QUESTION---\n"
DEFAULT_TIER_MODELS: Final[Dict[str, str]] = {
    "cheap-remote": "gpt-4o-mini",
    "premium-remote": "gpt-4.1",
}
