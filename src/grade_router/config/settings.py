"""
Configuration management for grade-router.

All configuration comes from environment variables or a .env file.
Nested sections use a double underscore, for example
``GRADE_ROUTER_FALLBACK__QUALITY_THRESHOLD=80`` or
``GRADE_ROUTER_TIERS__CHEAP_REMOTE__MAX_CONCURRENCY=4``.
"""

from functools import lru_cache
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from grade_router.config import constants as C
from grade_router.core.models import BatchingDiscipline, ComplexityBucket, Tier


class ClassifierConfig(BaseModel):
    """Complexity classifier thresholds and factor weights."""

    simple_threshold: float = Field(default=C.DEFAULT_SIMPLE_THRESHOLD, ge=0, le=100)
    medium_threshold: float = Field(default=C.DEFAULT_MEDIUM_THRESHOLD, ge=0, le=100)
    fast_path_enabled: bool = True
    fast_path_min_confidence: float = Field(default=C.FAST_PATH_MIN_CONFIDENCE, ge=0, le=100)
    fast_path_max_choices: int = Field(default=C.FAST_PATH_MAX_CHOICES, ge=2)

    detection_confidence_weight: float = Field(default=C.DETECTION_CONFIDENCE_WEIGHT, ge=0)
    no_cross_validation_penalty: float = Field(default=C.NO_CROSS_VALIDATION_PENALTY, ge=0)
    blank_answer_penalty: float = Field(default=C.BLANK_ANSWER_PENALTY, ge=0)
    flag_penalties: Dict[str, float] = Field(default_factory=lambda: dict(C.FLAG_PENALTIES))
    answer_format_penalties: Dict[str, float] = Field(
        default_factory=lambda: dict(C.ANSWER_FORMAT_PENALTIES)
    )
    short_answer_max_words: int = Field(default=C.SHORT_ANSWER_MAX_WORDS, ge=1)

    @model_validator(mode='after')
    def validate_threshold_order(self):
        """The medium threshold must sit above the simple one."""
        if self.medium_threshold <= self.simple_threshold:
            raise ValueError(
                f"medium_threshold ({self.medium_threshold}) must be greater than "
                f"simple_threshold ({self.simple_threshold})"
            )
        return self


class BatchSizeLimits(BaseModel):
    """Maximum batch size per complexity bucket."""

    simple: int = Field(..., ge=1)
    medium: int = Field(..., ge=1)
    complex: int = Field(..., ge=1)

    def for_bucket(self, bucket: ComplexityBucket) -> int:
        return getattr(self, bucket.value)


class TierConfig(BaseModel):
    """Capacity, cost and batching policy of one backend tier."""

    max_concurrency: int = Field(..., ge=1)
    cost_per_call: float = Field(default=0.0, ge=0)
    cost_per_item: float = Field(default=0.0, ge=0)
    latency_ms: float = Field(default=1000.0, ge=0)
    call_timeout_s: float = Field(default=C.REMOTE_CALL_TIMEOUT_S, gt=0)
    max_batch_size: BatchSizeLimits
    discipline: BatchingDiscipline = BatchingDiscipline.CONSERVATIVE
    model: Optional[str] = None


class TiersConfig(BaseModel):
    """Per-tier configuration, one field per Tier."""

    local: TierConfig = Field(default_factory=lambda: TierConfig(
        max_concurrency=8,
        latency_ms=200.0,
        call_timeout_s=C.LOCAL_CALL_TIMEOUT_S,
        max_batch_size=BatchSizeLimits(simple=8, medium=6, complex=4),
        discipline=BatchingDiscipline.AGGRESSIVE,
    ))
    cheap_remote: TierConfig = Field(default_factory=lambda: TierConfig(
        max_concurrency=2,
        cost_per_call=0.0005,
        cost_per_item=0.0002,
        latency_ms=1500.0,
        max_batch_size=BatchSizeLimits(simple=4, medium=3, complex=2),
        model=C.DEFAULT_TIER_MODELS["cheap-remote"],
    ))
    premium_remote: TierConfig = Field(default_factory=lambda: TierConfig(
        max_concurrency=2,
        cost_per_call=0.02,
        cost_per_item=0.01,
        latency_ms=3000.0,
        max_batch_size=BatchSizeLimits(simple=4, medium=3, complex=3),
        model=C.DEFAULT_TIER_MODELS["premium-remote"],
    ))

    def for_tier(self, tier: Tier) -> TierConfig:
        return getattr(self, tier.value.replace("-", "_"))


class ComposerConfig(BaseModel):
    """Conservative batching acceptance checks."""

    min_isolation_score: float = Field(default=C.DEFAULT_MIN_ISOLATION_SCORE, ge=0, le=1)
    min_skill_alignment: float = Field(default=C.DEFAULT_MIN_SKILL_ALIGNMENT, ge=0, le=1)
    isolation_decay: float = Field(default=C.DEFAULT_ISOLATION_DECAY, ge=0)
    confidence_spread_divisor: float = Field(default=200.0, gt=0)


class BreakerConfig(BaseModel):
    """Circuit breaker policy, shared by every remote tier."""

    failure_threshold: int = Field(default=C.BREAKER_FAILURE_THRESHOLD, ge=1)
    window_s: float = Field(default=C.BREAKER_WINDOW_S, gt=0)
    recovery_timeout_s: float = Field(default=C.BREAKER_RECOVERY_TIMEOUT_S, gt=0)


class FallbackConfig(BaseModel):
    """Progressive fallback policy."""

    enabled: bool = True
    quality_threshold: float = Field(default=C.FALLBACK_QUALITY_THRESHOLD, ge=0, le=100)
    split_quality_threshold: float = Field(default=C.FALLBACK_SPLIT_QUALITY_THRESHOLD, ge=0, le=100)
    wide_range_threshold: float = Field(default=C.FALLBACK_WIDE_RANGE, ge=0, le=100)
    small_batch_size: int = Field(default=C.FALLBACK_SMALL_BATCH, ge=1)
    min_item_confidence: float = Field(default=C.FALLBACK_MIN_ITEM_CONFIDENCE, ge=0, le=100)
    max_attempts: int = Field(default=C.FALLBACK_MAX_ATTEMPTS, ge=1, le=10)
    retry_backoff_s: float = Field(default=0.0, ge=0)


class CacheConfig(BaseModel):
    """Response cache TTLs, bounds and optional persistence."""

    enabled: bool = True
    ttl_s: float = Field(default=C.CACHE_TTL_S, gt=0)
    skill_ttl_s: float = Field(default=C.SKILL_CACHE_TTL_S, gt=0)
    capacity: int = Field(default=C.CACHE_CAPACITY, ge=1)
    evict_fraction: float = Field(default=C.CACHE_EVICT_FRACTION, ge=0.2, le=0.3)
    sweep_interval_s: float = Field(default=C.CACHE_SWEEP_INTERVAL_S, gt=0)
    schema_version: str = C.CACHE_SCHEMA_VERSION
    persistent_dir: Optional[str] = None


class DispatchConfig(BaseModel):
    remote_stagger_s: float = Field(default=C.REMOTE_STAGGER_S, ge=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_file: Optional[str] = None
    serialize: bool = True

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is one loguru knows."""
        valid_levels = ['TRACE', 'DEBUG', 'INFO', 'SUCCESS', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"level must be one of: {', '.join(valid_levels)}")
        return v.upper()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GRADE_ROUTER_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    # Remote backend credentials
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None

    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    tiers: TiersConfig = Field(default_factory=TiersConfig)
    composer: ComposerConfig = Field(default_factory=ComposerConfig)
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reload_settings() -> Settings:
    """Reload settings from environment."""
    get_settings.cache_clear()
    return get_settings()
