"""Configuration: settings, default constants and logging setup."""

from grade_router.config.settings import (
    BatchSizeLimits,
    BreakerConfig,
    CacheConfig,
    ClassifierConfig,
    ComposerConfig,
    DispatchConfig,
    FallbackConfig,
    LoggingConfig,
    Settings,
    TierConfig,
    TiersConfig,
    get_settings,
    reload_settings,
)

__all__ = [
    "BatchSizeLimits",
    "BreakerConfig",
    "CacheConfig",
    "ClassifierConfig",
    "ComposerConfig",
    "DispatchConfig",
    "FallbackConfig",
    "LoggingConfig",
    "Settings",
    "TierConfig",
    "TiersConfig",
    "get_settings",
    "reload_settings",
]
