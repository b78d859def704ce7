"""
Shared fixtures for grade-router tests.
"""

import pytest

from grade_router.config.settings import (
    BreakerConfig,
    CacheConfig,
    DispatchConfig,
    Settings,
    TiersConfig,
)
from grade_router.utils.circuit_breaker import CircuitBreakerRegistry

from helpers import FakeLocalBackend, FakeRemoteBackend, ManualClock, RecordingSink


@pytest.fixture
def settings():
    """Default settings, isolated from the environment and without stagger delays."""
    return Settings(
        _env_file=None,
        dispatch=DispatchConfig(remote_stagger_s=0.0),
    )


@pytest.fixture
def tiers():
    return TiersConfig()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def breakers(clock):
    return CircuitBreakerRegistry(BreakerConfig(), clock=clock)


@pytest.fixture
def local_backend():
    return FakeLocalBackend()


@pytest.fixture
def remote_backend():
    return FakeRemoteBackend()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def cache_config():
    return CacheConfig(capacity=8, evict_fraction=0.25)
