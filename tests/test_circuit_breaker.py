"""
Tests for the circuit breaker.
"""

from grade_router.config.settings import BreakerConfig
from grade_router.core.models import Tier
from grade_router.utils.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)

from helpers import ManualClock


def _breaker(clock, **kwargs):
    return CircuitBreaker(name="test", clock=clock, **kwargs)


def test_trips_after_threshold():
    """Three failures inside the window open the circuit."""
    clock = ManualClock()
    breaker = _breaker(clock)

    assert breaker.record_failure() is False
    assert breaker.record_failure() is False
    assert breaker.record_failure() is True

    assert breaker.state == CircuitState.OPEN
    assert not breaker.allow_request()
    assert breaker.trip_count == 1


def test_failures_outside_window_do_not_count():
    clock = ManualClock()
    breaker = _breaker(clock)

    breaker.record_failure()
    breaker.record_failure()
    clock.advance(301)
    breaker.record_failure()

    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 1


def test_success_clears_failures():
    clock = ManualClock()
    breaker = _breaker(clock)

    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()

    assert breaker.state == CircuitState.CLOSED


def test_recovers_after_timeout():
    clock = ManualClock()
    breaker = _breaker(clock)
    for _ in range(3):
        breaker.record_failure()

    clock.advance(60)
    assert breaker.is_open
    assert breaker.retry_after() == 30.0

    clock.advance(30)
    assert breaker.allow_request()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


def test_failures_while_open_are_ignored():
    clock = ManualClock()
    breaker = _breaker(clock)
    for _ in range(3):
        breaker.record_failure()

    assert breaker.record_failure() is False
    assert breaker.trip_count == 1


def test_transition_callback():
    clock = ManualClock()
    transitions = []
    breaker = _breaker(clock, on_transition=lambda name, prev, cur: transitions.append((name, prev, cur)))

    for _ in range(3):
        breaker.record_failure()
    clock.advance(90)
    breaker.allow_request()

    assert transitions == [
        ("test", CircuitState.CLOSED, CircuitState.OPEN),
        ("test", CircuitState.OPEN, CircuitState.CLOSED),
    ]


def test_reset():
    clock = ManualClock()
    breaker = _breaker(clock)
    for _ in range(3):
        breaker.record_failure()

    breaker.reset()

    assert breaker.allow_request()
    assert breaker.snapshot()["failure_count"] == 0


def test_registry_covers_remote_tiers_only():
    clock = ManualClock()
    registry = CircuitBreakerRegistry(BreakerConfig(), clock=clock)

    assert registry.for_tier(Tier.LOCAL) is None
    assert registry.is_available(Tier.LOCAL)
    assert registry.available_tiers() == Tier.ordered()
    assert set(registry.snapshot()) == {"cheap-remote", "premium-remote"}


def test_registry_strongest_available():
    clock = ManualClock()
    registry = CircuitBreakerRegistry(BreakerConfig(), clock=clock)

    premium = registry.for_tier(Tier.PREMIUM_REMOTE)
    for _ in range(3):
        premium.record_failure()

    assert registry.strongest_available() == Tier.CHEAP_REMOTE
    assert registry.available_tiers() == [Tier.LOCAL, Tier.CHEAP_REMOTE]

    clock.advance(90)
    assert registry.strongest_available() == Tier.PREMIUM_REMOTE
