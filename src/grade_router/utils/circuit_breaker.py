"""
Circuit breaker for remote scoring tiers.

One breaker per remote tier, modelled as an explicit two-state machine
with a transition table so the policy is testable without any network
code. Time comes from an injectable clock.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple

from loguru import logger

from grade_router.config.settings import BreakerConfig
from grade_router.core.models import Tier


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"      # Failing, reject all calls without attempting them


class BreakerEvent(Enum):
    """Inputs of the breaker state machine."""
    THRESHOLD_REACHED = "threshold_reached"
    RECOVERY_ELAPSED = "recovery_elapsed"


# (state, event) -> next state; pairs not listed leave the state unchanged
TRANSITIONS: Dict[Tuple[CircuitState, BreakerEvent], CircuitState] = {
    (CircuitState.CLOSED, BreakerEvent.THRESHOLD_REACHED): CircuitState.OPEN,
    (CircuitState.OPEN, BreakerEvent.RECOVERY_ELAPSED): CircuitState.CLOSED,
}

TransitionCallback = Callable[[str, CircuitState, CircuitState], None]


@dataclass
class CircuitBreaker:
    """
    Fail-fast gate for one backend tier.

    Trips to OPEN when ``failure_threshold`` failures fall inside the
    trailing ``window_s``. While OPEN every ``allow_request`` returns
    False. Once ``recovery_timeout_s`` has elapsed since the trip the
    next check closes the circuit and lets the request through.

    A success while CLOSED clears the failure history, so only
    consecutive failures trip the breaker.
    """
    name: str
    failure_threshold: int = 3
    window_s: float = 300.0
    recovery_timeout_s: float = 90.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    on_transition: Optional[TransitionCallback] = field(default=None, repr=False)

    _state: CircuitState = field(default=CircuitState.CLOSED, repr=False)
    _failures: Deque[float] = field(default_factory=deque, repr=False)
    _opened_at: float = field(default=0.0, repr=False)
    _last_failure_time: Optional[float] = field(default=None, repr=False)
    _trip_count: int = field(default=0, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def state(self) -> CircuitState:
        """Current circuit state, applying any due recovery first."""
        transition = None
        with self._lock:
            transition = self._maybe_recover(self.clock())
            state = self._state
        self._notify(transition)
        return state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        """Failures currently inside the trailing window."""
        with self._lock:
            self._prune(self.clock())
            return len(self._failures)

    @property
    def last_failure_time(self) -> Optional[float]:
        return self._last_failure_time

    @property
    def trip_count(self) -> int:
        return self._trip_count

    def allow_request(self) -> bool:
        """
        Check if a request can be executed.

        Returns:
            True if the circuit is closed (possibly just recovered)
        """
        return self.state == CircuitState.CLOSED

    def retry_after(self) -> float:
        """Seconds until an open circuit recovers (0 when closed)."""
        with self._lock:
            if self._state != CircuitState.OPEN:
                return 0.0
            return max(0.0, self._opened_at + self.recovery_timeout_s - self.clock())

    def record_success(self) -> None:
        """Record a successful request."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                self._failures.clear()

    def record_failure(self) -> bool:
        """
        Record a failure that counts against the tier's health.

        Returns:
            True if this failure tripped the breaker
        """
        transition = None
        with self._lock:
            now = self.clock()
            self._last_failure_time = now
            if self._state == CircuitState.OPEN:
                return False

            self._failures.append(now)
            self._prune(now)
            if len(self._failures) >= self.failure_threshold:
                transition = self._apply(BreakerEvent.THRESHOLD_REACHED, now)
        self._notify(transition)
        return transition is not None

    def reset(self) -> None:
        """Force the breaker closed and forget past failures."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures.clear()
            self._opened_at = 0.0

    def snapshot(self) -> Dict:
        with self._lock:
            now = self.clock()
            self._prune(now)
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": len(self._failures),
                "trip_count": self._trip_count,
                "retry_after_s": (
                    max(0.0, self._opened_at + self.recovery_timeout_s - now)
                    if self._state == CircuitState.OPEN else 0.0
                ),
            }

    # ==================== Internals (caller holds the lock) ====================

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_s
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()

    def _maybe_recover(self, now: float):
        if self._state == CircuitState.OPEN and now - self._opened_at >= self.recovery_timeout_s:
            return self._apply(BreakerEvent.RECOVERY_ELAPSED, now)
        return None

    def _apply(self, event: BreakerEvent, now: float):
        next_state = TRANSITIONS.get((self._state, event))
        if next_state is None:
            return None

        previous = self._state
        self._state = next_state
        if next_state == CircuitState.OPEN:
            self._opened_at = now
            self._trip_count += 1
            logger.warning(
                f"Circuit breaker '{self.name}' tripped to OPEN after "
                f"{len(self._failures)} failures in {self.window_s:.0f}s"
            )
        else:
            self._failures.clear()
            logger.info(f"Circuit breaker '{self.name}' recovered, now CLOSED")
        return (previous, next_state)

    def _notify(self, transition) -> None:
        if transition is not None and self.on_transition is not None:
            self.on_transition(self.name, transition[0], transition[1])


class CircuitBreakerRegistry:
    """
    Per-tier breakers owned by one orchestrator.

    Only remote tiers get a breaker; the local tier is never gated.
    """

    def __init__(
        self,
        config: BreakerConfig,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Optional[TransitionCallback] = None
    ):
        self._breakers: Dict[Tier, CircuitBreaker] = {
            tier: CircuitBreaker(
                name=tier.value,
                failure_threshold=config.failure_threshold,
                window_s=config.window_s,
                recovery_timeout_s=config.recovery_timeout_s,
                clock=clock,
                on_transition=on_transition,
            )
            for tier in Tier.ordered()
            if tier.is_remote
        }

    def for_tier(self, tier: Tier) -> Optional[CircuitBreaker]:
        return self._breakers.get(tier)

    def is_available(self, tier: Tier) -> bool:
        breaker = self._breakers.get(tier)
        return breaker is None or breaker.allow_request()

    def available_tiers(self) -> List[Tier]:
        """Tiers whose breaker is closed (always includes local), cheapest first."""
        return [tier for tier in Tier.ordered() if self.is_available(tier)]

    def strongest_available(self, fallback: Optional[Tier] = None) -> Tier:
        """Strongest tier that currently accepts requests."""
        available = self.available_tiers()
        if available:
            return available[-1]
        return fallback or Tier.strongest()

    def snapshot(self) -> Dict[str, Dict]:
        return {tier.value: breaker.snapshot() for tier, breaker in self._breakers.items()}
