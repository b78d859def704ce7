"""
Collaborator interfaces consumed by the routing pipeline.

Concrete scoring models, durable stores and observability backends live
outside the core; they plug in by implementing these abstract classes.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from grade_router.core.models import CacheEntry, GradingRequest, GradingResult, MetricsEvent, Tier


class LocalBackend(ABC):
    """In-process scoring path used by the ``local`` tier."""

    @abstractmethod
    async def score(self, items: List[GradingRequest], retry: bool = False) -> List[GradingResult]:
        """
        Score a batch of requests.

        Args:
            items: Requests in batch order
            retry: True when the batch is being retried after a rejected attempt

        Returns:
            One result per request, in the same order
        """
        pass


class RemoteBackend(ABC):
    """
    Rate-limited external scoring service used by the remote tiers.

    Implementations raise RateLimitedError, BackendTimeoutError or
    MalformedResultError where they can tell the failure kind; anything
    else is classified by the dispatcher.
    """

    @abstractmethod
    async def score(
        self,
        items: List[GradingRequest],
        tier_hint: Tier,
        retry: bool = False
    ) -> List[GradingResult]:
        """
        Score a batch of requests with the model configured for a tier.

        Args:
            items: Requests in batch order
            tier_hint: Tier the batch was routed to
            retry: True when the batch is being retried after a rejected
                attempt; implementations may tighten their prompt

        Returns:
            One result per request, in the same order
        """
        pass


class PersistentCacheStore(ABC):
    """Optional durable key-value store behind the response cache."""

    @abstractmethod
    async def get(self, fingerprint: str) -> Optional[CacheEntry]:
        pass

    @abstractmethod
    async def put(self, fingerprint: str, entry: CacheEntry) -> None:
        pass


class MetricsSink(ABC):
    """
    Receiver of structured pipeline events.

    ``record`` is called from the event loop through a MetricsEmitter and
    must not block.
    """

    @abstractmethod
    def record(self, event: MetricsEvent) -> None:
        pass
