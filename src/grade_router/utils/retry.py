"""
Backoff delay calculation.

Used by the fallback controller to space a same-tier retry away from
the attempt that just failed.
"""

import random
from typing import Optional


def calculate_delay(
    attempt: int,
    base_delay: float,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    rng: Optional[random.Random] = None
) -> float:
    """
    Calculate delay for retry attempt with exponential backoff.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Base delay in seconds (0 disables the delay)
        max_delay: Maximum delay in seconds
        exponential_base: Base for exponential calculation
        jitter: Whether to add random jitter
        rng: Random source, for reproducible delays in tests

    Returns:
        Delay in seconds
    """
    if base_delay <= 0:
        return 0.0

    delay = min(base_delay * (exponential_base ** max(0, attempt)), max_delay)

    if jitter:
        # Add random jitter between 0% and 25%
        delay *= 1 + (rng or random).random() * 0.25

    return delay
