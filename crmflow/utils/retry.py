from __future__ import annotations

import random


def compute_backoff(
    attempt: int,
    base: float = 60.0,
    factor: float = 2.0,
    max_delay: float = 3600.0,
    jitter: float = 0.0,
) -> float:
    """Compute exponential backoff in seconds with optional jitter.

    ``attempt`` is 1 for the first retry.
    """
    delay = min(base * factor ** max(attempt - 1, 0), max_delay)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay
