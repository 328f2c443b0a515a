from __future__ import annotations

import random


def compute_backoff(
    attempt: int,
    base: float = 60.0,
    jitter: float = 0.0,
    strategy: str = "fixed",
) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based).

    ``fixed`` waits ``base`` every time; ``exponential`` doubles it per
    attempt. Optional jitter adds up to ``jitter`` seconds.
    """
    if strategy == "exponential":
        delay = base * (2 ** max(attempt - 1, 0))
    elif strategy == "fixed":
        delay = base
    else:
        raise ValueError(f"Unknown backoff strategy: {strategy}")
    if jitter:
        delay += random.uniform(0, jitter)
    return delay
