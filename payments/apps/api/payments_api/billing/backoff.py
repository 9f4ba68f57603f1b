"""Exponential backoff with full jitter for failed recurring charges."""

import random
from typing import Callable, Optional


def backoff_seconds(
    attempt: int,
    *,
    base: int = 3600,
    cap: int = 259200,
    rng: Optional[Callable[[], float]] = None,
) -> int:
    """Delay before retry number `attempt` (1-based).

    Drawn uniformly from [0, min(cap, base * 2**(attempt-1))], never below 1s.
    """
    attempt = max(attempt, 1)
    ceiling = min(cap, base * (2 ** (attempt - 1)))
    draw = (rng or random.random)()
    return max(1, int(ceiling * draw))
