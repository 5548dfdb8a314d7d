"""Timing helpers shared by the queues: wall clock and capped exponential backoff."""

import random
import time
from typing import Callable, Optional

from mailsync.config import RetryPolicy


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def calculate_backoff(
    retry_count: int,
    policy: RetryPolicy,
    rand: Optional[Callable[[], float]] = None,
) -> int:
    """Delay in ms before the next attempt: min(base * 2^n, cap) plus 0-20% jitter."""
    rand = rand or random.random
    delay = min(policy.base_ms * (2 ** retry_count), policy.cap_ms)
    return int(delay + delay * rand() * policy.jitter_ratio)
