"""Back-off policies that space out reconnection attempts."""

from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple


@dataclass(frozen=True)
class RetryConfig:
    """Settings for an exponential back-off with optional jitter.

    All durations are in seconds.  A zero ``max_interval``,
    ``max_elapsed_time`` or ``max_retries`` means no limit.  A zero
    ``interval`` produces a policy that never retries.
    """

    interval: float = 0.0
    multiplier: float = 1.0
    jitter: float = 0.0
    max_interval: float = 0.0
    max_elapsed_time: float = 0.0
    max_retries: int = 0

    def __post_init__(self) -> None:
        for name in ("interval", "max_interval", "max_elapsed_time"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} may not be negative")
        if self.max_retries < 0:
            raise ValueError("max_retries may not be negative")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")

    def new_policy(self) -> "RetryPolicy":
        """Return a fresh policy that starts counting from now."""
        return RetryPolicy(self)


class RetryPolicy:
    """Hands out the delay before each successive retry."""

    def __init__(
        self,
        config: RetryConfig,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config
        self._clock = clock
        self._rng = rng or random.Random()
        self._start = clock()
        self._attempts = 0
        self._current = config.interval

    def next(self) -> Tuple[float, bool]:
        """Return the next delay and whether another retry is allowed."""
        cfg = self._config
        if cfg.interval <= 0:
            return 0.0, False
        if cfg.max_retries and self._attempts >= cfg.max_retries:
            return 0.0, False
        if cfg.max_elapsed_time and self._clock() - self._start >= cfg.max_elapsed_time:
            return 0.0, False

        cap = cfg.max_interval or math.inf
        base = min(self._current, cap)
        delay = base
        if cfg.jitter:
            delay = self._rng.uniform(base * (1 - cfg.jitter), base * (1 + cfg.jitter))
            delay = min(delay, cap)

        self._attempts += 1
        self._current = min(self._current * max(cfg.multiplier, 1.0), cap)
        return delay, True