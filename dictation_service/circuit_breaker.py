from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable, Optional

from dictation_service.models import CircuitBreakerState

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Counts backend failures in a sliding time window.

    Trips once ``threshold`` failures fall inside ``window_s``. A tripped breaker
    clears itself after ``cooldown_s`` without further failures.
    """

    def __init__(
        self,
        threshold: int = 3,
        window_s: float = 60.0,
        cooldown_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.window_s = window_s
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._failures: deque[float] = deque()
        self._tripped_until: Optional[float] = None
        self.successes = 0

    def _prune(self, now: float) -> None:
        while self._failures and now - self._failures[0] > self.window_s:
            self._failures.popleft()

    def record_failure(self) -> None:
        now = self._clock()
        self._prune(now)
        self._failures.append(now)
        if self._tripped_until is not None:
            self._tripped_until = now + self.cooldown_s
        elif len(self._failures) >= self.threshold:
            self._tripped_until = now + self.cooldown_s
            logger.warning(
                "Circuit breaker tripped: %d failures within %.0fs",
                len(self._failures),
                self.window_s,
            )

    def record_success(self) -> None:
        self.successes += 1
        self._prune(self._clock())

    def is_tripped(self) -> bool:
        if self._tripped_until is None:
            return False
        if self._clock() >= self._tripped_until:
            logger.info("Circuit breaker cool-down elapsed, resetting")
            self.reset()
            return False
        return True

    def reset(self) -> None:
        self._failures.clear()
        self._tripped_until = None

    @property
    def state(self) -> CircuitBreakerState:
        self._prune(self._clock())
        return CircuitBreakerState(
            failure_count=len(self._failures),
            window_start=self._failures[0] if self._failures else None,
            tripped_until=self._tripped_until,
        )
