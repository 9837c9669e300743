"""Shared circuit breaker for external service calls.

Used by the speech adapter (one breaker per provider) to skip a provider
for a cooldown period after repeated failures, avoiding repeated slow
timeouts mid-call.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreaker:
    """Simple circuit breaker: closed -> open (after N failures within a window) -> half-open (after cooldown)."""

    failure_threshold: int = 3
    cooldown_seconds: float = 60.0
    window_seconds: float = 60.0
    label: str = "service"

    _consecutive_failures: int = field(default=0, init=False, repr=False)
    _first_failure_at: Optional[float] = field(default=None, init=False, repr=False)
    _opened_at: Optional[float] = field(default=None, init=False, repr=False)

    @property
    def is_open(self) -> bool:
        return self._opened_at is not None

    def should_try(self) -> bool:
        if self._opened_at is None:
            return True  # closed
        # open: half-open once the cooldown has elapsed
        if (time.monotonic() - self._opened_at) >= self.cooldown_seconds:
            return True  # half-open trial call
        return False

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("Circuit breaker CLOSED for %s", self.label)
        self._consecutive_failures = 0
        self._first_failure_at = None
        self._opened_at = None

    def record_failure(self) -> None:
        now = time.monotonic()
        if self._first_failure_at is None or (now - self._first_failure_at) > self.window_seconds:
            # Stale failures outside the window do not count.
            if self._opened_at is None:
                self._consecutive_failures = 0
            self._first_failure_at = now
        self._consecutive_failures += 1

        if self._opened_at is not None:
            # Half-open trial call failed, restart the cooldown.
            self._opened_at = now
            return

        if self._consecutive_failures >= self.failure_threshold:
            self._opened_at = now
            logger.warning(
                "Circuit breaker OPENED for %s after %d consecutive failures, "
                "skipping for %.0fs",
                self.label,
                self._consecutive_failures,
                self.cooldown_seconds,
            )
