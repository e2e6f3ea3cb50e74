"""Per-provider circuit breaker."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

_LOGGER = logging.getLogger(__name__)


class BreakerState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True, eq=False)
class BreakerPermit:
    """Admission handed out by ``CircuitBreaker.try_acquire``.

    Permits compare by identity; only the permit that took the HALF_OPEN
    trial slot can release it or decide the trial outcome.
    """

    provider: str
    trial: bool = False


class CircuitBreaker:
    """Gates attempts against one provider based on consecutive failures.

    Transitions:
    - CLOSED: failures are counted; reaching ``failure_threshold`` opens.
    - OPEN: attempts are rejected until ``cooldown_s`` has elapsed since
      ``opened_at``; the first acquisition after that moves to HALF_OPEN.
    - HALF_OPEN: exactly one trial attempt is admitted. Success closes the
      breaker, failure reopens it and restarts the cooldown.

    Outcomes reported with a permit granted before the breaker left CLOSED
    do not move an OPEN or HALF_OPEN breaker.

    All methods are safe to call from concurrent sessions and router calls.
    """

    def __init__(
        self,
        provider: str,
        *,
        failure_threshold: int = 5,
        cooldown_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: float | None = None
        self._trial: BreakerPermit | None = None

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def opened_at(self) -> float | None:
        with self._lock:
            return self._opened_at

    def is_available(self) -> bool:
        """Returns whether an attempt would currently be admitted.

        Does not change state; use ``try_acquire`` immediately before an
        attempt.
        """
        with self._lock:
            if self._state is BreakerState.CLOSED:
                return True
            if self._state is BreakerState.OPEN:
                return self._cooldown_elapsed()
            return self._trial is None

    def try_acquire(self) -> BreakerPermit | None:
        """Admits one attempt, applying the OPEN -> HALF_OPEN transition.

        Returns:
            A permit to pass back with the attempt's outcome, or ``None`` when
            the attempt is rejected.
        """
        with self._lock:
            if self._state is BreakerState.CLOSED:
                return BreakerPermit(self.provider)
            if self._state is BreakerState.OPEN:
                if not self._cooldown_elapsed():
                    return None
                self._state = BreakerState.HALF_OPEN
                _LOGGER.info("Circuit breaker HALF_OPEN.", extra={"provider": self.provider})
            if self._trial is not None:
                return None
            self._trial = BreakerPermit(self.provider, trial=True)
            return self._trial

    def release(self, permit: BreakerPermit | None) -> None:
        """Returns an unused attempt without charging an outcome.

        Only the permit holding the HALF_OPEN trial slot frees it.
        """
        with self._lock:
            if permit is not None and permit is self._trial:
                self._trial = None

    def record_success(self, permit: BreakerPermit | None = None) -> None:
        with self._lock:
            if self._is_stale(permit):
                return
            self._consecutive_failures = 0
            self._trial = None
            if self._state is not BreakerState.CLOSED:
                self._state = BreakerState.CLOSED
                self._opened_at = None
                _LOGGER.info("Circuit breaker CLOSED.", extra={"provider": self.provider})

    def record_failure(self, permit: BreakerPermit | None = None) -> None:
        with self._lock:
            if self._is_stale(permit):
                return
            self._consecutive_failures += 1
            if self._state is BreakerState.HALF_OPEN:
                self._trip()
                _LOGGER.warning("Circuit breaker back to OPEN.", extra={"provider": self.provider})
            elif self._state is BreakerState.CLOSED and self._consecutive_failures >= self.failure_threshold:
                self._trip()
                _LOGGER.warning(
                    "Circuit breaker OPENED.",
                    extra={"provider": self.provider, "failures": self._consecutive_failures},
                )

    def reset(self) -> None:
        """Forces the breaker back to CLOSED with a clean failure count."""
        with self._lock:
            self._state = BreakerState.CLOSED
            self._consecutive_failures = 0
            self._opened_at = None
            self._trial = None
        _LOGGER.info("Circuit breaker manually reset.", extra={"provider": self.provider})

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            retry_after = None
            if self._state is BreakerState.OPEN and self._opened_at is not None:
                retry_after = max(0.0, self._opened_at + self.cooldown_s - self._clock())
            return {
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "failure_threshold": self.failure_threshold,
                "cooldown_s": self.cooldown_s,
                "retry_after_s": retry_after,
            }

    def _trip(self) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        self._trial = None

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is None or self._clock() - self._opened_at >= self.cooldown_s

    def _is_stale(self, permit: BreakerPermit | None) -> bool:
        # Outside CLOSED only the trial decides; unattributed calls always count.
        if permit is None or self._state is BreakerState.CLOSED:
            return False
        return permit is not self._trial
