"""Circuit breaker for automatic sync requests."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import StrEnum

logger = logging.getLogger(__name__)


class BreakerState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Suppresses automatic syncs after consecutive cycle failures.

    After ``failure_threshold`` consecutive failures the breaker opens for a
    cooldown that starts at ``initial_cooldown`` and doubles on every trip,
    up to ``max_cooldown``. Once the cooldown has elapsed the breaker lets one
    probe through (half-open); success closes it, failure re-opens it with the
    next cooldown step.

    The breaker only gates automatic requests. Manual syncs bypass it but
    still report their outcome.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        initial_cooldown: float = 30.0,
        max_cooldown: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_change: Callable[[BreakerState], None] | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self._threshold = failure_threshold
        self._initial_cooldown = initial_cooldown
        self._max_cooldown = max(max_cooldown, initial_cooldown)
        self._clock = clock
        self._on_change = on_change

        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._trip_count = 0
        self._opened_at = 0.0
        self._cooldown = 0.0

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def trip_count(self) -> int:
        return self._trip_count

    @property
    def current_cooldown(self) -> float:
        return self._cooldown

    @property
    def remaining_cooldown(self) -> float:
        """Seconds until automatic syncs are allowed again (0 when not open)."""
        if self._state != BreakerState.OPEN:
            return 0.0
        return max(0.0, self._opened_at + self._cooldown - self._clock())

    @property
    def is_blocking(self) -> bool:
        return self._state == BreakerState.OPEN and self.remaining_cooldown > 0

    def should_allow(self) -> bool:
        """Whether an automatic sync may run now."""
        if self._state == BreakerState.OPEN:
            if self.remaining_cooldown > 0:
                return False
            self._set_state(BreakerState.HALF_OPEN)
        return True

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._state != BreakerState.CLOSED or self._consecutive_failures >= self._threshold:
            self._trip()

    def record_success(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._consecutive_failures = 0
        self._trip_count = 0
        self._cooldown = 0.0
        self._set_state(BreakerState.CLOSED)

    def _trip(self) -> None:
        self._trip_count += 1
        self._cooldown = min(
            self._initial_cooldown * (2 ** (self._trip_count - 1)), self._max_cooldown
        )
        self._opened_at = self._clock()
        logger.warning(
            "Circuit breaker open after %d consecutive failures, cooling down %.0fs",
            self._consecutive_failures,
            self._cooldown,
        )
        self._set_state(BreakerState.OPEN)

    def _set_state(self, state: BreakerState) -> None:
        if state == self._state:
            return
        self._state = state
        if self._on_change is not None:
            self._on_change(state)
