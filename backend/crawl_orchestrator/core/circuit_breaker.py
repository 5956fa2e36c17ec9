"""Circuit breaker guarding calls to the scrape provider.

After failure_threshold consecutive failures the circuit opens and calls are
refused. Once recovery_timeout has elapsed a single probe call is allowed
(half-open); its outcome closes or re-opens the circuit.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject all requests
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""

    failure_threshold: int
    recovery_timeout: float


StateChangeCallback = Callable[[CircuitState, CircuitState, int], None]


class CircuitBreaker:
    """Async-safe circuit breaker.

    Args:
        config: Thresholds for opening and recovering.
        name: Identifier used by callers in their logs.
        on_state_change: Called with (previous, new, failure_count) on every
            transition.
        clock: Monotonic clock, replaceable in tests.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        name: str = "default",
        on_state_change: StateChangeCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._name = name
        self._on_state_change = on_state_change
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    def _move_to(self, new_state: CircuitState) -> None:
        previous = self._state
        if previous == new_state:
            return
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        if self._on_state_change is not None:
            self._on_state_change(previous, new_state, self._failure_count)

    async def can_execute(self) -> bool:
        """Return True if a call may go through right now."""
        async with self._lock:
            if self._state != CircuitState.OPEN:
                return True
            opened_at = self._opened_at or 0.0
            if self._clock() - opened_at >= self._config.recovery_timeout:
                self._move_to(CircuitState.HALF_OPEN)
                return True
            return False

    async def record_success(self) -> None:
        """Record a successful call."""
        async with self._lock:
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.CLOSED)

    async def record_failure(self) -> None:
        """Record a failed call."""
        async with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN)
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self._config.failure_threshold
            ):
                self._move_to(CircuitState.OPEN)
