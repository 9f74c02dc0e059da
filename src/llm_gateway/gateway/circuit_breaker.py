"""Per-model circuit breaker with a sliding failure window.

State Machine:
    CLOSED -> (failure rate > threshold, with >= min_requests in window) -> OPEN
    OPEN -> (cooldown expires) -> HALF_OPEN
    HALF_OPEN -> (trial success rate >= threshold) -> CLOSED
    HALF_OPEN -> (any failure) -> OPEN

An OPEN breaker is the outage signal consumed by model selection: sticky
entries pointing at the model are invalidated and the model is skipped.
"""

import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional, Tuple


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Outage: requests blocked
    HALF_OPEN = "half_open"  # Probing recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Breaker tuning.

    Attributes:
        failure_threshold: Failure rate (0-1) above which the circuit opens
        min_requests: Requests needed in the window before it can open
        window_seconds: Sliding window for failure tracking
        cooldown_seconds: Time before OPEN transitions to HALF_OPEN
        half_open_max_requests: Trial requests allowed in HALF_OPEN
        half_open_success_threshold: Trial success rate needed to close
    """

    failure_threshold: float = 0.25
    min_requests: int = 5
    window_seconds: int = 600
    cooldown_seconds: int = 1800
    half_open_max_requests: int = 3
    half_open_success_threshold: float = 0.67


class CircuitBreaker:
    """Sliding-window breaker for one model."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        model_id: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or CircuitBreakerConfig()
        self.model_id = model_id
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._history: Deque[Tuple[float, bool]] = deque()  # (timestamp, success)
        self._opened_at: Optional[float] = None
        self._trial_requests = 0
        self._trial_successes = 0

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once the cooldown passed."""
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self._config.cooldown_seconds
        ):
            self._transition_to(CircuitState.HALF_OPEN)
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _prune(self) -> None:
        cutoff = self._clock() - self._config.window_seconds
        while self._history and self._history[0][0] < cutoff:
            self._history.popleft()

    def request_count_in_window(self) -> int:
        self._prune()
        return len(self._history)

    def failure_rate(self) -> float:
        """Failure rate (0-1) in the window; 0.0 when the window is empty."""
        self._prune()
        if not self._history:
            return 0.0
        failures = sum(1 for _, success in self._history if not success)
        return failures / len(self._history)

    def _transition_to(self, new_state: CircuitState) -> None:
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.HALF_OPEN:
            self._trial_requests = 0
            self._trial_successes = 0
        elif new_state == CircuitState.CLOSED:
            self._history.clear()
            self._opened_at = None

    def record_failure(self) -> None:
        self._history.append((self._clock(), False))
        state = self.state
        if state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
        elif state == CircuitState.CLOSED:
            if (
                self.request_count_in_window() >= self._config.min_requests
                and self.failure_rate() > self._config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    def record_success(self) -> None:
        self._history.append((self._clock(), True))
        if self.state != CircuitState.HALF_OPEN:
            return
        self._trial_requests += 1
        self._trial_successes += 1
        if self._trial_requests >= self._config.half_open_max_requests:
            rate = self._trial_successes / self._trial_requests
            if rate >= self._config.half_open_success_threshold:
                self._transition_to(CircuitState.CLOSED)
            else:
                self._transition_to(CircuitState.OPEN)

    def force_open(self) -> None:
        """Open the circuit immediately (explicit outage report)."""
        self._transition_to(CircuitState.OPEN)

    def reset(self) -> None:
        self._transition_to(CircuitState.CLOSED)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "state": self.state.value,
            "failure_rate": self.failure_rate(),
            "request_count": self.request_count_in_window(),
            "failure_threshold": self._config.failure_threshold,
            "cooldown_seconds": self._config.cooldown_seconds,
        }
