"""
Recovery Strategies

Backoff schedule and the per-chain circuit breaker used by the recovery
executor.
"""

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine, Optional, TypeVar

from .errors import ErrorCategory, RecoverableError

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class RetryConfig:
    """Capped exponential backoff with optional symmetric jitter."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_factor: float = 0.1

    def get_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        base = self.initial_delay_seconds * self.exponential_base ** attempt
        delay = min(base, self.max_delay_seconds)
        if self.jitter and delay:
            spread = delay * self.jitter_factor
            delay = random.uniform(delay - spread, delay + spread)
        return max(delay, 0.0)


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 3  # trial calls that must pass before closing again
    timeout_seconds: float = 60.0  # how long an open circuit rejects calls
    half_open_max_calls: int = 3


class CircuitBreakerStrategy:
    """
    Stops hammering a chain whose RPC keeps failing.

    Only ``RecoverableError`` failures count. A ledger rejection proves the
    endpoint is up, so it passes straight through without touching the
    counters. After ``timeout_seconds`` an open circuit lets a few trial
    calls through; enough successes close it, any failure reopens it.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self.reset(log=False)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    async def execute(self, operation: Callable[[], Coroutine[Any, Any, T]]) -> T:
        self._admit()
        try:
            result = await operation()
        except RecoverableError:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self, log: bool = True) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_successes = 0
        self._trials = 0
        self._opened_at: Optional[float] = None
        if log:
            self.logger.info("circuit_breaker_reset", extra={"circuit": self.name})

    def _admit(self) -> None:
        if self._state == CircuitState.OPEN:
            remaining = self._remaining_open_seconds()
            if remaining > 0:
                raise RecoverableError(
                    f"Circuit breaker '{self.name}' is open",
                    category=ErrorCategory.NETWORK,
                    retry_after=remaining,
                )
            self._state = CircuitState.HALF_OPEN
            self._trials = 0
            self._trial_successes = 0
            self.logger.info(f"Circuit breaker '{self.name}' half-open, probing")

        if self._state == CircuitState.HALF_OPEN:
            if self._trials >= self.config.half_open_max_calls:
                raise RecoverableError(
                    f"Circuit breaker '{self.name}' is waiting on trial calls",
                    category=ErrorCategory.NETWORK,
                )
            self._trials += 1

    def _on_success(self) -> None:
        if self._state != CircuitState.HALF_OPEN:
            self._failures = 0
            return
        self._trial_successes += 1
        if self._trial_successes >= self.config.success_threshold:
            self.reset(log=False)
            self.logger.info(f"Circuit breaker '{self.name}' closed, {self.name} recovered")

    def _on_failure(self) -> None:
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
            self._transition_to_open()

    def _remaining_open_seconds(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.config.timeout_seconds - (self._clock() - self._opened_at))

    def _transition_to_open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self.logger.warning(
            f"Circuit breaker '{self.name}' opened after {self._failures} failures"
        )
