"""
Recovery Executor

Runs one relay operation with bounded retry and a circuit breaker per chain.
The executor never escalates on its own: it reports how the operation ended
and the caller decides (the submission worker moves exhausted commands to
the failed set).
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Dict, Optional, TypeVar

from .errors import ErrorContext, RecoverableError, classify_error
from .strategies import CircuitBreakerConfig, CircuitBreakerStrategy, RetryConfig

T = TypeVar("T")
Operation = Callable[[], Coroutine[Any, Any, T]]


@dataclass
class ExecutionResult:
    """How a retried operation ended."""

    success: bool
    result: Optional[Any] = None
    error: Optional[Exception] = None
    error_context: Optional[ErrorContext] = None
    attempts: int = 1
    total_duration_seconds: float = 0.0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    recovered: bool = False

    @property
    def retries_exhausted(self) -> bool:
        """True when the last error was retryable but the attempt budget ran out."""
        return not self.success and bool(self.error_context and self.error_context.recoverable)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": str(self.error) if self.error else None,
            "errorCategory": self.error_context.category.value if self.error_context else None,
            "attempts": self.attempts,
            "totalDurationSeconds": self.total_duration_seconds,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "recovered": self.recovered,
        }


@dataclass
class RecoveryConfig:
    max_retries: int = 3  # total attempts, first one included
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 600.0
    exponential_base: float = 2.0
    jitter: bool = True

    enable_circuit_breaker: bool = True
    circuit_failure_threshold: int = 5
    circuit_timeout_seconds: float = 60.0


class RecoveryExecutor:
    """
    Retries recoverable failures with capped exponential backoff.

    Unrecoverable errors (every ledger rejection, reverts, a paused gateway)
    end the operation on the first attempt. A ``retry_after`` hint on the
    error (rate limits, an open circuit) replaces the backoff delay.
    """

    def __init__(
        self,
        config: Optional[RecoveryConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or RecoveryConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._circuits: Dict[str, CircuitBreakerStrategy] = {}
        self._backoff = RetryConfig(
            max_attempts=self.config.max_retries,
            initial_delay_seconds=self.config.initial_delay_seconds,
            max_delay_seconds=self.config.max_delay_seconds,
            exponential_base=self.config.exponential_base,
            jitter=self.config.jitter,
        )

    async def execute(
        self,
        operation: Operation,
        operation_name: str = "operation",
        provider: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Run ``operation`` until it succeeds, fails for good, or runs out of attempts.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            operation_name: Label used in log lines
            provider: Chain name; selects the circuit breaker
        """
        started_at = datetime.now(timezone.utc)
        call = self._guarded(operation, provider)
        error: Optional[Exception] = None
        context: Optional[ErrorContext] = None
        attempts = 0

        while attempts < self.config.max_retries:
            attempts += 1
            try:
                value = await call()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                error, context = exc, classify_error(exc)
            else:
                return self._finish(started_at, attempts, success=True, result=value)

            if not context.recoverable:
                self.logger.error(f"{operation_name} rejected ({context.category.value}): {error}")
                break
            if attempts >= self.config.max_retries:
                self.logger.error(f"{operation_name} gave up after {attempts} attempts: {error}")
                break

            delay = self._delay_for(error, context, attempts - 1)
            self.logger.warning(
                f"{operation_name} attempt {attempts}/{self.config.max_retries} failed: {error}; "
                f"retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

        return self._finish(started_at, attempts, success=False, error=error, context=context)

    def get_circuit_breaker_state(self, provider: str) -> Optional[str]:
        circuit = self._circuits.get(provider)
        return circuit.state.value if circuit else None

    def reset_circuit_breaker(self, provider: str) -> bool:
        circuit = self._circuits.get(provider)
        if circuit is None:
            return False
        circuit.reset()
        return True

    def _guarded(self, operation: Operation, provider: Optional[str]) -> Operation:
        if not (self.config.enable_circuit_breaker and provider):
            return operation
        circuit = self._circuits.get(provider)
        if circuit is None:
            circuit = self._circuits[provider] = CircuitBreakerStrategy(
                provider,
                CircuitBreakerConfig(
                    failure_threshold=self.config.circuit_failure_threshold,
                    timeout_seconds=self.config.circuit_timeout_seconds,
                ),
                logger=self.logger,
            )

        async def guarded():
            return await circuit.execute(operation)

        return guarded

    def _delay_for(self, error: Exception, context: ErrorContext, retry_index: int) -> float:
        hint = error.retry_after if isinstance(error, RecoverableError) else None
        if hint is None:
            hint = context.retry_after_seconds
        if hint is not None:
            return min(hint, self.config.max_delay_seconds)
        return self._backoff.get_delay(retry_index)

    @staticmethod
    def _finish(
        started_at: datetime,
        attempts: int,
        success: bool,
        result: Any = None,
        error: Optional[Exception] = None,
        context: Optional[ErrorContext] = None,
    ) -> ExecutionResult:
        completed_at = datetime.now(timezone.utc)
        return ExecutionResult(
            success=success,
            result=result,
            error=error,
            error_context=context,
            attempts=attempts,
            total_duration_seconds=(completed_at - started_at).total_seconds(),
            started_at=started_at,
            completed_at=completed_at,
            recovered=success and attempts > 1,
        )
