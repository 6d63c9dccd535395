"""Failure classification, retry and circuit breaking for relay submission."""

from .errors import (
    ErrorCategory,
    ErrorContext,
    NetworkError,
    NonceConflictError,
    RateLimitError,
    RecoverableError,
    RpcTimeoutError,
    TransactionRevertedError,
    UnrecoverableError,
    classify_error,
)
from .executor import ExecutionResult, RecoveryConfig, RecoveryExecutor
from .strategies import CircuitBreakerConfig, CircuitBreakerStrategy, CircuitState, RetryConfig

__all__ = [
    "CircuitBreakerConfig",
    "CircuitBreakerStrategy",
    "CircuitState",
    "ErrorCategory",
    "ErrorContext",
    "ExecutionResult",
    "NetworkError",
    "NonceConflictError",
    "RateLimitError",
    "RecoverableError",
    "RecoveryConfig",
    "RecoveryExecutor",
    "RetryConfig",
    "RpcTimeoutError",
    "TransactionRevertedError",
    "UnrecoverableError",
    "classify_error",
]
