"""
Error Classification

Every failure the relayer sees is either recoverable (a transport problem
worth retrying) or unrecoverable (the ledger said no, or an operator has to
step in). Ledger rejections subclass ``UnrecoverableError``; RPC failures
subclass ``RecoverableError``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ErrorCategory(str, Enum):
    """Categories of errors for recovery decisions."""

    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NONCE_CONFLICT = "nonce_conflict"  # sender sequence raced another submitter
    INSUFFICIENT_FUNDS = "insufficient_funds"  # relayer wallet cannot pay
    TRANSACTION_REVERTED = "transaction_reverted"
    VALIDATION = "validation"  # ledger rejected the call
    AUTHENTICATION = "authentication"
    FATAL = "fatal"  # gateway paused
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """What the recovery executor needs to know about a failure."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    recoverable: bool = True
    retry_after_seconds: Optional[float] = None
    chain: Optional[str] = None
    tx_hash: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class RecoverableError(Exception):
    """A transient failure: resubmitting may succeed."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        retry_after: Optional[float] = None,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.retry_after = retry_after
        self.context = context or ErrorContext(
            category=category, recoverable=True, retry_after_seconds=retry_after
        )


class UnrecoverableError(Exception):
    """A failure that repeats on every resubmission."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.context = context or ErrorContext(category=category, recoverable=False)


class RateLimitError(RecoverableError):
    """RPC or price API throttled us."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: float = 60.0, chain: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.RATE_LIMIT,
            retry_after=retry_after,
            context=ErrorContext(
                category=ErrorCategory.RATE_LIMIT,
                retry_after_seconds=retry_after,
                chain=chain,
            ),
        )


class NetworkError(RecoverableError):
    def __init__(self, message: str = "Network error", chain: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            context=ErrorContext(category=ErrorCategory.NETWORK, chain=chain),
        )


class RpcTimeoutError(RecoverableError):
    """
    A ledger call timed out.

    The call may or may not have landed; callers must re-read ledger state
    before resubmitting anything that is not idempotent.
    """

    def __init__(self, message: str = "Operation timed out", operation: Optional[str] = None, chain: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.TIMEOUT,
            context=ErrorContext(
                category=ErrorCategory.TIMEOUT,
                chain=chain,
                details={"operation": operation} if operation else {},
            ),
        )


class NonceConflictError(RecoverableError):
    """The submitted sender nonce did not match the ledger's."""

    def __init__(
        self,
        message: str = "Nonce conflict",
        expected: Optional[int] = None,
        got: Optional[int] = None,
        chain: Optional[str] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.NONCE_CONFLICT,
            retry_after=0.0,
            context=ErrorContext(
                category=ErrorCategory.NONCE_CONFLICT,
                retry_after_seconds=0.0,
                chain=chain,
                details={"expected": expected, "got": got},
            ),
        )


class TransactionRevertedError(UnrecoverableError):
    def __init__(
        self,
        message: str = "Transaction reverted",
        tx_hash: Optional[str] = None,
        reason: Optional[str] = None,
        chain: Optional[str] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.TRANSACTION_REVERTED,
            context=ErrorContext(
                category=ErrorCategory.TRANSACTION_REVERTED,
                recoverable=False,
                tx_hash=tx_hash,
                chain=chain,
                details={"revert_reason": reason} if reason else {},
            ),
        )


# (substrings, category, recoverable, retry_after); first match wins.
_MESSAGE_RULES: Tuple[Tuple[Tuple[str, ...], ErrorCategory, bool, Optional[float]], ...] = (
    (("rate limit", "too many requests", "429", "throttl"), ErrorCategory.RATE_LIMIT, True, 60.0),
    (("nonce too low", "nonce too high", "replacement transaction underpriced"), ErrorCategory.NONCE_CONFLICT, True, 0.0),
    (("connection", "network", "unreachable", "refused", "dns", "socket"), ErrorCategory.NETWORK, True, None),
    (("timeout", "timed out"), ErrorCategory.TIMEOUT, True, None),
    (("insufficient funds", "exceeds balance"), ErrorCategory.INSUFFICIENT_FUNDS, False, None),
    # a higher gas limit can fix this one
    (("out of gas",), ErrorCategory.TRANSACTION_REVERTED, True, None),
    (("revert", "transaction failed"), ErrorCategory.TRANSACTION_REVERTED, False, None),
)


def classify_error(error: Exception) -> ErrorContext:
    """
    Return the recovery context for ``error``.

    Relayer errors carry their own context. Anything else (a raw client
    exception) is matched on its message; unmatched errors are retried.
    """
    if isinstance(error, (RecoverableError, UnrecoverableError)):
        return error.context
    if isinstance(error, TimeoutError):
        return ErrorContext(category=ErrorCategory.TIMEOUT, recoverable=True)

    message = str(error).lower()
    for needles, category, recoverable, retry_after in _MESSAGE_RULES:
        if any(needle in message for needle in needles):
            return ErrorContext(category=category, recoverable=recoverable, retry_after_seconds=retry_after)
    return ErrorContext(category=ErrorCategory.UNKNOWN, recoverable=True)
