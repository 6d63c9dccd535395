"""
Ledger rejections.

Every rejection is synchronous, leaves no state change and carries a
machine-readable ``kind``. They are unrecoverable from the relayer's point
of view: resubmitting the same call cannot succeed.
"""

from typing import Any, Dict, Optional

from relayhub.core.recovery.errors import ErrorCategory, ErrorContext, UnrecoverableError


class LedgerError(UnrecoverableError):
    """Base class for ledger rejections."""

    kind = "LedgerError"
    category = ErrorCategory.VALIDATION

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.details: Dict[str, Any] = details
        super().__init__(
            message or self.kind,
            category=type(self).category,
            context=ErrorContext(
                category=type(self).category,
                recoverable=False,
                details={"kind": self.kind, **details},
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "details": {k: _jsonable(v) for k, v in self.details.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, int) and not isinstance(value, bool) and abs(value) >= 2**53:
        return str(value)
    return value


# Gateway

class InvalidChainError(LedgerError):
    kind = "InvalidChain"


class InvalidAddressError(LedgerError):
    kind = "InvalidAddress"


class InsufficientBalanceError(LedgerError):
    kind = "InsufficientBalance"


class UnauthorizedRelayerError(LedgerError):
    kind = "UnauthorizedRelayer"
    category = ErrorCategory.AUTHENTICATION


class InsufficientSignaturesError(LedgerError):
    kind = "InsufficientSignatures"


class AlreadyApprovedError(LedgerError):
    kind = "AlreadyApproved"


class NotApprovedError(LedgerError):
    kind = "NotApproved"


class AlreadyExecutedError(LedgerError):
    kind = "AlreadyExecuted"


class InvalidPayloadHashError(LedgerError):
    kind = "InvalidPayloadHash"


class ChainAlreadyRegisteredError(LedgerError):
    kind = "ChainAlreadyRegistered"


class UnauthorizedError(LedgerError):
    kind = "Unauthorized"
    category = ErrorCategory.AUTHENTICATION


class GatewayPausedError(LedgerError):
    kind = "GatewayPaused"
    category = ErrorCategory.FATAL


# Vault

class ZeroAmountError(LedgerError):
    kind = "ZeroAmount"


class InsufficientCreditsError(LedgerError):
    kind = "InsufficientCredits"


class PriceDataStaleError(LedgerError):
    kind = "PriceDataStale"


class InvalidPriceDataError(LedgerError):
    kind = "InvalidPriceData"


class UnauthorizedGatewayError(LedgerError):
    kind = "UnauthorizedGateway"
    category = ErrorCategory.AUTHENTICATION


# Batch executor

class TransactionExpiredError(LedgerError):
    kind = "TransactionExpired"


class InvalidNonceError(LedgerError):
    kind = "InvalidNonce"


class InvalidSignatureError(LedgerError):
    kind = "InvalidSignature"


class MalformedBatchError(LedgerError):
    kind = "MalformedBatch"


class OutstandingDebtError(LedgerError):
    kind = "OutstandingDebt"
