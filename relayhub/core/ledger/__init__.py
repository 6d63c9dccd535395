"""In-process ledgers: chain state, token balances, hashing and rejections."""

from .chain import LedgerEvent, LocalLedger, PendingTransaction, TransactionReceipt
from .errors import (
    AlreadyApprovedError,
    AlreadyExecutedError,
    ChainAlreadyRegisteredError,
    GatewayPausedError,
    InsufficientBalanceError,
    InsufficientCreditsError,
    InsufficientSignaturesError,
    InvalidAddressError,
    InvalidChainError,
    InvalidNonceError,
    InvalidPayloadHashError,
    InvalidPriceDataError,
    InvalidSignatureError,
    LedgerError,
    MalformedBatchError,
    NotApprovedError,
    OutstandingDebtError,
    PriceDataStaleError,
    TransactionExpiredError,
    UnauthorizedError,
    UnauthorizedGatewayError,
    UnauthorizedRelayerError,
    ZeroAmountError,
)
from .hashing import (
    approval_digest,
    derive_command_id,
    derive_refund_command_id,
    encode_token_payload,
    keccak_hex,
    normalize_address,
    payload_hash,
    to_bytes,
)
from .tokens import TokenLedger

__all__ = [
    "LedgerEvent",
    "LocalLedger",
    "PendingTransaction",
    "TransactionReceipt",
    "TokenLedger",
    "LedgerError",
    "AlreadyApprovedError",
    "AlreadyExecutedError",
    "ChainAlreadyRegisteredError",
    "GatewayPausedError",
    "InsufficientBalanceError",
    "InsufficientCreditsError",
    "InsufficientSignaturesError",
    "InvalidAddressError",
    "InvalidChainError",
    "InvalidNonceError",
    "InvalidPayloadHashError",
    "InvalidPriceDataError",
    "InvalidSignatureError",
    "MalformedBatchError",
    "NotApprovedError",
    "OutstandingDebtError",
    "PriceDataStaleError",
    "TransactionExpiredError",
    "UnauthorizedError",
    "UnauthorizedGatewayError",
    "UnauthorizedRelayerError",
    "ZeroAmountError",
    "approval_digest",
    "derive_command_id",
    "derive_refund_command_id",
    "encode_token_payload",
    "keccak_hex",
    "normalize_address",
    "payload_hash",
    "to_bytes",
]
