"""Batch meta-transactions: EIP-712 authorization and per-call isolated execution."""

from .executor import UNPAID_POLICY_BLOCK, UNPAID_POLICY_LOG, BatchExecutor, GasMeter
from .models import (
    BatchExecutionLog,
    BatchResult,
    GasEstimate,
    MetaTransaction,
    UnpaidBatch,
)
from .signing import (
    batch_typed_data,
    decode_meta_transactions,
    encode_meta_transactions,
    recover_batch_signer,
    sign_batch,
)
from .targets import CallTarget, CallTargetRegistry

__all__ = [
    "UNPAID_POLICY_BLOCK",
    "UNPAID_POLICY_LOG",
    "BatchExecutionLog",
    "BatchExecutor",
    "BatchResult",
    "CallTarget",
    "CallTargetRegistry",
    "GasEstimate",
    "GasMeter",
    "MetaTransaction",
    "UnpaidBatch",
    "batch_typed_data",
    "decode_meta_transactions",
    "encode_meta_transactions",
    "recover_batch_signer",
    "sign_batch",
]
