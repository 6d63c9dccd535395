"""
Relayer daemon.

Watches gateway events on every source chain, waits for confirmations,
signs and submits approve/execute to the destination gateway, and relays
gasless batches paid from the gas credit vault.
"""

from .commands import INTENT_EVENTS, build_command, build_refund_command, event_key
from .ledger_client import InProcessLedgerClient, LedgerClient
from .models import (
    FailedTransaction,
    IntentState,
    IntentTransition,
    InvalidTransitionError,
    ObservedIntent,
    RelayerHaltedError,
    RelayerMetrics,
)
from .network import LocalNetwork, build_local_network
from .nonce_manager import NonceManager, NonceState
from .pipeline import ChainWatcher, SubmissionWorker
from .service import (
    RelayerService,
    build_relayer_service,
    get_relayer_service,
    set_relayer_service,
)
from .signer import CommandSigner
from .store import FailedTransactionStore, ProcessedEventStore
from .tracker import IntentTracker

__all__ = [
    "INTENT_EVENTS",
    "build_command",
    "build_refund_command",
    "event_key",
    "LedgerClient",
    "InProcessLedgerClient",
    "FailedTransaction",
    "IntentState",
    "IntentTransition",
    "InvalidTransitionError",
    "ObservedIntent",
    "RelayerHaltedError",
    "RelayerMetrics",
    "LocalNetwork",
    "build_local_network",
    "NonceManager",
    "NonceState",
    "ChainWatcher",
    "SubmissionWorker",
    "RelayerService",
    "build_relayer_service",
    "get_relayer_service",
    "set_relayer_service",
    "CommandSigner",
    "FailedTransactionStore",
    "ProcessedEventStore",
    "IntentTracker",
]
