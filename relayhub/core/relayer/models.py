"""Relayer daemon data model."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from relayhub.core.gateway.models import Command
from relayhub.core.recovery import ErrorCategory, UnrecoverableError


class IntentState(str, Enum):
    """Lifecycle of one observed source-chain intent."""

    DETECTED = "detected"
    AWAITING_CONFIRMATIONS = "awaiting_confirmations"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED_OR_FAILED = "rejected_or_failed"
    CANCELLED = "cancelled"


class InvalidTransitionError(Exception):
    """Raised when an invalid intent state transition is attempted."""

    def __init__(
        self,
        from_state: IntentState,
        to_state: IntentState,
        message: Optional[str] = None,
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.message = message or f"Cannot transition from {from_state.value} to {to_state.value}"
        super().__init__(self.message)


class RelayerHaltedError(UnrecoverableError):
    """New work was refused because the operator stopped the relayer."""

    kind = "RelayerHalted"

    def __init__(self, message: str = "Relayer is emergency-stopped"):
        super().__init__(message, category=ErrorCategory.FATAL)


@dataclass
class IntentTransition:
    from_state: IntentState
    to_state: IntentState
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ObservedIntent:
    """A source event the relayer is carrying to its destination."""

    key: str
    command: Command
    event_name: str
    block_number: int
    tx_hash: str
    log_index: int
    sender: str = ""
    state: IntentState = IntentState.DETECTED
    confirmed_at_block: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None
    history: List[IntentTransition] = field(default_factory=list)
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def command_id(self) -> str:
        return self.command.command_id

    @property
    def source_chain(self) -> str:
        return self.command.source_chain

    @property
    def destination_chain(self) -> str:
        return self.command.destination_chain

    def source_event(self) -> Dict[str, Any]:
        return {
            "event": self.event_name,
            "blockNumber": self.block_number,
            "txHash": self.tx_hash,
            "logIndex": self.log_index,
            "sender": self.sender,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "commandId": self.command_id,
            "state": self.state.value,
            "sourceChain": self.source_chain,
            "destinationChain": self.destination_chain,
            "blockNumber": self.block_number,
            "confirmedAtBlock": self.confirmed_at_block,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class FailedTransaction:
    """A command the relayer gave up on; kept for operator retry or refund."""

    key: str
    command_id: str
    destination_chain: str
    command: Command
    source_event: Dict[str, Any]
    error: str
    error_category: str = "unknown"
    retry_count: int = 0
    max_retries: int = 3
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    compensated: bool = False
    compensation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "commandId": self.command_id,
            "destinationChain": self.destination_chain,
            "command": self.command.to_dict(),
            "sourceEvent": self.source_event,
            "error": self.error,
            "errorCategory": self.error_category,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "timestamp": self.timestamp.isoformat(),
            "compensated": self.compensated,
            "compensation": self.compensation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailedTransaction":
        return cls(
            key=data["key"],
            command_id=data["commandId"],
            destination_chain=data["destinationChain"],
            command=Command.from_dict(data["command"]),
            source_event=data.get("sourceEvent") or {},
            error=data.get("error", ""),
            error_category=data.get("errorCategory", "unknown"),
            retry_count=int(data.get("retryCount", 0)),
            max_retries=int(data.get("maxRetries", 3)),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            compensated=bool(data.get("compensated", False)),
            compensation=data.get("compensation"),
        )


@dataclass
class RelayerMetrics:
    total_transactions: int = 0
    successful_transactions: int = 0
    failed_transactions: int = 0
    total_gas_used: int = 0
    credits_consumed_cents: int = 0
    batches_relayed: int = 0
    unpaid_batches: int = 0
    errors: int = 0
    start_time: Optional[datetime] = None

    def uptime_seconds(self) -> float:
        if self.start_time is None:
            return 0.0
        return (datetime.now(timezone.utc) - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalTransactions": self.total_transactions,
            "successfulTransactions": self.successful_transactions,
            "failedTransactions": self.failed_transactions,
            "totalGasUsed": self.total_gas_used,
            "creditsConsumedCents": self.credits_consumed_cents,
            "batchesRelayed": self.batches_relayed,
            "unpaidBatches": self.unpaid_batches,
            "errors": self.errors,
            "startTime": self.start_time.isoformat() if self.start_time else None,
            "uptimeSeconds": self.uptime_seconds(),
        }
