from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from relayhub.core.ledger.hashing import to_bytes


@dataclass(frozen=True)
class MetaTransaction:
    """One call inside a batch."""

    to: str
    value: int = 0
    data: bytes = b""

    def to_dict(self) -> Dict[str, Any]:
        return {"to": self.to, "value": str(self.value), "data": "0x" + self.data.hex()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetaTransaction":
        return cls(
            to=data["to"],
            value=int(data.get("value") or 0),
            data=to_bytes(data.get("data") or b""),
        )


@dataclass(frozen=True)
class BatchExecutionLog:
    batch_id: int
    user: str
    relayer: str
    meta_tx_data: bytes
    gas_used: int
    successes: Tuple[bool, ...]
    timestamp: int
    cost_cents: Optional[int] = None
    paid: bool = False
    tx_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "user": self.user,
            "relayer": self.relayer,
            "gasUsed": self.gas_used,
            "successes": list(self.successes),
            "timestamp": self.timestamp,
            "costCents": self.cost_cents,
            "paid": self.paid,
            "txHash": self.tx_hash,
        }


@dataclass
class UnpaidBatch:
    """A batch whose cost could not be debited after it ran."""

    batch_id: int
    user: str
    gas_used: int
    owed_cents: Optional[int]
    reason: str
    created_at: int
    settled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "user": self.user,
            "gasUsed": self.gas_used,
            "owedCents": self.owed_cents,
            "reason": self.reason,
            "createdAt": self.created_at,
            "settled": self.settled,
        }


@dataclass(frozen=True)
class BatchResult:
    batch_id: int
    successes: List[bool]
    gas_used: int
    cost_cents: Optional[int]
    paid: bool
    tx_hash: str = ""
    unpaid_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "successes": self.successes,
            "gasUsed": self.gas_used,
            "costCents": self.cost_cents,
            "paid": self.paid,
            "txHash": self.tx_hash,
            "unpaidReason": self.unpaid_reason,
        }


@dataclass(frozen=True)
class GasEstimate:
    gas_limit: int
    gas_price_wei: int
    cost_cents: int
    calls: int = 0
