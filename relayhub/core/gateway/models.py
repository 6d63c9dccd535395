"""Gateway data model: commands, approvals, chain registrations."""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Tuple

from relayhub.core.ledger.hashing import payload_hash, to_bytes


class CommandType(IntEnum):
    """Command type codes understood by every gateway."""

    APPROVE_CALL = 0
    APPROVE_CALL_WITH_MINT = 1
    BURN_TOKEN = 2
    MINT_TOKEN = 4


class CommandState(str, Enum):
    UNKNOWN = "unknown"
    APPROVED = "approved"
    EXECUTED = "executed"


@dataclass(frozen=True)
class Command:
    """A destination-bound instruction derived from one source event."""

    command_id: str
    command_type: CommandType
    payload: bytes
    source_chain: str
    source_address: str
    destination_chain: str
    destination_address: str
    symbol: Optional[str] = None
    amount: int = 0

    @property
    def payload_hash(self) -> str:
        return payload_hash(self.payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commandId": self.command_id,
            "commandType": int(self.command_type),
            "payload": "0x" + self.payload.hex(),
            "sourceChain": self.source_chain,
            "sourceAddress": self.source_address,
            "destinationChain": self.destination_chain,
            "destinationAddress": self.destination_address,
            "symbol": self.symbol,
            "amount": str(self.amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Command":
        return cls(
            command_id=data["commandId"],
            command_type=CommandType(int(data["commandType"])),
            payload=to_bytes(data["payload"]),
            source_chain=data["sourceChain"],
            source_address=data["sourceAddress"],
            destination_chain=data["destinationChain"],
            destination_address=data["destinationAddress"],
            symbol=data.get("symbol"),
            amount=int(data.get("amount") or 0),
        )


@dataclass(frozen=True)
class ApprovedPayload:
    """What a gateway remembers about an approved command."""

    command_id: str
    command_type: CommandType
    payload_hash: str
    source_chain: str
    source_address: str
    destination_address: str
    symbol: Optional[str]
    amount: int
    source_epoch: int
    authorization_version: int
    signers: Tuple[str, ...] = field(default_factory=tuple)
    approved_at_block: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commandId": self.command_id,
            "commandType": int(self.command_type),
            "payloadHash": self.payload_hash,
            "sourceChain": self.source_chain,
            "sourceAddress": self.source_address,
            "destinationAddress": self.destination_address,
            "symbol": self.symbol,
            "amount": str(self.amount),
            "sourceEpoch": self.source_epoch,
            "authorizationVersion": self.authorization_version,
            "signers": list(self.signers),
            "approvedAtBlock": self.approved_at_block,
        }


@dataclass
class ChainRegistryEntry:
    chain_name: str
    chain_id: int
    is_active: bool = True
    epoch: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chainName": self.chain_name,
            "chainId": self.chain_id,
            "isActive": self.is_active,
            "epoch": self.epoch,
        }


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of ``execute``: the command is consumed either way."""

    command_id: str
    success: bool
    error: Optional[str] = None
