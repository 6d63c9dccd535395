"""Command state storage behind a key/value interface."""

from typing import Dict, Optional, Protocol, Set, runtime_checkable

from .models import ApprovedPayload, CommandState


@runtime_checkable
class ReplayLedger(Protocol):
    """command_id -> {unknown, approved, executed}; transitions only move forward."""

    def get_state(self, command_id: str) -> CommandState:
        ...

    def get_approved(self, command_id: str) -> Optional[ApprovedPayload]:
        ...

    def put_approved(self, approved: ApprovedPayload) -> None:
        ...

    def mark_executed(self, command_id: str) -> None:
        ...


class InMemoryReplayLedger:
    """Replay ledger held in the gateway's own state."""

    def __init__(self) -> None:
        self._approved: Dict[str, ApprovedPayload] = {}
        self._executed: Set[str] = set()

    def get_state(self, command_id: str) -> CommandState:
        if command_id in self._executed:
            return CommandState.EXECUTED
        if command_id in self._approved:
            return CommandState.APPROVED
        return CommandState.UNKNOWN

    def get_approved(self, command_id: str) -> Optional[ApprovedPayload]:
        return self._approved.get(command_id)

    def put_approved(self, approved: ApprovedPayload) -> None:
        if approved.command_id in self._approved:
            raise ValueError(f"command {approved.command_id} already approved")
        self._approved[approved.command_id] = approved

    def mark_executed(self, command_id: str) -> None:
        if command_id not in self._approved:
            raise ValueError(f"command {command_id} is not approved")
        if command_id in self._executed:
            raise ValueError(f"command {command_id} already executed")
        self._executed.add(command_id)

    def __len__(self) -> int:
        return len(self._approved)
