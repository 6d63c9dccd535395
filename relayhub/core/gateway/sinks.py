"""Destination-side command handlers."""

from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, runtime_checkable

from relayhub.core.ledger.hashing import account_key


@runtime_checkable
class CommandSink(Protocol):
    """Anything that can receive an executed command."""

    def on_command(self, source_chain: str, source_address: str, payload: bytes) -> None:
        ...

    def on_command_with_asset(
        self,
        source_chain: str,
        source_address: str,
        payload: bytes,
        symbol: str,
        amount: int,
    ) -> None:
        ...


class SinkRegistry:
    """Sinks keyed by the destination address they live at."""

    def __init__(self) -> None:
        self._sinks: Dict[str, CommandSink] = {}

    def register(self, address: str, sink: CommandSink) -> None:
        if not isinstance(sink, CommandSink):
            raise TypeError(f"{type(sink).__name__} does not implement CommandSink")
        self._sinks[account_key(address)] = sink

    def unregister(self, address: str) -> None:
        self._sinks.pop(account_key(address), None)

    def get(self, address: str) -> Optional[CommandSink]:
        return self._sinks.get(account_key(address))


@dataclass(frozen=True)
class ReceivedMessage:
    source_chain: str
    source_address: str
    payload: bytes
    symbol: Optional[str] = None
    amount: int = 0


class InboxSink:
    """Stores every message it receives."""

    def __init__(self) -> None:
        self.messages: List[ReceivedMessage] = []

    def on_command(self, source_chain: str, source_address: str, payload: bytes) -> None:
        self.messages.append(ReceivedMessage(source_chain, source_address, payload))

    def on_command_with_asset(
        self,
        source_chain: str,
        source_address: str,
        payload: bytes,
        symbol: str,
        amount: int,
    ) -> None:
        self.messages.append(
            ReceivedMessage(source_chain, source_address, payload, symbol, amount)
        )
