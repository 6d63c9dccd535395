"""Gateway: per-ledger command approval and at-most-once execution."""

from .authorization import AuthorizationSnapshot, RelayerAuthorizationTable
from .chain_registry import ChainRegistry
from .models import (
    ApprovedPayload,
    ChainRegistryEntry,
    Command,
    CommandState,
    CommandType,
    ExecutionOutcome,
)
from .replay import InMemoryReplayLedger, ReplayLedger
from .sinks import CommandSink, InboxSink, ReceivedMessage, SinkRegistry
from .state_machine import GatewayStateMachine

__all__ = [
    "ApprovedPayload",
    "AuthorizationSnapshot",
    "ChainRegistry",
    "ChainRegistryEntry",
    "Command",
    "CommandSink",
    "CommandState",
    "CommandType",
    "ExecutionOutcome",
    "GatewayStateMachine",
    "InMemoryReplayLedger",
    "InboxSink",
    "ReceivedMessage",
    "RelayerAuthorizationTable",
    "ReplayLedger",
    "SinkRegistry",
]
