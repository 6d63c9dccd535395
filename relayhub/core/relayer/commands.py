"""Translate source-chain events into destination commands."""

import logging

from relayhub.core.gateway.models import Command, CommandType
from relayhub.core.ledger.chain import LedgerEvent
from relayhub.core.ledger.hashing import (
    derive_command_id,
    derive_refund_command_id,
    encode_token_payload,
    payload_hash,
    to_bytes,
)

from .models import FailedTransaction

logger = logging.getLogger(__name__)

EVENT_COMMAND_TYPES = {
    "ContractCall": CommandType.APPROVE_CALL,
    "ContractCallWithToken": CommandType.APPROVE_CALL_WITH_MINT,
    "TokenSent": CommandType.MINT_TOKEN,
}

INTENT_EVENTS = frozenset(EVENT_COMMAND_TYPES)

TOKEN_COMMANDS = (CommandType.APPROVE_CALL_WITH_MINT, CommandType.MINT_TOKEN)


def event_key(source_chain: str, event: LedgerEvent) -> str:
    return f"{source_chain}:{event.tx_hash}:{event.log_index}"


def build_command(event: LedgerEvent, source_chain: str) -> Command:
    """Derive the destination command for an intent event."""
    if event.name not in EVENT_COMMAND_TYPES:
        raise ValueError(f"{event.name} is not a cross-chain intent event")

    args = event.args
    payload = to_bytes(args["payload"])
    hashed = payload_hash(payload)
    if hashed != str(args["payload_hash"]).lower():
        raise ValueError(f"Event payload does not match its hash in {event.tx_hash}")

    command_id = derive_command_id(source_chain, event.tx_hash, event.log_index, hashed)
    emitted = args.get("command_id")
    if emitted and emitted != command_id:
        logger.warning(
            "command_id_mismatch",
            extra={"derived": command_id, "emitted": emitted, "tx_hash": event.tx_hash},
        )

    command_type = EVENT_COMMAND_TYPES[event.name]
    has_token = command_type in TOKEN_COMMANDS
    return Command(
        command_id=command_id,
        command_type=command_type,
        payload=payload,
        source_chain=source_chain,
        source_address=args["sender"],
        destination_chain=args["destination_chain"],
        destination_address=args["destination_address"],
        symbol=args.get("symbol") if has_token else None,
        amount=int(args.get("amount") or 0) if has_token else 0,
    )


def build_refund_command(failed: FailedTransaction) -> Command:
    """
    Mint the burned token leg of ``failed`` back to its sender on the source chain.

    The refund id is derived from the original id, so a refund is applied at
    most once however often it is requested.
    """
    original = failed.command
    if original.command_type not in TOKEN_COMMANDS or not original.symbol or original.amount <= 0:
        raise ValueError(f"Command {original.command_id} carries no token leg to refund")

    sender = failed.source_event.get("sender") or original.source_address
    payload = encode_token_payload(sender, original.amount, original.symbol)
    return Command(
        command_id=derive_refund_command_id(original.command_id),
        command_type=CommandType.MINT_TOKEN,
        payload=payload,
        source_chain=original.destination_chain,
        source_address=original.destination_address,
        destination_chain=original.source_chain,
        destination_address=sender,
        symbol=original.symbol,
        amount=original.amount,
    )
