"""
Gateway State Machine

Per-ledger source of truth for "has this cross-chain instruction already
happened here". Commands move Unknown -> Approved -> Executed and never back.

Execute marks the command consumed before performing its effect. A failing
effect is reported through a ``CommandExecutionFailed`` event and a failed
outcome; it never makes the command executable again.
"""

import logging
from typing import List, Optional, Sequence

from eth_abi import decode

from relayhub.core.ledger.chain import LocalLedger
from relayhub.core.ledger.errors import (
    AlreadyApprovedError,
    AlreadyExecutedError,
    GatewayPausedError,
    InsufficientBalanceError,
    InsufficientSignaturesError,
    InvalidAddressError,
    InvalidChainError,
    InvalidPayloadHashError,
    NotApprovedError,
    UnauthorizedError,
    UnauthorizedRelayerError,
    ZeroAmountError,
)
from relayhub.core.ledger.hashing import (
    BytesLike,
    account_key,
    approval_digest,
    derive_command_id,
    encode_token_payload,
    normalize_address,
    payload_hash as hash_payload,
    to_bytes,
)
from relayhub.core.ledger.signatures import recover_digest_signer

from .authorization import RelayerAuthorizationTable
from .chain_registry import ChainRegistry
from .models import ApprovedPayload, ChainRegistryEntry, CommandState, CommandType, ExecutionOutcome
from .replay import InMemoryReplayLedger, ReplayLedger
from .sinks import SinkRegistry

logger = logging.getLogger(__name__)


class GatewayStateMachine:
    """Accepts quorum-signed commands and applies each one at most once."""

    def __init__(
        self,
        ledger: LocalLedger,
        address: str,
        admin: str,
        authorization: RelayerAuthorizationTable,
        replay: Optional[ReplayLedger] = None,
        registry: Optional[ChainRegistry] = None,
        sinks: Optional[SinkRegistry] = None,
    ):
        self.ledger = ledger
        self.address = normalize_address(address)
        self.admin = account_key(admin)
        self.authorization = authorization
        self.replay = replay or InMemoryReplayLedger()
        self.registry = registry or ChainRegistry()
        self.sinks = sinks or SinkRegistry()
        self._paused = False

    @property
    def chain_name(self) -> str:
        return self.ledger.name

    @property
    def chain_id(self) -> int:
        return self.ledger.chain_id

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def register_chain(self, name: str, chain_id: int, *, caller: str) -> ChainRegistryEntry:
        with self.ledger.transaction(caller):
            self._require_admin(caller)
            entry = self.registry.register(name, chain_id)
            self.ledger.emit(
                "ChainRegistered", self.address, chain_name=name, chain_id=chain_id, epoch=entry.epoch
            )
            return entry

    def deregister_chain(self, name: str, *, caller: str) -> ChainRegistryEntry:
        with self.ledger.transaction(caller):
            self._require_admin(caller)
            entry = self.registry.deregister(name)
            self.ledger.emit("ChainDeregistered", self.address, chain_name=name, epoch=entry.epoch)
            return entry

    def pause(self, *, caller: str, reason: str = "manual") -> None:
        with self.ledger.transaction(caller):
            self._require_admin(caller)
            self._pause(reason)

    def unpause(self, *, caller: str) -> None:
        with self.ledger.transaction(caller):
            self._require_admin(caller)
            self._paused = False
            self.ledger.emit("Unpaused", self.address)
        logger.warning("gateway_unpaused", extra={"chain": self.chain_name})

    # ------------------------------------------------------------------
    # Source side
    # ------------------------------------------------------------------

    def emit_intent(
        self,
        destination_chain: str,
        destination_address: str,
        payload: BytesLike,
        symbol: Optional[str] = None,
        amount: int = 0,
        *,
        caller: str,
    ) -> str:
        """Publish a cross-chain call and return its command id."""
        raw_payload = to_bytes(payload)
        with self.ledger.transaction(caller) as tx:
            self._require_not_paused()
            self.registry.require_active(destination_chain)
            if not destination_address:
                raise InvalidAddressError("Destination address must not be empty")

            has_token_leg = symbol is not None
            if has_token_leg:
                if amount <= 0:
                    raise ZeroAmountError("Token leg amount must be positive", symbol=symbol)
                self.ledger.tokens.burn(symbol, caller, amount)
            elif amount:
                raise InsufficientBalanceError("Token leg has an amount but no asset symbol")

            hashed = hash_payload(raw_payload)
            command_id = derive_command_id(
                self.chain_name, tx.tx_hash, len(tx.events), hashed
            )
            self.ledger.emit(
                "ContractCallWithToken" if has_token_leg else "ContractCall",
                self.address,
                sender=account_key(caller),
                destination_chain=destination_chain,
                destination_address=destination_address,
                payload_hash=hashed,
                payload="0x" + raw_payload.hex(),
                symbol=symbol,
                amount=amount,
                command_id=command_id,
            )
            return command_id

    def send_token(
        self,
        destination_chain: str,
        destination_address: str,
        symbol: str,
        amount: int,
        *,
        caller: str,
    ) -> str:
        """Burn ``amount`` here so it can be minted to ``destination_address`` there."""
        with self.ledger.transaction(caller) as tx:
            self._require_not_paused()
            self.registry.require_active(destination_chain)
            if not destination_address:
                raise InvalidAddressError("Destination address must not be empty")
            if amount <= 0:
                raise ZeroAmountError("Transfer amount must be positive", symbol=symbol)
            self.ledger.tokens.burn(symbol, caller, amount)

            raw_payload = encode_token_payload(destination_address, amount, symbol)
            hashed = hash_payload(raw_payload)
            command_id = derive_command_id(
                self.chain_name, tx.tx_hash, len(tx.events), hashed
            )
            self.ledger.emit(
                "TokenSent",
                self.address,
                sender=account_key(caller),
                destination_chain=destination_chain,
                destination_address=destination_address,
                payload_hash=hashed,
                payload="0x" + raw_payload.hex(),
                symbol=symbol,
                amount=amount,
                command_id=command_id,
            )
            return command_id

    # ------------------------------------------------------------------
    # Destination side
    # ------------------------------------------------------------------

    def approve(
        self,
        command_id: str,
        source_chain: str,
        source_address: str,
        payload_hash: str,
        signatures: Sequence[BytesLike],
        command_type: CommandType = CommandType.APPROVE_CALL,
        destination_address: str = "",
        symbol: Optional[str] = None,
        amount: int = 0,
        *,
        caller: str,
    ) -> ApprovedPayload:
        command_type = CommandType(command_type)
        conflicting: Optional[ApprovedPayload] = None

        with self.ledger.transaction(caller):
            self._require_not_paused()
            snapshot = self.authorization.snapshot()
            if not snapshot.is_authorized(caller):
                raise UnauthorizedRelayerError(
                    f"{caller} is not an authorized relayer", relayer=caller
                )
            source = self.registry.require_active(source_chain)

            digest = approval_digest(
                command_id,
                source_chain,
                source_address,
                payload_hash,
                int(command_type),
                destination_address,
                symbol,
                amount,
                self.chain_id,
                self.address,
            )
            signers = self._authorized_signers(digest, signatures, snapshot.relayers)
            if len(signers) < snapshot.threshold:
                raise InsufficientSignaturesError(
                    f"{len(signers)} valid relayer signatures, {snapshot.threshold} required",
                    valid=len(signers),
                    threshold=snapshot.threshold,
                )

            existing = self.replay.get_approved(command_id)
            if existing is not None:
                if existing.payload_hash != payload_hash.lower():
                    conflicting = existing
                    self._pause("conflicting approval")
                else:
                    raise AlreadyApprovedError(
                        f"Command {command_id} already approved", command_id=command_id
                    )
            else:
                approved = ApprovedPayload(
                    command_id=command_id,
                    command_type=command_type,
                    payload_hash=payload_hash.lower(),
                    source_chain=source_chain,
                    source_address=source_address,
                    destination_address=destination_address,
                    symbol=symbol,
                    amount=amount,
                    source_epoch=source.epoch,
                    authorization_version=snapshot.version,
                    signers=tuple(sorted(signers)),
                    approved_at_block=self.ledger.block_number + 1,
                )
                self.replay.put_approved(approved)
                self.ledger.emit(
                    "ContractCallApproved",
                    self.address,
                    command_id=command_id,
                    source_chain=source_chain,
                    source_address=source_address,
                    destination_address=destination_address,
                    payload_hash=approved.payload_hash,
                    command_type=int(command_type),
                )

        if conflicting is not None:
            logger.critical(
                "conflicting_approval_detected",
                extra={
                    "chain": self.chain_name,
                    "command_id": command_id,
                    "approved_hash": conflicting.payload_hash,
                    "conflicting_hash": payload_hash,
                },
            )
            raise GatewayPausedError(
                f"Conflicting approval for {command_id}; gateway paused",
                command_id=command_id,
            )
        return approved

    def execute(self, command_id: str, payload: BytesLike, *, caller: str) -> ExecutionOutcome:
        raw_payload = to_bytes(payload)
        with self.ledger.transaction(caller):
            self._require_not_paused()
            state = self.replay.get_state(command_id)
            if state == CommandState.EXECUTED:
                raise AlreadyExecutedError(
                    f"Command {command_id} already executed", command_id=command_id
                )
            approved = self.replay.get_approved(command_id)
            if state != CommandState.APPROVED or approved is None:
                raise NotApprovedError(f"Command {command_id} is not approved", command_id=command_id)
            if hash_payload(raw_payload) != approved.payload_hash:
                raise InvalidPayloadHashError(
                    f"Payload hash does not match approval of {command_id}",
                    command_id=command_id,
                )
            if self.registry.epoch_of(approved.source_chain) != approved.source_epoch:
                raise InvalidChainError(
                    f"Source chain {approved.source_chain} was deregistered",
                    chain=approved.source_chain,
                )

            self.replay.mark_executed(command_id)
            self.ledger.emit("CommandExecuted", self.address, command_id=command_id)

            try:
                with self.ledger.savepoint():
                    self._apply_effect(approved, raw_payload)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "command_effect_failed",
                    extra={"chain": self.chain_name, "command_id": command_id, "error": str(exc)},
                )
                self.ledger.emit(
                    "CommandExecutionFailed",
                    self.address,
                    command_id=command_id,
                    reason=str(exc),
                )
                return ExecutionOutcome(command_id=command_id, success=False, error=str(exc))

            return ExecutionOutcome(command_id=command_id, success=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_executed(self, command_id: str) -> bool:
        return self.replay.get_state(command_id) == CommandState.EXECUTED

    def is_approved(self, command_id: str) -> bool:
        return self.replay.get_state(command_id) == CommandState.APPROVED

    def get_command_state(self, command_id: str) -> CommandState:
        return self.replay.get_state(command_id)

    def get_approved(self, command_id: str) -> Optional[ApprovedPayload]:
        return self.replay.get_approved(command_id)

    def get_relayer_count(self) -> int:
        return len(self.authorization.relayers)

    def get_all_relayers(self) -> List[str]:
        return self.authorization.relayers

    def is_relayer(self, address: str) -> bool:
        return self.authorization.is_authorized(address)

    def is_chain_active(self, name: str) -> bool:
        return self.registry.is_active(name)

    def get_chains(self) -> List[ChainRegistryEntry]:
        return self.registry.active_chains()

    @property
    def is_paused(self) -> bool:
        return self._paused

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_effect(self, approved: ApprovedPayload, payload: bytes) -> None:
        command_type = approved.command_type
        if command_type == CommandType.APPROVE_CALL:
            sink = self._require_sink(approved.destination_address)
            sink.on_command(approved.source_chain, approved.source_address, payload)
        elif command_type == CommandType.APPROVE_CALL_WITH_MINT:
            self.ledger.tokens.mint(approved.symbol, approved.destination_address, approved.amount)
            sink = self._require_sink(approved.destination_address)
            sink.on_command_with_asset(
                approved.source_chain,
                approved.source_address,
                payload,
                approved.symbol,
                approved.amount,
            )
        elif command_type in (CommandType.MINT_TOKEN, CommandType.BURN_TOKEN):
            account, amount, symbol = decode(["string", "uint256", "string"], payload)
            if command_type == CommandType.MINT_TOKEN:
                self.ledger.tokens.mint(symbol, account, amount)
            else:
                self.ledger.tokens.burn(symbol, account, amount)
        else:
            raise ValueError(f"Unsupported command type {command_type}")

    def _require_sink(self, address: str):
        sink = self.sinks.get(address)
        if sink is None:
            raise LookupError(f"No command sink registered at {address}")
        return sink

    def _authorized_signers(
        self,
        digest: bytes,
        signatures: Sequence[BytesLike],
        relayers,
    ) -> set:
        signers = set()
        for signature in signatures:
            signer = recover_digest_signer(digest, signature)
            if signer is not None and signer in relayers:
                signers.add(signer)
        return signers

    def _require_admin(self, caller: str) -> None:
        if account_key(caller) != self.admin:
            raise UnauthorizedError(f"{caller} is not the gateway admin", caller=caller)

    def _require_not_paused(self) -> None:
        if self._paused:
            raise GatewayPausedError(f"Gateway on {self.chain_name} is paused")

    def _pause(self, reason: str) -> None:
        self._paused = True
        self.ledger.emit("Paused", self.address, reason=reason)
        logger.warning("gateway_paused", extra={"chain": self.chain_name, "reason": reason})
