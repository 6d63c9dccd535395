"""
In-process ledger.

A ``LocalLedger`` is one isolated chain: it orders transactions, assigns
sender sequence numbers, auto-mines one block per committed transaction and
keeps an append-only event log that relayers poll. Contracts living on the
ledger (gateway, vault, batch executor) open a transaction around every
state transition; a transition that raises commits nothing.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from eth_abi import encode

from relayhub.core.recovery.errors import NonceConflictError

from .hashing import account_key, keccak_hex
from .tokens import TokenLedger


@dataclass(frozen=True)
class LedgerEvent:
    name: str
    address: str
    block_number: int
    tx_hash: str
    log_index: int
    args: Dict[str, Any]
    timestamp: int = 0


@dataclass
class TransactionReceipt:
    tx_hash: str
    sender: str
    nonce: int
    block_number: int
    events: List[LedgerEvent] = field(default_factory=list)


@dataclass
class PendingTransaction:
    tx_hash: str
    sender: str
    nonce: int
    events: List[Dict[str, Any]] = field(default_factory=list)
    receipt: Optional[TransactionReceipt] = None


class LocalLedger:
    """One chain with its own clock, blocks, sequence numbers and token book."""

    def __init__(
        self,
        name: str,
        chain_id: int,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.name = name
        self.chain_id = chain_id
        self.tokens = TokenLedger()
        self._clock = clock or time.time
        self._lock = threading.RLock()
        self._block_number = 0
        self._nonces: Dict[str, int] = {}
        self._events: List[LedgerEvent] = []
        self._receipts: Dict[str, TransactionReceipt] = {}
        self._pending: Optional[PendingTransaction] = None

    # ------------------------------------------------------------------
    # Chain state
    # ------------------------------------------------------------------

    @property
    def block_number(self) -> int:
        return self._block_number

    def timestamp(self) -> int:
        return int(self._clock())

    def mine(self, blocks: int = 1) -> int:
        """Advance the chain by empty blocks."""
        with self._lock:
            self._block_number += blocks
            return self._block_number

    def get_transaction_count(self, sender: str) -> int:
        return self._nonces.get(account_key(sender), 0)

    def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        return self._receipts.get(tx_hash)

    def get_logs(
        self,
        from_block: int,
        to_block: Optional[int] = None,
        names: Optional[Iterable[str]] = None,
        address: Optional[str] = None,
    ) -> List[LedgerEvent]:
        wanted = set(names) if names else None
        upper = self._block_number if to_block is None else to_block
        return [
            event
            for event in list(self._events)
            if from_block <= event.block_number <= upper
            and (wanted is None or event.name in wanted)
            and (address is None or event.address.lower() == address.lower())
        ]

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self, sender: str, nonce: Optional[int] = None) -> Iterator[PendingTransaction]:
        """
        Run a state transition as one transaction from ``sender``.

        Nested calls join the outer transaction. ``nonce``, when given, must
        equal the sender's next sequence number.
        """
        with self._lock:
            if self._pending is not None:
                yield self._pending
                return

            key = account_key(sender)
            expected = self._nonces.get(key, 0)
            if nonce is not None and nonce != expected:
                raise NonceConflictError(
                    f"nonce {nonce} does not match expected {expected} for {sender} on {self.name}",
                    expected=expected,
                    got=nonce,
                    chain=self.name,
                )

            pending = PendingTransaction(
                tx_hash=keccak_hex(
                    encode(["uint256", "string", "uint256"], [self.chain_id, key, expected])
                ),
                sender=key,
                nonce=expected,
            )
            self._pending = pending
            balances = self.tokens.snapshot()
            try:
                yield pending
            except BaseException:
                self.tokens.restore(balances)
                raise
            finally:
                self._pending = None

            # Reached only when the body did not raise.
            self._nonces[key] = expected + 1
            self._block_number += 1
            now = self.timestamp()
            committed = [
                LedgerEvent(
                    name=raw["name"],
                    address=raw["address"],
                    block_number=self._block_number,
                    tx_hash=pending.tx_hash,
                    log_index=index,
                    args=raw["args"],
                    timestamp=now,
                )
                for index, raw in enumerate(pending.events)
            ]
            self._events.extend(committed)
            pending.receipt = TransactionReceipt(
                tx_hash=pending.tx_hash,
                sender=key,
                nonce=expected,
                block_number=self._block_number,
                events=committed,
            )
            self._receipts[pending.tx_hash] = pending.receipt

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """
        Undo the token moves and events of a block that raises.

        The surrounding transaction stays open and still commits. Only state
        held by the ledger itself is restored; contracts keeping their own
        storage must not mutate it before the point where they can fail.
        """
        with self._lock:
            balances = self.tokens.snapshot()
            mark = len(self._pending.events) if self._pending is not None else 0
            try:
                yield
            except BaseException:
                self.tokens.restore(balances)
                if self._pending is not None:
                    del self._pending.events[mark:]
                raise

    def emit(self, name: str, address: str, **args: Any) -> None:
        """Record an event in the open transaction."""
        if self._pending is None:
            raise RuntimeError(f"event {name} emitted outside a transaction on {self.name}")
        self._pending.events.append({"name": name, "address": address, "args": args})

    @property
    def current_transaction(self) -> Optional[PendingTransaction]:
        return self._pending
