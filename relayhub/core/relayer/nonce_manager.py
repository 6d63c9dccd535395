"""
Nonce management for concurrent submissions.

Each (chain, sender) pair has its own lock. ``submission`` holds that lock
across "read nonce, build, submit" so two workers can never race for the
same sequence number.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Optional, Set

from .ledger_client import LedgerClient


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class NonceState:
    """Tracks nonce state for an address on a chain."""
    address: str
    chain: str
    confirmed_nonce: int                        # Next nonce the ledger expects
    pending_nonce: int                          # Next available for use
    reserved_nonces: Set[int] = field(default_factory=set)
    last_updated: datetime = field(default_factory=_utcnow)


class NonceManager:
    """
    Manages nonces for concurrent transaction submission.

    Syncs with the ledger on first use and after any failed submission;
    between those, nonces are handed out from the cached state.
    """

    def __init__(self, client: LedgerClient):
        self._client = client
        self._states: Dict[str, NonceState] = {}  # key: "{chain}:{address}"
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_key(self, chain: str, address: str) -> str:
        return f"{chain}:{address.lower()}"

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def _sync_locked(self, key: str, chain: str, address: str) -> int:
        on_chain_nonce = await self._client.get_transaction_count(chain, address)
        state = self._states.get(key)
        if state is None:
            self._states[key] = NonceState(
                address=address.lower(),
                chain=chain,
                confirmed_nonce=on_chain_nonce,
                pending_nonce=on_chain_nonce,
            )
        else:
            state.confirmed_nonce = on_chain_nonce
            # Clear any reserved nonces that are now confirmed
            state.reserved_nonces = {n for n in state.reserved_nonces if n >= on_chain_nonce}
            # Nothing in flight any more: trust the ledger
            if not state.reserved_nonces or on_chain_nonce > state.pending_nonce:
                state.pending_nonce = on_chain_nonce
            state.last_updated = _utcnow()
        return on_chain_nonce

    def _reserve_locked(self, key: str) -> int:
        state = self._states[key]
        nonce = state.pending_nonce
        while nonce in state.reserved_nonces:
            nonce += 1
        state.reserved_nonces.add(nonce)
        state.pending_nonce = nonce + 1
        return nonce

    def _confirm_locked(self, key: str, nonce: int) -> None:
        state = self._states.get(key)
        if state is None:
            return
        state.reserved_nonces.discard(nonce)
        if nonce >= state.confirmed_nonce:
            state.confirmed_nonce = nonce + 1
        state.last_updated = _utcnow()

    @asynccontextmanager
    async def submission(self, chain: str, address: str) -> AsyncIterator[int]:
        """
        Hold the (chain, address) lock for one submission and yield its nonce.

        On success the nonce is confirmed. On any error the state is resynced
        with the ledger, since a rejected or timed-out submission may or may
        not have consumed it.
        """
        key = self._get_key(chain, address)
        async with self._get_lock(key):
            if key not in self._states:
                await self._sync_locked(key, chain, address)
            nonce = self._reserve_locked(key)
            try:
                yield nonce
            except BaseException:
                self._states[key].reserved_nonces.discard(nonce)
                await self._sync_locked(key, chain, address)
                raise
            self._confirm_locked(key, nonce)

    def get_state(self, address: str, chain: str) -> Optional[NonceState]:
        """Get the current nonce state for an address."""
        return self._states.get(self._get_key(chain, address))
