"""Chains a gateway accepts commands from and emits intents to."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from relayhub.core.ledger.errors import ChainAlreadyRegisteredError, InvalidChainError

from .models import ChainRegistryEntry


class ChainRegistry:
    """Registered chains keyed by name.

    Every registration gets a fresh epoch. Approvals remember the epoch of
    their source chain, so a command approved under a registration that was
    later removed can never execute, even after the name is registered again.

    Usage:
        registry = ChainRegistry()
        registry.register("ethereum", 1)
        registry.is_active("ethereum")   # True
        registry.deregister("ethereum")
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._active: Dict[str, ChainRegistryEntry] = {}
        self._history: List[ChainRegistryEntry] = []
        self._next_epoch = 1

    def register(self, name: str, chain_id: int) -> ChainRegistryEntry:
        if not name:
            raise InvalidChainError("Chain name must not be empty")
        if name in self._active:
            raise ChainAlreadyRegisteredError(
                f"Chain {name} is already registered", chain=name
            )
        entry = ChainRegistryEntry(
            chain_name=name,
            chain_id=chain_id,
            is_active=True,
            epoch=self._next_epoch,
        )
        self._next_epoch += 1
        self._active[name] = entry
        self._history.append(entry)
        self._logger.info("Chain registered: %s (id=%s, epoch=%d)", name, chain_id, entry.epoch)
        return entry

    def deregister(self, name: str) -> ChainRegistryEntry:
        entry = self._active.pop(name, None)
        if entry is None:
            raise InvalidChainError(f"Chain {name} is not registered", chain=name)
        entry.is_active = False
        self._logger.info("Chain deregistered: %s (epoch=%d)", name, entry.epoch)
        return entry

    def get(self, name: str) -> Optional[ChainRegistryEntry]:
        return self._active.get(name)

    def is_active(self, name: str) -> bool:
        return name in self._active

    def epoch_of(self, name: str) -> Optional[int]:
        entry = self._active.get(name)
        return entry.epoch if entry else None

    def require_active(self, name: str) -> ChainRegistryEntry:
        entry = self._active.get(name)
        if entry is None:
            raise InvalidChainError(f"Chain {name} is not registered", chain=name)
        return entry

    def active_chains(self) -> List[ChainRegistryEntry]:
        return list(self._active.values())

    def history(self) -> List[ChainRegistryEntry]:
        return list(self._history)
