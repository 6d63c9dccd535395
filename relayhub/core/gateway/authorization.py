"""
Relayer authorization table.

Shared by the gateways and batch executors of a deployment. Every change
produces a new immutable snapshot with a higher version; approvals record
the version they were checked against and are never re-validated.
"""

import logging
import threading
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional

from relayhub.core.ledger.errors import InvalidAddressError
from relayhub.core.ledger.hashing import normalize_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationSnapshot:
    version: int
    relayers: FrozenSet[str]
    threshold: int

    def is_authorized(self, address: str) -> bool:
        try:
            return normalize_address(address) in self.relayers
        except InvalidAddressError:
            return False


class RelayerAuthorizationTable:
    """Hot-reloadable relayer set with an explicit approval quorum."""

    def __init__(self, relayers: Iterable[str] = (), threshold: int = 1):
        if threshold < 1:
            raise ValueError("approval threshold must be at least 1")
        self._lock = threading.Lock()
        self._snapshot = AuthorizationSnapshot(
            version=1,
            relayers=frozenset(normalize_address(r) for r in relayers),
            threshold=threshold,
        )

    def snapshot(self) -> AuthorizationSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    @property
    def threshold(self) -> int:
        return self._snapshot.threshold

    @property
    def relayers(self) -> List[str]:
        return sorted(self._snapshot.relayers)

    def is_authorized(self, address: str) -> bool:
        return self._snapshot.is_authorized(address)

    def add_relayer(self, address: str) -> AuthorizationSnapshot:
        current = self._snapshot
        return self.reload(current.relayers | {normalize_address(address)}, current.threshold)

    def remove_relayer(self, address: str) -> AuthorizationSnapshot:
        current = self._snapshot
        return self.reload(current.relayers - {normalize_address(address)}, current.threshold)

    def set_threshold(self, threshold: int) -> AuthorizationSnapshot:
        return self.reload(self._snapshot.relayers, threshold)

    def reload(
        self,
        relayers: Iterable[str],
        threshold: Optional[int] = None,
    ) -> AuthorizationSnapshot:
        """Atomically replace the relayer set (and optionally the quorum)."""
        normalized = frozenset(normalize_address(r) for r in relayers)
        with self._lock:
            new_threshold = self._snapshot.threshold if threshold is None else threshold
            if new_threshold < 1:
                raise ValueError("approval threshold must be at least 1")
            self._snapshot = AuthorizationSnapshot(
                version=self._snapshot.version + 1,
                relayers=normalized,
                threshold=new_threshold,
            )
            snapshot = self._snapshot

        if snapshot.threshold > len(snapshot.relayers):
            logger.warning(
                "authorization_quorum_unreachable",
                extra={"threshold": snapshot.threshold, "relayers": len(snapshot.relayers)},
            )
        logger.info(
            "authorization_reloaded",
            extra={"version": snapshot.version, "relayers": len(snapshot.relayers)},
        )
        return snapshot
