"""
Relayer state persistence.

Processed source events and failed transactions survive restarts as JSON
files under ``state_dir``. Without a state directory both stores are
in-memory only.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import FailedTransaction

MAX_PROCESSED_EVENTS = 10_000


def _write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2)
    os.replace(tmp, path)


def _read_json(path: Path) -> Optional[Any]:
    if not path.exists():
        return None
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


class ProcessedEventStore:
    """Keys of source events already carried to their destination."""

    def __init__(
        self,
        path: Optional[Path] = None,
        max_entries: int = MAX_PROCESSED_EVENTS,
        logger: Optional[logging.Logger] = None,
    ):
        self.path = path
        self.max_entries = max_entries
        self.logger = logger or logging.getLogger(__name__)
        # dict keeps insertion order, so pruning drops the oldest keys
        self._keys: Dict[str, None] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> None:
        self._keys[key] = None
        if len(self._keys) > self.max_entries:
            keep = list(self._keys)[-(self.max_entries // 2):]
            self._keys = dict.fromkeys(keep)
            self.logger.info(f"Pruned processed events to {len(self._keys)} entries")

    def load(self) -> int:
        if self.path is None:
            return 0
        data = _read_json(self.path) or []
        self._keys = dict.fromkeys(str(key) for key in data)
        self.logger.info(f"Loaded {len(self._keys)} processed events from {self.path}")
        return len(self._keys)

    def save(self) -> None:
        if self.path is None:
            return
        _write_json(self.path, list(self._keys))


class FailedTransactionStore:
    """Commands the relayer gave up on, keyed by command id."""

    def __init__(self, path: Optional[Path] = None, logger: Optional[logging.Logger] = None):
        self.path = path
        self.logger = logger or logging.getLogger(__name__)
        self._items: Dict[str, FailedTransaction] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._items)

    async def add(self, failed: FailedTransaction) -> FailedTransaction:
        async with self._lock:
            existing = self._items.get(failed.command_id)
            if existing is not None:
                failed.retry_count += existing.retry_count
                failed.timestamp = existing.timestamp
            self._items[failed.command_id] = failed
            self._save_locked()
        self.logger.warning(
            f"Command {failed.command_id} moved to failed set: {failed.error}"
        )
        return failed

    def get(self, command_id: str) -> Optional[FailedTransaction]:
        return self._items.get(command_id)

    def refunded(self, key: str) -> bool:
        """True when the source event ``key`` was compensated by a refund."""
        return any(f.key == key and f.compensation == "refund" for f in self._items.values())

    def list(self, include_compensated: bool = True) -> List[FailedTransaction]:
        items = sorted(self._items.values(), key=lambda f: f.timestamp)
        if include_compensated:
            return items
        return [f for f in items if not f.compensated]

    async def mark_compensated(self, command_id: str, action: str) -> Optional[FailedTransaction]:
        async with self._lock:
            failed = self._items.get(command_id)
            if failed is None:
                return None
            failed.compensated = True
            failed.compensation = action
            self._save_locked()
            return failed

    async def remove(self, command_id: str) -> Optional[FailedTransaction]:
        async with self._lock:
            failed = self._items.pop(command_id, None)
            if failed is not None:
                self._save_locked()
            return failed

    def load(self) -> int:
        if self.path is None:
            return 0
        data = _read_json(self.path) or []
        self._items = {}
        for raw in data:
            failed = FailedTransaction.from_dict(raw)
            self._items[failed.command_id] = failed
        self.logger.info(f"Loaded {len(self._items)} failed transactions from {self.path}")
        return len(self._items)

    def _save_locked(self) -> None:
        if self.path is None:
            return
        _write_json(self.path, [f.to_dict() for f in self._items.values()])
