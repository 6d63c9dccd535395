"""Contracts a batch can call on the executor's ledger."""

from typing import Callable, Dict, Optional

from relayhub.core.ledger.hashing import account_key

# (sender, value, data) -> gas consumed, or None for the default charge
CallTarget = Callable[[str, int, bytes], Optional[int]]


class CallTargetRegistry:
    def __init__(self) -> None:
        self._targets: Dict[str, CallTarget] = {}

    def register(self, address: str, target: CallTarget) -> None:
        self._targets[account_key(address)] = target

    def unregister(self, address: str) -> None:
        self._targets.pop(account_key(address), None)

    def get(self, address: str) -> Optional[CallTarget]:
        return self._targets.get(account_key(address))

    def __contains__(self, address: str) -> bool:
        return account_key(address) in self._targets
