"""Fungible balances held on one ledger, keyed by symbol."""

from collections import defaultdict
from typing import Dict, Tuple

from .errors import InsufficientBalanceError, ZeroAmountError
from .hashing import account_key


class TokenLedger:
    """Mint/burn/transfer book-keeping for every asset on a ledger."""

    def __init__(self) -> None:
        self._balances: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._supply: Dict[str, int] = defaultdict(int)

    def balance_of(self, symbol: str, account: str) -> int:
        return self._balances[symbol].get(account_key(account), 0)

    def total_supply(self, symbol: str) -> int:
        return self._supply.get(symbol, 0)

    def snapshot(self) -> Tuple[Dict[str, Dict[str, int]], Dict[str, int]]:
        """Copy of every balance and supply, for ``restore``."""
        return (
            {symbol: dict(balances) for symbol, balances in self._balances.items()},
            dict(self._supply),
        )

    def restore(self, snapshot: Tuple[Dict[str, Dict[str, int]], Dict[str, int]]) -> None:
        balances, supply = snapshot
        self._balances = defaultdict(lambda: defaultdict(int))
        for symbol, held in balances.items():
            self._balances[symbol].update(held)
        self._supply = defaultdict(int, supply)

    def mint(self, symbol: str, to: str, amount: int) -> None:
        if amount <= 0:
            raise ZeroAmountError("Mint amount must be positive", symbol=symbol)
        self._balances[symbol][account_key(to)] += amount
        self._supply[symbol] += amount

    def burn(self, symbol: str, owner: str, amount: int) -> None:
        if amount <= 0:
            raise ZeroAmountError("Burn amount must be positive", symbol=symbol)
        key = account_key(owner)
        balance = self._balances[symbol].get(key, 0)
        if balance < amount:
            raise InsufficientBalanceError(
                f"{owner} holds {balance} {symbol}, needs {amount}",
                symbol=symbol,
                balance=balance,
                required=amount,
            )
        self._balances[symbol][key] = balance - amount
        self._supply[symbol] -= amount

    def transfer(self, symbol: str, sender: str, to: str, amount: int) -> None:
        if amount <= 0:
            raise ZeroAmountError("Transfer amount must be positive", symbol=symbol)
        key = account_key(sender)
        balance = self._balances[symbol].get(key, 0)
        if balance < amount:
            raise InsufficientBalanceError(
                f"{sender} holds {balance} {symbol}, needs {amount}",
                symbol=symbol,
                balance=balance,
                required=amount,
            )
        self._balances[symbol][key] = balance - amount
        self._balances[symbol][account_key(to)] += amount
