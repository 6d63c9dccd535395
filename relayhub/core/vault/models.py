from dataclasses import dataclass
from typing import Any, Dict

from .pricing import CREDIT_SCALE


@dataclass(frozen=True)
class PriceObservation:
    asset: str
    price_usd_8dp: int
    observed_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "priceUsd8dp": str(self.price_usd_8dp),
            "observedAt": self.observed_at,
        }


@dataclass
class CreditAccount:
    """A user's position in the vault.

    ``credit_exact`` is the balance in units of 10**-24 cent; the spendable
    balance is its floor in whole cents.
    """

    owner: str
    credit_exact: int = 0
    deposit_balance: int = 0

    @property
    def credit_balance_cents(self) -> int:
        return self.credit_exact // CREDIT_SCALE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "creditBalanceCents": self.credit_balance_cents,
            "depositBalance": str(self.deposit_balance),
        }
