"""Price oracle living on the hub ledger."""

import logging
from typing import Dict, Iterable, Optional, Protocol, Set, runtime_checkable

from relayhub.core.ledger.chain import LocalLedger
from relayhub.core.ledger.errors import InvalidPriceDataError, UnauthorizedError
from relayhub.core.ledger.hashing import account_key, normalize_address

from .models import PriceObservation
from .pricing import UINT128_MAX

logger = logging.getLogger(__name__)


@runtime_checkable
class PriceOracle(Protocol):
    def latest(self, asset: str) -> Optional[PriceObservation]:
        """Most recent raw observation for ``asset`` (unvalidated)."""
        ...


class ManualPriceOracle:
    """Oracle updated by a set of trusted feeders."""

    def __init__(
        self,
        ledger: LocalLedger,
        address: str,
        owner: str,
        updaters: Iterable[str] = (),
    ):
        self.ledger = ledger
        self.address = normalize_address(address)
        self.owner = account_key(owner)
        self._updaters: Set[str] = {account_key(u) for u in updaters} | {self.owner}
        self._prices: Dict[str, PriceObservation] = {}

    def latest(self, asset: str) -> Optional[PriceObservation]:
        return self._prices.get(asset)

    def set_price(
        self,
        asset: str,
        price_usd_8dp: int,
        observed_at: Optional[int] = None,
        *,
        caller: str,
    ) -> PriceObservation:
        with self.ledger.transaction(caller):
            if account_key(caller) not in self._updaters:
                raise UnauthorizedError(f"{caller} may not update prices", caller=caller)
            if price_usd_8dp < 0 or price_usd_8dp > UINT128_MAX:
                raise InvalidPriceDataError(
                    f"Price {price_usd_8dp} does not fit uint128", asset=asset
                )
            observation = PriceObservation(
                asset=asset,
                price_usd_8dp=price_usd_8dp,
                observed_at=self.ledger.timestamp() if observed_at is None else observed_at,
            )
            self._prices[asset] = observation
            self.ledger.emit(
                "PriceUpdated",
                self.address,
                asset=asset,
                price=price_usd_8dp,
                observed_at=observation.observed_at,
            )
        logger.debug("price_updated", extra={"asset": asset, "price": price_usd_8dp})
        return observation

    def add_updater(self, updater: str, *, caller: str) -> None:
        if account_key(caller) != self.owner:
            raise UnauthorizedError(f"{caller} is not the oracle owner", caller=caller)
        self._updaters.add(account_key(updater))
