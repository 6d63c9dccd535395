"""Gas credit vault: collateral-backed USD-cent credits priced by an oracle."""

from .models import CreditAccount, PriceObservation
from .oracle import ManualPriceOracle, PriceOracle
from .pricing import (
    CREDIT_SCALE,
    credits_from_collateral,
    gas_cost_cents,
    validate_observation,
)
from .vault import GasCreditVault

__all__ = [
    "CREDIT_SCALE",
    "CreditAccount",
    "GasCreditVault",
    "ManualPriceOracle",
    "PriceObservation",
    "PriceOracle",
    "credits_from_collateral",
    "gas_cost_cents",
    "validate_observation",
]
