"""
Gas Credit Vault

Converts deposited collateral into USD-cent credits at the oracle price and
lets authorized gateways debit those credits for relayed work.

Deposit and withdraw hard-fail on any problem. ``consume_credits`` reports a
shortfall with ``False`` and leaves state untouched, because settlement runs
after the work it pays for has already happened.
"""

import logging
from typing import Dict, Set

from relayhub.core.ledger.chain import LocalLedger
from relayhub.core.ledger.errors import (
    InsufficientBalanceError,
    InsufficientCreditsError,
    InvalidPriceDataError,
    UnauthorizedError,
    UnauthorizedGatewayError,
    ZeroAmountError,
)
from relayhub.core.ledger.hashing import account_key, normalize_address

from .models import CreditAccount, PriceObservation
from .oracle import PriceOracle
from .pricing import (
    cents_to_exact,
    credits_from_collateral,
    exact_credits,
    gas_cost_cents,
    validate_observation,
)

logger = logging.getLogger(__name__)


class GasCreditVault:
    def __init__(
        self,
        ledger: LocalLedger,
        address: str,
        owner: str,
        oracle: PriceOracle,
        price_key: str,
        collateral_symbol: str,
        max_price_age_seconds: int = 3600,
    ):
        self.ledger = ledger
        self.address = normalize_address(address)
        self.owner = account_key(owner)
        self.oracle = oracle
        self.price_key = price_key
        self.collateral_symbol = collateral_symbol
        self.max_price_age_seconds = max_price_age_seconds
        self._accounts: Dict[str, CreditAccount] = {}
        self._authorized_gateways: Set[str] = set()

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    def deposit(self, amount: int, *, caller: str) -> int:
        """Lock ``amount`` of collateral and return the whole cents credited."""
        with self.ledger.transaction(caller):
            if amount <= 0:
                raise ZeroAmountError("Deposit amount must be positive")
            price = self.get_price()
            self.ledger.tokens.transfer(self.collateral_symbol, caller, self.address, amount)

            account = self._account(caller)
            before = account.credit_balance_cents
            account.credit_exact += exact_credits(amount, price.price_usd_8dp)
            account.deposit_balance += amount
            credits_added = account.credit_balance_cents - before

            self.ledger.emit(
                "Deposited",
                self.address,
                user=account.owner,
                amount=amount,
                credits_added=credits_added,
                price=price.price_usd_8dp,
            )
        logger.info(
            "vault_deposit",
            extra={"user": account.owner, "amount": str(amount), "credits_added": credits_added},
        )
        return credits_added

    def withdraw(self, amount: int, *, caller: str) -> int:
        """Release ``amount`` of collateral and return the whole cents debited."""
        with self.ledger.transaction(caller):
            if amount <= 0:
                raise ZeroAmountError("Withdraw amount must be positive")
            account = self._account(caller)
            if account.deposit_balance < amount:
                raise InsufficientBalanceError(
                    f"Deposit balance {account.deposit_balance} is below {amount}",
                    balance=account.deposit_balance,
                    required=amount,
                )
            price = self.get_price()
            debit = exact_credits(amount, price.price_usd_8dp)
            if account.credit_exact < debit:
                raise InsufficientCreditsError(
                    "Withdrawal would exceed the remaining credits",
                    balance_cents=account.credit_balance_cents,
                    required_cents=credits_from_collateral(amount, price.price_usd_8dp),
                )

            before = account.credit_balance_cents
            self.ledger.tokens.transfer(self.collateral_symbol, self.address, caller, amount)
            account.credit_exact -= debit
            account.deposit_balance -= amount
            credits_removed = before - account.credit_balance_cents

            self.ledger.emit(
                "Withdrawn",
                self.address,
                user=account.owner,
                amount=amount,
                credits_removed=credits_removed,
                price=price.price_usd_8dp,
            )
        logger.info(
            "vault_withdraw",
            extra={"user": account.owner, "amount": str(amount), "credits_removed": credits_removed},
        )
        return credits_removed

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def consume_credits(self, user: str, gas_usd_cents: int, *, caller: str) -> bool:
        """Debit ``gas_usd_cents`` from ``user``; False on shortfall."""
        with self.ledger.transaction(caller):
            if not self.is_authorized_gateway(caller):
                raise UnauthorizedGatewayError(
                    f"{caller} is not an authorized gateway", gateway=caller
                )
            if gas_usd_cents < 0:
                raise ZeroAmountError("Credit amount must not be negative")

            key = account_key(user)
            account = self._accounts.get(key)
            balance = account.credit_exact if account else 0
            debit = cents_to_exact(gas_usd_cents)
            if balance < debit:
                logger.warning(
                    "vault_credit_shortfall",
                    extra={
                        "user": key,
                        "required_cents": gas_usd_cents,
                        "balance_cents": account.credit_balance_cents if account else 0,
                    },
                )
                return False

            if account is not None:
                account.credit_exact -= debit
            self.ledger.emit(
                "CreditsUsed",
                self.address,
                user=key,
                gateway=account_key(caller),
                amount_cents=gas_usd_cents,
            )
            return True

    def has_enough_credits(self, user: str, gas_usd_cents: int) -> bool:
        account = self._accounts.get(account_key(user))
        balance = account.credit_exact if account else 0
        return balance >= cents_to_exact(gas_usd_cents)

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def get_price(self) -> PriceObservation:
        """Collateral price, validated against the ledger clock right now."""
        return self.get_asset_price(self.price_key)

    def get_asset_price(self, asset: str) -> PriceObservation:
        observation = self.oracle.latest(asset)
        if observation is None:
            raise InvalidPriceDataError(f"No price published for {asset}", asset=asset)
        validate_observation(
            observation.price_usd_8dp,
            observation.observed_at,
            self.ledger.timestamp(),
            self.max_price_age_seconds,
            asset=asset,
        )
        return observation

    def calculate_credits_from_collateral(self, amount: int) -> int:
        return credits_from_collateral(amount, self.get_price().price_usd_8dp)

    @staticmethod
    def calculate_credits_for_gas(gas_used: int, gas_price_wei: int, native_price_usd_8dp: int) -> int:
        return gas_cost_cents(gas_used, gas_price_wei, native_price_usd_8dp)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_credit_balance(self, user: str) -> int:
        account = self._accounts.get(account_key(user))
        return account.credit_balance_cents if account else 0

    def get_deposit_balance(self, user: str) -> int:
        account = self._accounts.get(account_key(user))
        return account.deposit_balance if account else 0

    def get_account(self, user: str) -> CreditAccount:
        account = self._accounts.get(account_key(user))
        if account is None:
            return CreditAccount(owner=account_key(user))
        return CreditAccount(account.owner, account.credit_exact, account.deposit_balance)

    def is_authorized_gateway(self, gateway: str) -> bool:
        return account_key(gateway) in self._authorized_gateways

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def set_gateway_authorization(self, gateway: str, authorized: bool, *, caller: str) -> None:
        with self.ledger.transaction(caller):
            self._require_owner(caller)
            key = account_key(gateway)
            if authorized:
                self._authorized_gateways.add(key)
            else:
                self._authorized_gateways.discard(key)
            self.ledger.emit(
                "GatewayAuthorizationChanged", self.address, gateway=key, authorized=authorized
            )

    def set_max_price_age(self, seconds: int, *, caller: str) -> None:
        with self.ledger.transaction(caller):
            self._require_owner(caller)
            if seconds <= 0:
                raise ZeroAmountError("Max price age must be positive")
            self.max_price_age_seconds = seconds
            self.ledger.emit("MaxPriceAgeChanged", self.address, seconds=seconds)

    def _require_owner(self, caller: str) -> None:
        if account_key(caller) != self.owner:
            raise UnauthorizedError(f"{caller} is not the vault owner", caller=caller)

    def _account(self, user: str) -> CreditAccount:
        key = account_key(user)
        account = self._accounts.get(key)
        if account is None:
            account = CreditAccount(owner=key)
            self._accounts[key] = account
        return account
