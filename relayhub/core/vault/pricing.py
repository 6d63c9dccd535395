"""
Pricing rules shared by the vault and the batch executor.

Collateral and native gas amounts carry 18 decimals, prices 8 decimals, and
credits are integer USD cents:

    cents = amount * price / 10**18 / 10**8 * 100 = amount * price / 10**24

Credit balances are kept exactly in units of 10**-24 cent so a deposit
followed by a withdrawal of the same amount at the same price is lossless.
Gas costs round up so a relayer is never underpaid.
"""

from relayhub.core.ledger.errors import InvalidPriceDataError, PriceDataStaleError

PRICE_DECIMALS = 8
TOKEN_DECIMALS = 18
CREDIT_SCALE = 10 ** (TOKEN_DECIMALS + PRICE_DECIMALS - 2)
UINT128_MAX = 2**128 - 1


def exact_credits(amount: int, price_usd_8dp: int) -> int:
    """Credit value of ``amount`` in units of 10**-24 cent."""
    return amount * price_usd_8dp


def credits_from_collateral(amount: int, price_usd_8dp: int) -> int:
    """Whole cents credited for ``amount`` of collateral (rounded down)."""
    return exact_credits(amount, price_usd_8dp) // CREDIT_SCALE


def cents_to_exact(cents: int) -> int:
    return cents * CREDIT_SCALE


def gas_cost_cents(gas_used: int, gas_price_wei: int, native_price_usd_8dp: int) -> int:
    """USD cents owed for ``gas_used`` at ``gas_price_wei`` (rounded up)."""
    numerator = gas_used * gas_price_wei * native_price_usd_8dp
    return -(-numerator // CREDIT_SCALE)


def validate_observation(
    price_usd_8dp: int,
    observed_at: int,
    now: int,
    max_age_seconds: int,
    asset: str = "",
) -> None:
    """Reject prices that are non-positive, out of range, from the future or too old."""
    if price_usd_8dp <= 0 or price_usd_8dp > UINT128_MAX:
        raise InvalidPriceDataError(
            f"Invalid price {price_usd_8dp} for {asset or 'asset'}",
            asset=asset,
            price=price_usd_8dp,
        )
    if observed_at > now:
        raise InvalidPriceDataError(
            f"Price for {asset or 'asset'} observed in the future",
            asset=asset,
            observed_at=observed_at,
            now=now,
        )
    age = now - observed_at
    if age > max_age_seconds:
        raise PriceDataStaleError(
            f"Price for {asset or 'asset'} is {age}s old (max {max_age_seconds}s)",
            asset=asset,
            age=age,
            max_age=max_age_seconds,
        )
