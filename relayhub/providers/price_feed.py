import asyncio
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from ..config import Settings
from ..core.ledger.errors import LedgerError
from ..core.recovery import NetworkError, RateLimitError, RecoverableError
from ..core.relayer.ledger_client import LedgerClient
from ..core.relayer.nonce_manager import NonceManager
from ..core.vault.pricing import PRICE_DECIMALS
from .base import PriceFeedProvider

logger = logging.getLogger(__name__)


def to_price_8dp(price_usd: Any) -> int:
    """Convert a decimal USD quote to the oracle's 8-decimal integer."""
    try:
        scaled = Decimal(str(price_usd)) * (Decimal(10) ** PRICE_DECIMALS)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid USD price {price_usd!r}") from exc
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


class CoingeckoPriceFeed(PriceFeedProvider):
    """Coingecko simple-price API as the collateral price source"""

    name = "coingecko"
    timeout_s = 15

    def __init__(self, base_url: str, api_key: str = "", enabled: bool = True):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.enabled = enabled

    def _build_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.api_key:
            headers["X-CG-Demo-API-Key"] = self.api_key
        return headers

    async def ready(self) -> bool:
        return self.enabled  # API key is optional for basic tier

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {
                "status": "unavailable",
                "reason": "Provider disabled"
            }

        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{self.base_url}/ping",
                    headers=self._build_headers(),
                    timeout=self.timeout_s
                )
                response.raise_for_status()
                return {"status": "healthy", "latency_ms": int(response.elapsed.total_seconds() * 1000)}
        except httpx.HTTPError as e:
            return {"status": "error", "reason": str(e)}

    async def get_price(self, asset_id: str) -> int:
        params = {
            "ids": asset_id,
            "vs_currencies": "usd",
            "include_market_cap": "false",
            "include_24hr_vol": "false",
            "include_24hr_change": "false"
        }

        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{self.base_url}/simple/price",
                    headers=self._build_headers(),
                    params=params,
                    timeout=self.timeout_s
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 429:
                retry_after = float(exc.response.headers.get("retry-after") or 60)
                raise RateLimitError(f"Price feed rate limited: {exc}", retry_after=retry_after) from exc
            raise NetworkError(f"Price feed returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Price feed request failed: {exc}") from exc

        quote = (data.get(asset_id) or {}).get("usd")
        if quote is None:
            raise ValueError(f"No USD quote for {asset_id} in price feed response")
        return to_price_8dp(quote)


class PriceFeedUpdater:
    """Periodically writes the collateral's USD price into the hub oracle."""

    def __init__(
        self,
        feed: PriceFeedProvider,
        client: LedgerClient,
        nonces: NonceManager,
        hub_chain: str,
        publisher: str,
        asset_id: str,
        oracle_key: str,
        interval_seconds: float = 60.0,
    ):
        self.feed = feed
        self.client = client
        self.nonces = nonces
        self.hub_chain = hub_chain
        self.publisher = publisher
        self.asset_id = asset_id
        self.oracle_key = oracle_key
        self.interval_seconds = interval_seconds
        self.last_price: Optional[int] = None
        self._stopped = asyncio.Event()

    async def update_once(self) -> int:
        price = await self.feed.get_price(self.asset_id)
        async with self.nonces.submission(self.hub_chain, self.publisher) as nonce:
            observation = await self.client.publish_price(self.publisher, nonce, self.oracle_key, price)
        self.last_price = observation.price_usd_8dp
        logger.info(
            "price_published",
            extra={"asset": self.oracle_key, "price_usd_8dp": price, "observed_at": observation.observed_at},
        )
        return price

    async def run(self) -> None:
        while not self._stopped.is_set():
            try:
                await self.update_once()
            except (RecoverableError, LedgerError, ValueError) as exc:
                logger.warning("price_update_failed", extra={"asset": self.oracle_key, "error": str(exc)})
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()


def build_price_feed_updater(
    settings: Settings,
    client: LedgerClient,
    nonces: NonceManager,
    publisher: str,
) -> PriceFeedUpdater:
    feed = CoingeckoPriceFeed(
        settings.price_feed_url,
        api_key=settings.price_feed_api_key,
        enabled=settings.enable_price_feed,
    )
    return PriceFeedUpdater(
        feed,
        client,
        nonces,
        hub_chain=settings.hub_chain,
        publisher=publisher,
        asset_id=settings.price_feed_asset_id,
        oracle_key=settings.price_oracle_key,
        interval_seconds=settings.price_feed_interval_seconds,
    )
