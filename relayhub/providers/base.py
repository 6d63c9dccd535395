from abc import ABC, abstractmethod
from typing import Any, Dict


class Provider(ABC):
    """Base provider interface"""

    name: str
    timeout_s: int = 10

    @abstractmethod
    async def ready(self) -> bool:
        """Check if provider is ready to serve requests"""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Return provider health status"""
        pass


class PriceFeedProvider(Provider):
    """Provider for the collateral's USD price"""

    @abstractmethod
    async def get_price(self, asset_id: str) -> int:
        """Current USD price of ``asset_id`` with 8 decimals"""
        pass
