import os

from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]


class ChainConfig(BaseModel):
    """Per-chain deployment settings consumed by the relayer."""

    rpc_endpoint: str = ""
    chain_id: int
    block_confirmations: int = Field(default=12, ge=0)
    gateway_address: str = ""
    meta_tx_gateway_address: str = ""
    gas_credit_vault_address: str = ""
    gas_price_strategy: str = Field(default="fixed", pattern="^(fixed|multiplier)$")
    gas_price_wei: int = Field(default=1_000_000_000, ge=0)
    gas_price_multiplier: float = Field(default=1.0, gt=0)
    native_price_key: str = ""
    polling_interval_seconds: float = Field(default=5.0, gt=0)

    def effective_gas_price_wei(self) -> int:
        if self.gas_price_strategy == "multiplier":
            return int(self.gas_price_wei * self.gas_price_multiplier)
        return self.gas_price_wei


def _default_chains() -> Dict[str, ChainConfig]:
    return {
        "crossfi": ChainConfig(
            chain_id=4157,
            block_confirmations=1,
            gateway_address="0x00000000000000000000000000000000000a0001",
            meta_tx_gateway_address="0x00000000000000000000000000000000000b0001",
            gas_credit_vault_address="0x00000000000000000000000000000000000c0001",
            native_price_key="XFI/USD",
        ),
        "ethereum": ChainConfig(
            chain_id=1,
            block_confirmations=12,
            gateway_address="0x00000000000000000000000000000000000a0002",
            meta_tx_gateway_address="0x00000000000000000000000000000000000b0002",
            native_price_key="ETH/USD",
        ),
    }


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def model_post_init(self, __context: Any) -> None:
        """Ensure we pick up legacy environment variable aliases."""

        super().model_post_init(__context)

        if not self.relayer_private_key:
            fallback = os.getenv("PRIVATE_KEY") or os.getenv("RELAYER_KEY")
            if fallback:
                object.__setattr__(self, "relayer_private_key", fallback)

    # Server Settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="auto",
        pattern="^(auto|json|console)$",
        description="Log renderer: json, console, or auto (console at DEBUG)",
    )

    # Relayer identity
    relayer_private_key: str = Field(
        default="",
        description="Hex private key used to sign commands and submit transactions",
        validation_alias=AliasChoices("relayer_private_key", "RELAYER_PRIVATE_KEY"),
    )
    extra_signer_keys: List[str] = Field(
        default_factory=list,
        description="Additional co-signer keys used to reach the approval quorum",
    )
    approval_threshold: int = Field(
        default=1,
        ge=1,
        description="Distinct authorized relayer signatures required to approve a command",
    )

    # Chains
    hub_chain: str = Field(default="crossfi", description="Chain hosting the gas credit vault")
    chains: Dict[str, ChainConfig] = Field(
        default_factory=_default_chains,
        description="Per-chain deployment settings keyed by chain name",
    )

    # Pricing
    price_oracle_address: str = Field(default="", description="Oracle contract on the hub chain")
    price_oracle_key: str = Field(default="XFI/USD", description="Oracle key for the collateral price")
    collateral_symbol: str = Field(default="IXFI", description="Collateral asset symbol")
    max_price_age_seconds: int = Field(default=3600, ge=1, description="Maximum accepted oracle price age")
    price_feed_url: str = Field(
        default="https://api.coingecko.com/api/v3",
        description="HTTP price feed base URL",
    )
    price_feed_api_key: str = Field(default="", description="Price feed API key")
    price_feed_asset_id: str = Field(default="crossfi-2", description="Price feed asset identifier")
    price_feed_interval_seconds: int = Field(default=60, ge=1, description="Price refresh interval")
    enable_price_feed: bool = Field(default=False, description="Run the background price feed updater")

    # Retry & timeouts
    max_retry_attempts: int = Field(default=3, ge=1, description="Submission attempts before escalation")
    retry_backoff_base_seconds: float = Field(default=1.0, ge=0, description="Initial retry delay")
    retry_backoff_max_seconds: float = Field(default=600.0, ge=0, description="Retry delay cap")
    rpc_timeout_seconds: float = Field(default=30.0, gt=0, description="Timeout applied to every ledger call")

    # Daemon
    submission_queue_size: int = Field(default=1000, ge=1, description="Bounded queue size per destination")
    finished_intents_kept: int = Field(
        default=10_000, ge=0, description="Approved or cancelled intents kept in memory after each poll"
    )
    unpaid_batch_policy: str = Field(
        default="log",
        pattern="^(log|block)$",
        description="What to do with users whose batch could not be settled",
    )
    state_dir: str = Field(default="", description="Directory for processed/failed JSON state (empty disables)")
    relayer_autostart: bool = Field(default=False, description="Start the relayer daemon with the API")
    operator_api_token: str = Field(default="", description="Bearer token for mutating operator endpoints")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Origins allowed to call the API")

    @property
    def has_relayer_key(self) -> bool:
        return bool(self.relayer_private_key)

    def chain(self, name: str) -> Optional[ChainConfig]:
        return self.chains.get(name.lower())

    def confirmations_for(self, name: str) -> int:
        chain = self.chain(name)
        return chain.block_confirmations if chain else 0


# Global settings instance
settings = Settings()
