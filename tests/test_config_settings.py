import json

import pytest
from pydantic import ValidationError

from relayhub.config import ChainConfig, Settings


def test_private_key_legacy_alias(monkeypatch):
    """Relayer key should load from the legacy PRIVATE_KEY variable when unset."""

    monkeypatch.delenv("RELAYER_PRIVATE_KEY", raising=False)
    monkeypatch.delenv("RELAYER_KEY", raising=False)
    monkeypatch.setenv("PRIVATE_KEY", "0x" + "aa" * 32)

    settings = Settings()

    assert settings.relayer_private_key == "0x" + "aa" * 32
    assert settings.has_relayer_key


def test_private_key_direct_env(monkeypatch):
    """RELAYER_PRIVATE_KEY remains the primary source."""

    monkeypatch.setenv("RELAYER_PRIVATE_KEY", "0x" + "bb" * 32)
    monkeypatch.setenv("PRIVATE_KEY", "0x" + "aa" * 32)

    settings = Settings()

    assert settings.relayer_private_key == "0x" + "bb" * 32


def test_default_chains():
    settings = Settings()

    assert settings.hub_chain == "crossfi"
    assert settings.confirmations_for("crossfi") == 1
    assert settings.confirmations_for("Ethereum") == 12
    assert settings.confirmations_for("polygon") == 0


def test_chains_from_json_env(monkeypatch):
    monkeypatch.setenv("HUB_CHAIN", "devnet")
    monkeypatch.setenv(
        "CHAINS",
        json.dumps({"devnet": {"chain_id": 31337, "block_confirmations": 0}}),
    )

    settings = Settings()

    assert settings.hub_chain == "devnet"
    assert settings.chain("devnet").chain_id == 31337
    assert settings.chain("devnet").gas_price_wei == 1_000_000_000


def test_unpaid_policy_is_validated(monkeypatch):
    monkeypatch.setenv("UNPAID_BATCH_POLICY", "ignore")
    with pytest.raises(ValidationError):
        Settings()


def test_threshold_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(approval_threshold=0)


def test_gas_price_strategy():
    fixed = ChainConfig(chain_id=1, gas_price_wei=2_000_000_000, gas_price_multiplier=1.5)
    scaled = ChainConfig(
        chain_id=1, gas_price_wei=2_000_000_000, gas_price_strategy="multiplier", gas_price_multiplier=1.5
    )

    assert fixed.effective_gas_price_wei() == 2_000_000_000
    assert scaled.effective_gas_price_wei() == 3_000_000_000
    with pytest.raises(ValidationError):
        ChainConfig(chain_id=1, gas_price_strategy="oracle")
