"""
Shared fixtures for the relayhub test suite.

Every fixture deploys fresh in-process ledgers driven by a fake clock, so
tests control both block height (``ledger.mine``) and time (``clock.advance``).
"""

import pytest
from eth_account import Account

from relayhub.config import Settings
from relayhub.core.gateway import GatewayStateMachine, InboxSink, RelayerAuthorizationTable
from relayhub.core.ledger import LocalLedger
from relayhub.core.metatx import BatchExecutor, CallTargetRegistry
from relayhub.core.relayer import build_relayer_service
from relayhub.core.vault import GasCreditVault, ManualPriceOracle

RELAYER_KEY = "0x" + "11" * 32
COSIGNER_KEY = "0x" + "22" * 32
USER_KEY = "0x" + "33" * 32
OUTSIDER_KEY = "0x" + "44" * 32

RELAYER = Account.from_key(RELAYER_KEY).address
COSIGNER = Account.from_key(COSIGNER_KEY).address
USER = Account.from_key(USER_KEY).address
OUTSIDER = Account.from_key(OUTSIDER_KEY).address

GATEWAY_ADDRESS = "0x00000000000000000000000000000000000a0002"
EXECUTOR_ADDRESS = "0x00000000000000000000000000000000000b0001"
VAULT_ADDRESS = "0x00000000000000000000000000000000000c0001"
ORACLE_ADDRESS = "0x00000000000000000000000000000000000d0001"
SINK_ADDRESS = "0x0000000000000000000000000000000000005151"

START_TIME = 1_700_000_000
XFI_PRICE = 200_000_000  # $2.00
ONE_TOKEN = 10**18


class FakeClock:
    """Callable clock the ledgers read their timestamps from."""

    def __init__(self, now: int = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# Single-ledger contracts
# =============================================================================

@pytest.fixture
def authorization():
    return RelayerAuthorizationTable([RELAYER], threshold=1)


@pytest.fixture
def ethereum_ledger(clock):
    return LocalLedger("ethereum", 1, clock=clock)


@pytest.fixture
def sink():
    return InboxSink()


@pytest.fixture
def gateway(ethereum_ledger, authorization, sink):
    """Destination gateway on 'ethereum' accepting commands from 'crossfi'."""
    gw = GatewayStateMachine(ethereum_ledger, GATEWAY_ADDRESS, RELAYER, authorization)
    gw.register_chain("crossfi", 4157, caller=RELAYER)
    gw.sinks.register(SINK_ADDRESS, sink)
    return gw


@pytest.fixture
def hub_ledger(clock):
    return LocalLedger("crossfi", 4157, clock=clock)


@pytest.fixture
def oracle(hub_ledger):
    oracle = ManualPriceOracle(hub_ledger, ORACLE_ADDRESS, owner=RELAYER)
    oracle.set_price("XFI/USD", XFI_PRICE, caller=RELAYER)
    return oracle


@pytest.fixture
def vault(hub_ledger, oracle):
    return GasCreditVault(
        hub_ledger,
        VAULT_ADDRESS,
        owner=RELAYER,
        oracle=oracle,
        price_key="XFI/USD",
        collateral_symbol="IXFI",
        max_price_age_seconds=3600,
    )


@pytest.fixture
def targets():
    return CallTargetRegistry()


@pytest.fixture
def executor(hub_ledger, authorization, vault, targets):
    executor = BatchExecutor(
        hub_ledger,
        EXECUTOR_ADDRESS,
        RELAYER,
        authorization,
        vault,
        native_price_key="XFI/USD",
        targets=targets,
    )
    vault.set_gateway_authorization(executor.address, True, caller=RELAYER)
    return executor


# =============================================================================
# Full relayer over a two-chain local network
# =============================================================================

@pytest.fixture
def settings():
    return Settings(
        relayer_private_key=RELAYER_KEY,
        extra_signer_keys=[],
        approval_threshold=1,
        state_dir="",
        max_retry_attempts=3,
        retry_backoff_base_seconds=0,
        retry_backoff_max_seconds=0,
        rpc_timeout_seconds=5,
        operator_api_token="",
        enable_price_feed=False,
    )


@pytest.fixture
def service(settings, clock):
    return build_relayer_service(settings, clock=clock)


@pytest.fixture
def network(service):
    return service.network


@pytest.fixture
def send_tokens(network):
    """Fund ``USER`` on the source ledger and burn-and-send to the destination."""

    def _send(source: str = "crossfi", destination: str = "ethereum", amount: int = 5 * ONE_TOKEN) -> str:
        network.ledger(source).tokens.mint("IXFI", USER, amount)
        return network.gateway(source).send_token(
            destination, USER, "IXFI", amount, caller=USER
        )

    return _send
