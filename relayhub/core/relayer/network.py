"""
Local deployment of every ledger the relayer serves.

Builds one in-process ledger per configured chain with its gateway and batch
executor, plus the price oracle and gas credit vault on the hub chain.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional

from relayhub.config import Settings
from relayhub.core.gateway import GatewayStateMachine, RelayerAuthorizationTable
from relayhub.core.ledger import LocalLedger
from relayhub.core.metatx import BatchExecutor
from relayhub.core.vault import GasCreditVault, ManualPriceOracle

logger = logging.getLogger(__name__)

DEFAULT_ORACLE_ADDRESS = "0x00000000000000000000000000000000000d0001"
DEFAULT_VAULT_ADDRESS = "0x00000000000000000000000000000000000c0001"


@dataclass
class LocalNetwork:
    hub_chain: str
    authorization: RelayerAuthorizationTable
    oracle: ManualPriceOracle
    vault: GasCreditVault
    ledgers: Dict[str, LocalLedger] = field(default_factory=dict)
    gateways: Dict[str, GatewayStateMachine] = field(default_factory=dict)
    executors: Dict[str, BatchExecutor] = field(default_factory=dict)

    def ledger(self, chain: str) -> LocalLedger:
        try:
            return self.ledgers[chain]
        except KeyError:
            raise KeyError(f"Unknown chain: {chain}") from None

    def gateway(self, chain: str) -> GatewayStateMachine:
        try:
            return self.gateways[chain]
        except KeyError:
            raise KeyError(f"No gateway deployed on {chain}") from None

    def executor(self, chain: str) -> BatchExecutor:
        try:
            return self.executors[chain]
        except KeyError:
            raise KeyError(f"No meta-transaction gateway deployed on {chain}") from None


def _native_symbol(price_key: str) -> str:
    return price_key.split("/", 1)[0] if price_key else ""


def build_local_network(
    settings: Settings,
    relayers: Iterable[str],
    admin: str,
    clock: Optional[Callable[[], float]] = None,
) -> LocalNetwork:
    """Deploy gateways, executors, oracle and vault for every configured chain."""
    if settings.hub_chain not in settings.chains:
        raise ValueError(f"Hub chain {settings.hub_chain} is not configured")

    authorization = RelayerAuthorizationTable(relayers, threshold=settings.approval_threshold)
    ledgers = {
        name: LocalLedger(name, chain.chain_id, clock=clock)
        for name, chain in settings.chains.items()
    }

    hub_ledger = ledgers[settings.hub_chain]
    hub_config = settings.chains[settings.hub_chain]
    oracle = ManualPriceOracle(
        hub_ledger,
        settings.price_oracle_address or DEFAULT_ORACLE_ADDRESS,
        owner=admin,
        updaters=relayers,
    )
    vault = GasCreditVault(
        hub_ledger,
        hub_config.gas_credit_vault_address or DEFAULT_VAULT_ADDRESS,
        owner=admin,
        oracle=oracle,
        price_key=settings.price_oracle_key,
        collateral_symbol=settings.collateral_symbol,
        max_price_age_seconds=settings.max_price_age_seconds,
    )
    network = LocalNetwork(
        hub_chain=settings.hub_chain,
        authorization=authorization,
        oracle=oracle,
        vault=vault,
        ledgers=ledgers,
    )

    for name, chain in settings.chains.items():
        if chain.gateway_address:
            network.gateways[name] = GatewayStateMachine(
                ledgers[name], chain.gateway_address, admin, authorization
            )
        if chain.meta_tx_gateway_address:
            executor = BatchExecutor(
                ledgers[name],
                chain.meta_tx_gateway_address,
                admin,
                authorization,
                vault,
                native_price_key=chain.native_price_key or settings.price_oracle_key,
                native_symbol=_native_symbol(chain.native_price_key),
                gas_price_wei=chain.effective_gas_price_wei(),
                unpaid_policy=settings.unpaid_batch_policy,
            )
            vault.set_gateway_authorization(executor.address, True, caller=admin)
            network.executors[name] = executor

    for name, gateway in network.gateways.items():
        for other, chain in settings.chains.items():
            if other != name:
                gateway.register_chain(other, chain.chain_id, caller=admin)

    logger.info(
        "local_network_deployed",
        extra={
            "chains": sorted(ledgers),
            "gateways": sorted(network.gateways),
            "executors": sorted(network.executors),
            "hub": settings.hub_chain,
        },
    )
    return network
