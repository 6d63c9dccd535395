"""
Ledger access for the relayer daemon.

Every call carries a timeout; a timeout surfaces as ``RpcTimeoutError``,
which the recovery executor retries.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, List, Optional, Sequence, TypeVar

from relayhub.core.gateway.models import Command, CommandState, ExecutionOutcome
from relayhub.core.ledger.chain import LedgerEvent
from relayhub.core.ledger.errors import GatewayPausedError
from relayhub.core.metatx.models import BatchResult, GasEstimate, UnpaidBatch
from relayhub.core.recovery.errors import RpcTimeoutError
from relayhub.core.vault.models import PriceObservation

from .network import LocalNetwork

T = TypeVar("T")


class LedgerClient(ABC):
    """What the relayer needs from the ledgers it serves."""

    @abstractmethod
    async def block_number(self, chain: str) -> int:
        ...

    @abstractmethod
    async def get_logs(
        self,
        chain: str,
        from_block: int,
        to_block: int,
        names: Iterable[str],
    ) -> List[LedgerEvent]:
        ...

    @abstractmethod
    async def get_transaction_count(self, chain: str, address: str) -> int:
        ...

    @abstractmethod
    async def chain_id(self, chain: str) -> int:
        ...

    @abstractmethod
    async def gateway_address(self, chain: str) -> str:
        ...

    @abstractmethod
    async def is_relayer(self, chain: str, address: str) -> bool:
        ...

    @abstractmethod
    async def is_chain_active(self, chain: str, name: str) -> bool:
        ...

    @abstractmethod
    async def approval_threshold(self, chain: str) -> int:
        ...

    @abstractmethod
    async def get_command_state(self, chain: str, command_id: str) -> CommandState:
        ...

    @abstractmethod
    async def approve(
        self,
        chain: str,
        sender: str,
        nonce: int,
        command: Command,
        signatures: Sequence[str],
    ) -> str:
        ...

    @abstractmethod
    async def execute(
        self,
        chain: str,
        sender: str,
        nonce: int,
        command: Command,
    ) -> ExecutionOutcome:
        ...

    @abstractmethod
    async def execute_batch(
        self,
        chain: str,
        sender: str,
        nonce: int,
        from_address: str,
        meta_tx_data: bytes,
        signature: str,
        batch_nonce: int,
        deadline: int,
    ) -> BatchResult:
        ...

    @abstractmethod
    async def estimate_batch(self, chain: str, meta_tx_data: bytes) -> GasEstimate:
        ...

    @abstractmethod
    async def get_batch_nonce(self, chain: str, user: str) -> int:
        ...

    @abstractmethod
    async def get_unpaid_batches(self, chain: str) -> List[UnpaidBatch]:
        ...

    @abstractmethod
    async def settle_unpaid(self, chain: str, sender: str, nonce: int, batch_id: int) -> bool:
        ...

    @abstractmethod
    async def has_enough_credits(self, user: str, cents: int) -> bool:
        ...

    @abstractmethod
    async def get_credit_balance(self, user: str) -> int:
        ...

    @abstractmethod
    async def get_deposit_balance(self, user: str) -> int:
        ...

    @abstractmethod
    async def executor_address(self, chain: str) -> Optional[str]:
        ...

    @abstractmethod
    async def publish_price(
        self, sender: str, nonce: int, asset: str, price_usd_8dp: int
    ) -> PriceObservation:
        ...


class InProcessLedgerClient(LedgerClient):
    """Client for ledgers deployed in this process by ``build_local_network``."""

    def __init__(
        self,
        network: LocalNetwork,
        timeout_seconds: float = 30.0,
        latency_seconds: float = 0.0,
    ):
        self.network = network
        self.timeout_seconds = timeout_seconds
        self.latency_seconds = latency_seconds

    async def _call(self, chain: str, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        async def invoke() -> T:
            if self.latency_seconds:
                await asyncio.sleep(self.latency_seconds)
            return fn(*args, **kwargs)

        try:
            return await asyncio.wait_for(invoke(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise RpcTimeoutError(
                f"{operation} on {chain} timed out after {self.timeout_seconds}s",
                operation=operation,
                chain=chain,
            ) from exc

    async def block_number(self, chain: str) -> int:
        ledger = self.network.ledger(chain)
        return await self._call(chain, "block_number", lambda: ledger.block_number)

    async def get_logs(
        self,
        chain: str,
        from_block: int,
        to_block: int,
        names: Iterable[str],
    ) -> List[LedgerEvent]:
        ledger = self.network.ledger(chain)
        gateway = self.network.gateway(chain)
        return await self._call(
            chain,
            "get_logs",
            ledger.get_logs,
            from_block,
            to_block,
            names=list(names),
            address=gateway.address,
        )

    async def get_transaction_count(self, chain: str, address: str) -> int:
        ledger = self.network.ledger(chain)
        return await self._call(chain, "get_transaction_count", ledger.get_transaction_count, address)

    async def chain_id(self, chain: str) -> int:
        return self.network.ledger(chain).chain_id

    async def gateway_address(self, chain: str) -> str:
        return self.network.gateway(chain).address

    async def is_relayer(self, chain: str, address: str) -> bool:
        gateway = self.network.gateway(chain)
        return await self._call(chain, "is_relayer", gateway.is_relayer, address)

    async def is_chain_active(self, chain: str, name: str) -> bool:
        gateway = self.network.gateway(chain)
        return await self._call(chain, "is_chain_active", gateway.is_chain_active, name)

    async def approval_threshold(self, chain: str) -> int:
        gateway = self.network.gateway(chain)
        return await self._call(chain, "approval_threshold", lambda: gateway.authorization.threshold)

    async def get_command_state(self, chain: str, command_id: str) -> CommandState:
        gateway = self.network.gateway(chain)
        return await self._call(chain, "get_command_state", gateway.get_command_state, command_id)

    async def approve(
        self,
        chain: str,
        sender: str,
        nonce: int,
        command: Command,
        signatures: Sequence[str],
    ) -> str:
        ledger = self.network.ledger(chain)
        gateway = self.network.gateway(chain)

        def submit() -> str:
            was_paused = gateway.is_paused
            halted: Optional[GatewayPausedError] = None
            with ledger.transaction(sender, nonce=nonce) as tx:
                try:
                    gateway.approve(
                        command.command_id,
                        command.source_chain,
                        command.source_address,
                        command.payload_hash,
                        list(signatures),
                        command_type=command.command_type,
                        destination_address=command.destination_address,
                        symbol=command.symbol,
                        amount=command.amount,
                        caller=sender,
                    )
                except GatewayPausedError as exc:
                    if was_paused:
                        raise
                    # A conflicting approval paused the gateway; the pause must land.
                    halted = exc
            if halted is not None:
                raise halted
            return tx.tx_hash

        return await self._call(chain, "approve", submit)

    async def execute(
        self,
        chain: str,
        sender: str,
        nonce: int,
        command: Command,
    ) -> ExecutionOutcome:
        ledger = self.network.ledger(chain)
        gateway = self.network.gateway(chain)

        def submit() -> ExecutionOutcome:
            with ledger.transaction(sender, nonce=nonce):
                return gateway.execute(command.command_id, command.payload, caller=sender)

        return await self._call(chain, "execute", submit)

    async def execute_batch(
        self,
        chain: str,
        sender: str,
        nonce: int,
        from_address: str,
        meta_tx_data: bytes,
        signature: str,
        batch_nonce: int,
        deadline: int,
    ) -> BatchResult:
        ledger = self.network.ledger(chain)
        executor = self.network.executor(chain)

        def submit() -> BatchResult:
            with ledger.transaction(sender, nonce=nonce):
                return executor.execute_meta_transactions(
                    from_address,
                    meta_tx_data,
                    signature,
                    batch_nonce,
                    deadline,
                    caller=sender,
                )

        return await self._call(chain, "execute_batch", submit)

    async def estimate_batch(self, chain: str, meta_tx_data: bytes) -> GasEstimate:
        executor = self.network.executor(chain)
        return await self._call(chain, "estimate_batch", executor.estimate_cost, meta_tx_data)

    async def get_batch_nonce(self, chain: str, user: str) -> int:
        executor = self.network.executor(chain)
        return await self._call(chain, "get_batch_nonce", executor.get_nonce, user)

    async def get_unpaid_batches(self, chain: str) -> List[UnpaidBatch]:
        executor = self.network.executor(chain)
        return await self._call(chain, "get_unpaid_batches", executor.get_unpaid_batches)

    async def settle_unpaid(self, chain: str, sender: str, nonce: int, batch_id: int) -> bool:
        ledger = self.network.ledger(chain)
        executor = self.network.executor(chain)

        def submit() -> bool:
            with ledger.transaction(sender, nonce=nonce):
                return executor.settle_unpaid(batch_id, caller=sender)

        return await self._call(chain, "settle_unpaid", submit)

    async def has_enough_credits(self, user: str, cents: int) -> bool:
        vault = self.network.vault
        return await self._call(self.network.hub_chain, "has_enough_credits", vault.has_enough_credits, user, cents)

    async def get_credit_balance(self, user: str) -> int:
        vault = self.network.vault
        return await self._call(self.network.hub_chain, "get_credit_balance", vault.get_credit_balance, user)

    async def get_deposit_balance(self, user: str) -> int:
        vault = self.network.vault
        return await self._call(self.network.hub_chain, "get_deposit_balance", vault.get_deposit_balance, user)

    async def publish_price(
        self, sender: str, nonce: int, asset: str, price_usd_8dp: int
    ) -> PriceObservation:
        ledger = self.network.ledger(self.network.hub_chain)
        oracle = self.network.oracle

        def submit() -> PriceObservation:
            with ledger.transaction(sender, nonce=nonce):
                return oracle.set_price(asset, price_usd_8dp, caller=sender)

        return await self._call(self.network.hub_chain, "publish_price", submit)

    async def executor_address(self, chain: str) -> Optional[str]:
        executor = self.network.executors.get(chain)
        return executor.address if executor else None
