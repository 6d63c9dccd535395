"""
Relayer Service

Facade over the relay pipeline used by the API, the CLI and tests: starts
and stops the watchers and workers, exposes health and status, handles
operator compensation and relays gasless batches.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from eth_account import Account

from relayhub.config import Settings
from relayhub.core.gateway.models import CommandState
from relayhub.core.ledger.errors import InsufficientCreditsError, MalformedBatchError
from relayhub.core.ledger.hashing import to_bytes
from relayhub.core.metatx.models import BatchResult, GasEstimate, MetaTransaction, UnpaidBatch
from relayhub.core.metatx.signing import encode_meta_transactions
from relayhub.core.recovery import (
    ErrorCategory,
    RecoveryConfig,
    RecoveryExecutor,
    UnrecoverableError,
)

from .commands import build_refund_command
from .ledger_client import InProcessLedgerClient, LedgerClient
from .models import (
    FailedTransaction,
    IntentState,
    ObservedIntent,
    RelayerHaltedError,
    RelayerMetrics,
)
from .network import LocalNetwork, build_local_network
from .nonce_manager import NonceManager
from .pipeline import ChainWatcher, SubmissionWorker, held_counts, pending_counts
from .signer import CommandSigner
from .store import FailedTransactionStore, ProcessedEventStore
from .tracker import IntentTracker

logger = logging.getLogger(__name__)

COMPENSATION_ACTIONS = ("retry", "refund")

# Singleton instance
_service_instance: Optional["RelayerService"] = None


def get_relayer_service() -> "RelayerService":
    """Get the singleton RelayerService instance."""
    global _service_instance
    if _service_instance is None:
        from relayhub.config import settings

        _service_instance = build_relayer_service(settings)
    return _service_instance


def set_relayer_service(service: Optional["RelayerService"]) -> None:
    global _service_instance
    _service_instance = service


def build_relayer_service(settings: Settings, clock=None) -> "RelayerService":
    """Deploy the configured ledgers in-process and wire a relayer to them."""
    keys = [settings.relayer_private_key, *settings.extra_signer_keys]
    if not settings.relayer_private_key:
        ephemeral = Account.create()
        keys[0] = ephemeral.key.hex()
        logger.warning(
            "No RELAYER_PRIVATE_KEY configured; using ephemeral relayer %s",
            ephemeral.address,
        )
    signer = CommandSigner(keys)
    network = build_local_network(settings, relayers=signer.addresses, admin=signer.address, clock=clock)
    client = InProcessLedgerClient(network, timeout_seconds=settings.rpc_timeout_seconds)
    return RelayerService(settings, client, signer, network=network)


class RelayerService:
    """
    Runs the relayer daemon.

    Manages:
    - One watcher per source chain and one submission worker per destination
    - The processed-event and failed-transaction sets
    - Operator compensation (retry or refund)
    - Gasless batch relay paid from the gas credit vault
    """

    def __init__(
        self,
        settings: Settings,
        client: LedgerClient,
        signer: CommandSigner,
        network: Optional[LocalNetwork] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.client = client
        self.signer = signer
        self.network = network
        self.logger = logger or logging.getLogger(__name__)

        state_dir = Path(settings.state_dir) if settings.state_dir else None
        self.processed = ProcessedEventStore(
            state_dir / "processed_events.json" if state_dir else None
        )
        self.failed = FailedTransactionStore(
            state_dir / "failed_transactions.json" if state_dir else None
        )
        self.tracker = IntentTracker()
        self.nonces = NonceManager(client)
        self.recovery = RecoveryExecutor(
            RecoveryConfig(
                max_retries=settings.max_retry_attempts,
                initial_delay_seconds=settings.retry_backoff_base_seconds,
                max_delay_seconds=settings.retry_backoff_max_seconds,
            )
        )
        self.metrics = RelayerMetrics()
        self._metrics_lock = asyncio.Lock()

        self.workers: Dict[str, SubmissionWorker] = {}
        self.watchers: Dict[str, ChainWatcher] = {}
        for name, chain in settings.chains.items():
            if not chain.gateway_address:
                continue
            self.workers[name] = SubmissionWorker(
                name,
                client,
                signer,
                self.nonces,
                self.tracker,
                self.recovery,
                self.failed,
                self.processed,
                self.metrics,
                self._metrics_lock,
                queue_size=settings.submission_queue_size,
            )
            self.watchers[name] = ChainWatcher(
                name,
                client,
                chain.block_confirmations,
                self.tracker,
                self.processed,
                self._dispatch,
                poll_interval_seconds=chain.polling_interval_seconds,
                failed=self.failed,
                keep_finished=settings.finished_intents_kept,
            )

        self._tasks: List[asyncio.Task] = []
        self.is_running = False
        self.emergency_stopped = False

    @property
    def relayer_address(self) -> str:
        return self.signer.address

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            return
        await self.verify_whitelisted()
        self.processed.load()
        self.failed.load()
        self.metrics.start_time = self.metrics.start_time or datetime.now(timezone.utc)

        for name, watcher in self.watchers.items():
            self._tasks.append(asyncio.create_task(watcher.run(), name=f"watch-{name}"))
        for name, worker in self.workers.items():
            self._tasks.append(asyncio.create_task(worker.run(), name=f"submit-{name}"))

        self.is_running = True
        self.emergency_stopped = False
        self.logger.info(
            f"Relayer {self.relayer_address} started on {', '.join(sorted(self.workers))}"
        )

    async def stop(self) -> None:
        for watcher in self.watchers.values():
            watcher.stop()
        for worker in self.workers.values():
            worker.stop()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.processed.save()
        self.is_running = False
        self.logger.info("Relayer stopped")

    async def emergency_stop(self) -> Dict[str, Any]:
        self.logger.critical("Emergency stop requested")
        await self.stop()
        self.emergency_stopped = True
        return {"stopped": True, "pendingCommands": pending_counts(self.workers)}

    async def verify_whitelisted(self) -> None:
        for chain in self.workers:
            if not await self.client.is_relayer(chain, self.relayer_address):
                raise UnrecoverableError(
                    f"Relayer {self.relayer_address} is not whitelisted on {chain}",
                    category=ErrorCategory.AUTHENTICATION,
                )

    # ------------------------------------------------------------------
    # Relay pipeline
    # ------------------------------------------------------------------

    async def _dispatch(self, intent: ObservedIntent) -> None:
        worker = self.workers.get(intent.destination_chain)
        if worker is None:
            self.logger.warning(
                f"No gateway for destination {intent.destination_chain}; dropping {intent.command_id}"
            )
            self.tracker.transition(intent, IntentState.CANCELLED, reason="unknown destination")
            return
        await worker.enqueue(intent)

    async def poll_once(self) -> List[ObservedIntent]:
        """Run one polling round on every source chain."""
        released: List[ObservedIntent] = []
        for watcher in self.watchers.values():
            released.extend(await watcher.poll_once())
        return released

    async def process_pending(self) -> int:
        """Drain every submission queue inline (used when the daemon is not running)."""
        processed = 0
        for worker in self.workers.values():
            while not worker.queue.empty():
                intent = worker.queue.get_nowait()
                try:
                    await worker.process(intent)
                    processed += 1
                finally:
                    worker.queue.task_done()
        return processed

    def cancel(self, command_id: str) -> bool:
        return any(worker.cancel(command_id) for worker in self.workers.values())

    # ------------------------------------------------------------------
    # Operator
    # ------------------------------------------------------------------

    def get_health(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.is_running else ("halted" if self.emergency_stopped else "stopped"),
            "chains": sorted(self.workers),
            "relayerAddress": self.relayer_address,
            "processedEvents": len(self.processed),
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "emergencyStopped": self.emergency_stopped,
            "processedEvents": len(self.processed),
            "failedTransactions": len(self.failed.list(include_compensated=False)),
            "uptime": self.metrics.uptime_seconds(),
            "metrics": self.metrics.to_dict(),
            "queues": pending_counts(self.workers),
            "awaitingConfirmations": held_counts(self.watchers),
            "intents": self.tracker.counts(),
            "circuits": {
                chain: self.recovery.get_circuit_breaker_state(chain) for chain in self.workers
            },
        }

    def list_failed(self) -> List[FailedTransaction]:
        return self.failed.list()

    def get_failed(self, command_id: str) -> Optional[FailedTransaction]:
        return self.failed.get(command_id)

    async def compensate(self, command_id: str, action: str = "retry") -> Dict[str, Any]:
        """
        Compensate a failed command.

        ``retry`` resubmits it to its destination. ``refund`` mints its burned
        token leg back to the sender on the source chain, and is only allowed
        while the original command was never approved on its destination.

        Raises:
            KeyError: unknown command id
            ValueError: bad action, already compensated, or not refundable
            RelayerHaltedError: the relayer is emergency-stopped
        """
        self._refuse_when_halted()
        if action not in COMPENSATION_ACTIONS:
            raise ValueError(f"Unknown compensation action {action!r}; expected one of {COMPENSATION_ACTIONS}")
        failed = self.failed.get(command_id)
        if failed is None:
            raise KeyError(command_id)
        if failed.compensated:
            raise ValueError(f"Command {command_id} was already compensated ({failed.compensation})")

        if action == "retry":
            worker = self._worker_for(failed.destination_chain)
            intent = self._intent_for_retry(failed)
            result = await worker.process(intent)
        else:
            state = await self.client.get_command_state(failed.destination_chain, command_id)
            if state != CommandState.UNKNOWN:
                raise ValueError(
                    f"Command {command_id} is {state.value} on {failed.destination_chain}; refund refused"
                )
            refund = build_refund_command(failed)
            worker = self._worker_for(refund.destination_chain)
            result = await worker.submit_command(refund)

        if result.success:
            await self.failed.mark_compensated(command_id, action)
            if action == "refund":
                self.processed.add(failed.key)
                self.processed.save()
        self.logger.info(f"Compensation {action} for {command_id}: success={result.success}")
        return {
            "commandId": command_id,
            "action": action,
            "success": result.success,
            "attempts": result.attempts,
            "error": str(result.error) if result.error else None,
        }

    def _refuse_when_halted(self) -> None:
        if self.emergency_stopped:
            raise RelayerHaltedError()

    def _worker_for(self, chain: str) -> SubmissionWorker:
        worker = self.workers.get(chain)
        if worker is None:
            raise ValueError(f"No gateway configured for {chain}")
        return worker

    def _intent_for_retry(self, failed: FailedTransaction) -> ObservedIntent:
        intent = self.tracker.get(failed.key)
        if intent is not None and intent.state == IntentState.REJECTED_OR_FAILED:
            return intent
        event = failed.source_event
        intent = ObservedIntent(
            key=failed.key,
            command=failed.command,
            event_name=event.get("event", ""),
            block_number=int(event.get("blockNumber", 0)),
            tx_hash=event.get("txHash", ""),
            log_index=int(event.get("logIndex", 0)),
            sender=event.get("sender", ""),
            state=IntentState.REJECTED_OR_FAILED,
            attempts=failed.retry_count,
            error=failed.error,
        )
        self.tracker.forget(failed.key)
        return self.tracker.track(intent)

    # ------------------------------------------------------------------
    # Gasless relay
    # ------------------------------------------------------------------

    async def submit_batch(
        self,
        from_address: str,
        meta_tx_data: Any,
        signature: str,
        nonce: int,
        deadline: int,
        chain: Optional[str] = None,
    ) -> BatchResult:
        """
        Relay a user-signed batch, paid from the user's gas credits.

        The user's credits are checked against the estimated cost before
        anything is submitted. Batches are not retried: a timeout is
        returned to the caller, who can resubmit with the same nonce.
        """
        self._refuse_when_halted()
        chain = chain or self.settings.hub_chain
        data = _batch_bytes(meta_tx_data)
        estimate = await self.client.estimate_batch(chain, data)
        if not await self.client.has_enough_credits(from_address, estimate.cost_cents):
            raise InsufficientCreditsError(
                f"{from_address} cannot cover an estimated {estimate.cost_cents} cents",
                user=from_address,
                required=estimate.cost_cents,
            )

        async with self.nonces.submission(chain, self.relayer_address) as tx_nonce:
            result = await self.client.execute_batch(
                chain,
                self.relayer_address,
                tx_nonce,
                from_address,
                data,
                signature,
                nonce,
                deadline,
            )

        async with self._metrics_lock:
            self.metrics.batches_relayed += 1
            self.metrics.total_gas_used += result.gas_used
            if result.paid:
                self.metrics.credits_consumed_cents += result.cost_cents
            else:
                self.metrics.unpaid_batches += 1

        if not result.paid:
            self.logger.warning(
                f"Batch {result.batch_id} from {from_address} unpaid: {result.unpaid_reason}"
            )
        return result

    async def submit_meta_transaction(
        self,
        from_address: str,
        to: str,
        value: int,
        data: Any,
        signature: str,
        nonce: int,
        deadline: int,
        chain: Optional[str] = None,
    ) -> BatchResult:
        """Relay a single call as a batch of one; the signature covers that batch."""
        calls = [{"to": to, "value": value, "data": data}]
        return await self.submit_batch(from_address, calls, signature, nonce, deadline, chain=chain)

    async def estimate_batch(self, meta_tx_data: Any, chain: Optional[str] = None) -> GasEstimate:
        return await self.client.estimate_batch(chain or self.settings.hub_chain, _batch_bytes(meta_tx_data))

    async def get_credits(self, address: str) -> Dict[str, Any]:
        return {
            "address": address,
            "balanceCents": await self.client.get_credit_balance(address),
            "depositBalance": str(await self.client.get_deposit_balance(address)),
        }

    async def list_unpaid(self, chain: Optional[str] = None) -> List[UnpaidBatch]:
        """Unsettled batches on ``chain``, or on every gasless chain."""
        unpaid: List[UnpaidBatch] = []
        for name in [chain] if chain else self.settings.chains:
            if chain or await self.client.executor_address(name):
                unpaid.extend(await self.client.get_unpaid_batches(name))
        return unpaid

    async def settle_unpaid(self, chain: str, batch_id: int) -> Dict[str, Any]:
        """
        Retry the credit debit of an unpaid batch.

        Raises:
            KeyError: no unsettled batch ``batch_id`` on ``chain``
            RelayerHaltedError: the relayer is emergency-stopped
        """
        self._refuse_when_halted()
        owed = next((u for u in await self.client.get_unpaid_batches(chain) if u.batch_id == batch_id), None)
        if owed is None:
            raise KeyError(batch_id)

        async with self.nonces.submission(chain, self.relayer_address) as tx_nonce:
            settled = await self.client.settle_unpaid(chain, self.relayer_address, tx_nonce, batch_id)
        self.logger.info(f"Settlement of batch {batch_id} on {chain} for {owed.user}: settled={settled}")
        return {"chain": chain, "batchId": batch_id, "user": owed.user, "settled": settled}

    async def get_batch_nonce(self, address: str, chain: Optional[str] = None) -> int:
        return await self.client.get_batch_nonce(chain or self.settings.hub_chain, address)

    async def get_chains(self) -> List[Dict[str, Any]]:
        chains = []
        for name, chain in self.settings.chains.items():
            chains.append(
                {
                    "name": name,
                    "chainId": chain.chain_id,
                    "rpcEndpoint": chain.rpc_endpoint or None,
                    "blockConfirmations": chain.block_confirmations,
                    "gatewayAddress": chain.gateway_address or None,
                    "metaTxGatewayAddress": chain.meta_tx_gateway_address or None,
                    "isHub": name == self.settings.hub_chain,
                    "gasless": await self.client.executor_address(name) is not None,
                }
            )
        return chains


def _batch_bytes(meta_tx_data: Any) -> bytes:
    """Encoded batch from 0x hex, raw bytes, or a list of call dicts."""
    try:
        if isinstance(meta_tx_data, (list, tuple)):
            return encode_meta_transactions(
                [c if isinstance(c, MetaTransaction) else MetaTransaction.from_dict(c) for c in meta_tx_data]
            )
        return to_bytes(meta_tx_data)
    except ValueError as exc:
        raise MalformedBatchError(f"Batch calls are not valid: {exc}") from exc
