"""
Relay pipeline.

One ``ChainWatcher`` per source chain turns gateway events into intents and
holds each one until its block is deep enough. One ``SubmissionWorker`` per
destination chain drains a bounded queue and carries each command through
approve then execute.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from relayhub.core.gateway.models import Command, CommandState, ExecutionOutcome
from relayhub.core.ledger.chain import LedgerEvent
from relayhub.core.ledger.errors import (
    AlreadyApprovedError,
    AlreadyExecutedError,
    GatewayPausedError,
)
from relayhub.core.recovery import ExecutionResult, RecoverableError, RecoveryExecutor

from .commands import INTENT_EVENTS, build_command, event_key
from .ledger_client import LedgerClient
from .models import FailedTransaction, IntentState, ObservedIntent, RelayerMetrics
from .nonce_manager import NonceManager
from .signer import CommandSigner
from .store import FailedTransactionStore, ProcessedEventStore
from .tracker import IntentTracker

Dispatch = Callable[[ObservedIntent], Awaitable[None]]


class ChainWatcher:
    """Polls one source chain and releases intents once they are confirmed."""

    def __init__(
        self,
        chain: str,
        client: LedgerClient,
        confirmations: int,
        tracker: IntentTracker,
        processed: ProcessedEventStore,
        dispatch: Dispatch,
        poll_interval_seconds: float = 5.0,
        start_block: int = 0,
        failed: Optional[FailedTransactionStore] = None,
        keep_finished: int = 10_000,
        logger: Optional[logging.Logger] = None,
    ):
        self.chain = chain
        self.client = client
        self.confirmations = confirmations
        self.tracker = tracker
        self.processed = processed
        self.dispatch = dispatch
        self.failed = failed
        self.poll_interval_seconds = poll_interval_seconds
        self.keep_finished = keep_finished
        self.logger = logger or logging.getLogger(__name__)
        self._next_block = start_block
        self._held: List[ObservedIntent] = []
        self._stopped = asyncio.Event()

    @property
    def held(self) -> List[ObservedIntent]:
        return list(self._held)

    async def poll_once(self) -> List[ObservedIntent]:
        """Ingest new events and dispatch every intent that reached its depth."""
        current = await self.client.block_number(self.chain)

        if current >= self._next_block:
            events = await self.client.get_logs(self.chain, self._next_block, current, INTENT_EVENTS)
            for event in sorted(events, key=lambda e: (e.block_number, e.log_index)):
                self._ingest(event)
            self._next_block = current + 1

        released: List[ObservedIntent] = []
        while self._held and current >= self._held[0].block_number + self.confirmations:
            intent = self._held.pop(0)
            if intent.state == IntentState.CANCELLED:
                continue
            intent.confirmed_at_block = current
            released.append(intent)
            await self.dispatch(intent)

        dropped = self.tracker.forget_finished(self.keep_finished)
        if dropped:
            self.logger.debug(f"Dropped {dropped} finished intents from memory")
        return released

    def _ingest(self, event: LedgerEvent) -> None:
        key = event_key(self.chain, event)
        if key in self.processed or self.tracker.get(key) is not None:
            return
        if self.failed is not None and self.failed.refunded(key):
            return
        try:
            command = build_command(event, self.chain)
        except (KeyError, ValueError) as exc:
            self.logger.warning(f"Skipping malformed {event.name} event {key}: {exc}")
            return

        intent = self.tracker.track(
            ObservedIntent(
                key=key,
                command=command,
                event_name=event.name,
                block_number=event.block_number,
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                sender=str(event.args.get("sender", "")),
            )
        )
        self.tracker.transition(
            intent,
            IntentState.AWAITING_CONFIRMATIONS,
            reason=f"waiting for {self.confirmations} confirmations",
        )
        self._held.append(intent)

    async def run(self) -> None:
        self.logger.info(f"Watching {self.chain} ({self.confirmations} confirmations)")
        self._stopped.clear()
        while not self._stopped.is_set():
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self.logger.error(f"Polling {self.chain} failed: {exc}")
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()


class SubmissionWorker:
    """Submits commands to one destination chain, one at a time."""

    def __init__(
        self,
        chain: str,
        client: LedgerClient,
        signer: CommandSigner,
        nonces: NonceManager,
        tracker: IntentTracker,
        recovery: RecoveryExecutor,
        failed: FailedTransactionStore,
        processed: ProcessedEventStore,
        metrics: RelayerMetrics,
        metrics_lock: asyncio.Lock,
        queue_size: int = 1000,
        logger: Optional[logging.Logger] = None,
    ):
        self.chain = chain
        self.client = client
        self.signer = signer
        self.nonces = nonces
        self.tracker = tracker
        self.recovery = recovery
        self.failed = failed
        self.processed = processed
        self.metrics = metrics
        self.metrics_lock = metrics_lock
        self.logger = logger or logging.getLogger(__name__)
        self.queue: "asyncio.Queue[ObservedIntent]" = asyncio.Queue(maxsize=queue_size)
        self._queued: Dict[str, ObservedIntent] = {}
        self._stopped = False

    @property
    def pending(self) -> int:
        return self.queue.qsize()

    async def enqueue(self, intent: ObservedIntent) -> None:
        """Queue an intent; waits while the queue is full."""
        self._queued[intent.command_id] = intent
        await self.queue.put(intent)

    def cancel(self, command_id: str) -> bool:
        """Cancel a queued command. Submitted commands cannot be cancelled."""
        intent = self._queued.get(command_id)
        if intent is None or not self.tracker.can_transition(intent, IntentState.CANCELLED):
            return False
        self.tracker.transition(intent, IntentState.CANCELLED, reason="cancelled by operator")
        return True

    async def run(self) -> None:
        self.logger.info(f"Submission worker for {self.chain} started")
        self._stopped = False
        while not self._stopped:
            intent = await self.queue.get()
            try:
                await self.process(intent)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self.logger.error(f"Worker {self.chain} failed on {intent.command_id}: {exc}")
            finally:
                self._queued.pop(intent.command_id, None)
                self.queue.task_done()

    def stop(self) -> None:
        self._stopped = True

    async def process(self, intent: ObservedIntent) -> ExecutionResult:
        if intent.state == IntentState.CANCELLED:
            return ExecutionResult(success=False, attempts=0)

        if intent.state == IntentState.AWAITING_CONFIRMATIONS:
            active = await self._source_active(intent.source_chain)
            if not active:
                self.tracker.transition(
                    intent,
                    IntentState.CANCELLED,
                    reason=f"source chain {intent.source_chain} deregistered on {self.chain}",
                )
                return ExecutionResult(success=False, attempts=0)

        self.tracker.transition(intent, IntentState.SUBMITTED, reason=f"attempt {intent.attempts + 1}")
        intent.attempts += 1

        result = await self.submit_command(intent.command)

        async with self.metrics_lock:
            self.metrics.total_transactions += 1
            if result.success:
                self.metrics.successful_transactions += 1
            else:
                self.metrics.failed_transactions += 1
                self.metrics.errors += 1

        if result.success:
            intent.error = None
            self.tracker.transition(intent, IntentState.APPROVED, reason="executed on destination")
            self.processed.add(intent.key)
            self.processed.save()
            return result

        intent.error = str(result.error)
        self.tracker.transition(intent, IntentState.REJECTED_OR_FAILED, reason=intent.error)
        if isinstance(result.error, GatewayPausedError):
            self.logger.critical(f"Gateway on {self.chain} is paused; {intent.command_id} parked")
        await self.failed.add(
            FailedTransaction(
                key=intent.key,
                command_id=intent.command_id,
                destination_chain=self.chain,
                command=intent.command,
                source_event=intent.source_event(),
                error=intent.error,
                error_category=(
                    result.error_context.category.value if result.error_context else "unknown"
                ),
                retry_count=result.attempts,
                max_retries=self.recovery.config.max_retries,
            )
        )
        return result

    async def submit_command(self, command: Command) -> ExecutionResult:
        """Approve then execute ``command`` with retry; safe to repeat."""
        return await self.recovery.execute(
            lambda: self._submit(command),
            operation_name=f"relay {command.command_id} to {self.chain}",
            provider=self.chain,
        )

    async def _source_active(self, source_chain: str) -> bool:
        try:
            return await self.client.is_chain_active(self.chain, source_chain)
        except RecoverableError as exc:
            # The gateway rejects inactive sources itself; submit and let it decide.
            self.logger.warning(f"Could not read chain registry on {self.chain}: {exc}")
            return True

    async def _submit(self, command: Command) -> Optional[ExecutionOutcome]:
        sender = self.signer.address
        state = await self.client.get_command_state(self.chain, command.command_id)
        if state == CommandState.EXECUTED:
            self.logger.info(f"{command.command_id} already executed on {self.chain}")
            return None

        if state != CommandState.APPROVED:
            chain_id = await self.client.chain_id(self.chain)
            gateway = await self.client.gateway_address(self.chain)
            threshold = await self.client.approval_threshold(self.chain)
            try:
                async with self.nonces.submission(self.chain, sender) as nonce:
                    signatures = self.signer.sign(command, chain_id, gateway, threshold)
                    tx_hash = await self.client.approve(self.chain, sender, nonce, command, signatures)
                self.logger.info(f"Approved {command.command_id} on {self.chain} in {tx_hash}")
            except AlreadyApprovedError:
                self.logger.info(f"{command.command_id} already approved on {self.chain}")

        try:
            async with self.nonces.submission(self.chain, sender) as nonce:
                outcome = await self.client.execute(self.chain, sender, nonce, command)
        except AlreadyExecutedError:
            self.logger.info(f"{command.command_id} already executed on {self.chain}")
            return None

        if not outcome.success:
            self.logger.warning(
                f"{command.command_id} executed on {self.chain} but its effect failed: {outcome.error}"
            )
        return outcome


def pending_counts(workers: Dict[str, SubmissionWorker]) -> Dict[str, int]:
    return {name: worker.pending for name, worker in workers.items()}


def held_counts(watchers: Dict[str, ChainWatcher]) -> Dict[str, int]:
    return {name: len(watcher.held) for name, watcher in watchers.items()}
