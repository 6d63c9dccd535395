"""
End-to-end relay tests over the in-process network.

Each test drives the watchers and workers by hand: ``poll_once`` scans the
source chains and ``process_pending`` drains the submission queues.
"""

from dataclasses import replace

import pytest
from unittest.mock import AsyncMock

from relayhub.core.gateway import CommandState
from relayhub.core.ledger import GatewayPausedError, InsufficientCreditsError, MalformedBatchError
from relayhub.core.metatx import MetaTransaction, encode_meta_transactions, sign_batch
from relayhub.core.recovery import RpcTimeoutError, UnrecoverableError
from relayhub.core.relayer import IntentState, RelayerHaltedError, RelayerService, build_relayer_service

from conftest import COSIGNER_KEY, ONE_TOKEN, START_TIME, USER, USER_KEY, XFI_PRICE

HUB_EXECUTOR = "0x00000000000000000000000000000000000b0001"
PING = "0x000000000000000000000000000000000000c0de"


async def relay_until_released(service, network, source):
    """Poll, mine one block, poll again; returns the released intents."""
    await service.poll_once()
    network.ledger(source).mine(network_confirmations(service, source))
    return await service.poll_once()


def network_confirmations(service, chain):
    return service.settings.chains[chain].block_confirmations


def executed_events(network, chain, command_id):
    return [
        e for e in network.ledger(chain).get_logs(0, names=["CommandExecuted"])
        if e.args["command_id"] == command_id
    ]


# =============================================================================
# Relay
# =============================================================================

class TestRelay:
    """Intents flow from source events to executed destination commands."""

    @pytest.mark.asyncio
    async def test_token_transfer_is_minted_on_destination(self, service, network, send_tokens):
        command_id = send_tokens()

        released = await relay_until_released(service, network, "crossfi")
        processed = await service.process_pending()

        assert [i.command_id for i in released] == [command_id]
        assert processed == 1
        assert network.ledger("ethereum").tokens.balance_of("IXFI", USER) == 5 * ONE_TOKEN
        assert network.ledger("crossfi").tokens.balance_of("IXFI", USER) == 0
        assert await service.client.get_command_state("ethereum", command_id) == CommandState.EXECUTED
        assert service.tracker.get_by_command(command_id).state == IntentState.APPROVED
        assert service.metrics.successful_transactions == 1

    @pytest.mark.asyncio
    async def test_nothing_is_submitted_before_depth(self, service, network, send_tokens):
        command_id = send_tokens(source="ethereum", destination="crossfi")
        ethereum = network.ledger("ethereum")
        emitted_at = ethereum.block_number

        assert await service.poll_once() == []
        ethereum.mine(11)
        assert ethereum.block_number == emitted_at + 11
        assert await service.poll_once() == []
        await service.process_pending()
        assert await service.client.get_command_state("crossfi", command_id) == CommandState.UNKNOWN
        assert service.get_status()["awaitingConfirmations"]["ethereum"] == 1

        ethereum.mine(1)
        released = await service.poll_once()
        await service.process_pending()

        assert [i.command_id for i in released] == [command_id]
        assert released[0].confirmed_at_block == emitted_at + 12
        assert await service.client.get_command_state("crossfi", command_id) == CommandState.EXECUTED

    @pytest.mark.asyncio
    async def test_events_are_dispatched_once(self, service, network, send_tokens):
        send_tokens()
        await relay_until_released(service, network, "crossfi")
        await service.process_pending()

        network.ledger("crossfi").mine(5)
        assert await service.poll_once() == []
        assert await service.process_pending() == 0

    @pytest.mark.asyncio
    async def test_finished_intents_are_dropped_after_a_poll(self, settings, clock):
        service = build_relayer_service(settings.model_copy(update={"finished_intents_kept": 0}), clock=clock)
        network = service.network
        network.ledger("crossfi").tokens.mint("IXFI", USER, ONE_TOKEN)
        command_id = network.gateway("crossfi").send_token("ethereum", USER, "IXFI", ONE_TOKEN, caller=USER)
        await relay_until_released(service, network, "crossfi")
        await service.process_pending()
        assert service.tracker.counts()["approved"] == 1

        assert await service.poll_once() == []

        assert service.tracker.get_by_command(command_id) is None
        assert len(service.tracker) == 0
        assert await service.process_pending() == 0

    @pytest.mark.asyncio
    async def test_quorum_of_two_signers(self, settings, clock):
        quorum = build_relayer_service(
            settings.model_copy(update={"approval_threshold": 2, "extra_signer_keys": [COSIGNER_KEY]}),
            clock=clock,
        )
        network = quorum.network
        network.ledger("crossfi").tokens.mint("IXFI", USER, ONE_TOKEN)
        command_id = network.gateway("crossfi").send_token("ethereum", USER, "IXFI", ONE_TOKEN, caller=USER)

        await relay_until_released(quorum, network, "crossfi")
        await quorum.process_pending()

        approval = network.ledger("ethereum").get_logs(0, names=["ContractCallApproved"])
        assert network.gateway("ethereum").authorization.threshold == 2
        assert len(approval) == 1
        assert network.ledger("ethereum").tokens.balance_of("IXFI", USER) == ONE_TOKEN
        assert len(executed_events(network, "ethereum", command_id)) == 1


# =============================================================================
# Injected failures
# =============================================================================

class TestInjectedTimeouts:
    """A timeout around execute never produces a second execution."""

    @pytest.mark.asyncio
    async def test_timeout_before_execute_lands(self, service, network, send_tokens, monkeypatch):
        real_execute = service.client.execute
        calls = []

        async def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RpcTimeoutError("execute timed out", operation="execute")
            return await real_execute(*args, **kwargs)

        monkeypatch.setattr(service.client, "execute", AsyncMock(side_effect=flaky))
        command_id = send_tokens()

        await relay_until_released(service, network, "crossfi")
        await service.process_pending()

        assert len(calls) == 2
        assert len(executed_events(network, "ethereum", command_id)) == 1
        assert network.ledger("ethereum").tokens.balance_of("IXFI", USER) == 5 * ONE_TOKEN
        assert service.failed.list() == []

    @pytest.mark.asyncio
    async def test_timeout_after_execute_landed(self, service, network, send_tokens, monkeypatch):
        real_execute = service.client.execute
        calls = []

        async def flaky(*args, **kwargs):
            calls.append(args)
            outcome = await real_execute(*args, **kwargs)
            if len(calls) == 1:
                raise RpcTimeoutError("receipt timed out", operation="execute")
            return outcome

        monkeypatch.setattr(service.client, "execute", AsyncMock(side_effect=flaky))
        command_id = send_tokens()

        await relay_until_released(service, network, "crossfi")
        await service.process_pending()

        # The retry sees the command executed and stops before a second execute.
        assert len(calls) == 1
        assert len(executed_events(network, "ethereum", command_id)) == 1
        assert network.ledger("ethereum").tokens.balance_of("IXFI", USER) == 5 * ONE_TOKEN
        assert service.tracker.get_by_command(command_id).state == IntentState.APPROVED

    @pytest.mark.asyncio
    async def test_persistent_timeouts_land_in_failed_set(self, service, network, send_tokens, monkeypatch):
        monkeypatch.setattr(
            service.client, "execute", AsyncMock(side_effect=RpcTimeoutError("down", operation="execute"))
        )
        command_id = send_tokens()

        await relay_until_released(service, network, "crossfi")
        await service.process_pending()

        failed = service.get_failed(command_id)
        assert failed.error_category == "timeout"
        assert failed.retry_count == service.settings.max_retry_attempts
        assert service.tracker.get_by_command(command_id).state == IntentState.REJECTED_OR_FAILED


# =============================================================================
# Safety
# =============================================================================

class TestSafety:
    """Pause and chain registry behaviour seen through the relayer."""

    @pytest.mark.asyncio
    async def test_conflicting_approval_pauses_destination(self, service, network, send_tokens):
        send_tokens()
        [intent] = await relay_until_released(service, network, "crossfi")
        client = service.client
        sender = service.relayer_address
        gateway = network.gateway("ethereum")
        command = intent.command

        def signatures(cmd):
            return service.signer.sign(cmd, 1, gateway.address, gateway.authorization.threshold)

        nonce = await client.get_transaction_count("ethereum", sender)
        await client.approve("ethereum", sender, nonce, command, signatures(command))

        forged = replace(command, payload=b"forged")
        with pytest.raises(GatewayPausedError):
            await client.approve("ethereum", sender, nonce + 1, forged, signatures(forged))

        assert gateway.is_paused
        assert network.ledger("ethereum").get_logs(0, names=["Paused"])
        assert await client.get_transaction_count("ethereum", sender) == nonce + 2
        assert gateway.get_approved(command.command_id).payload_hash == command.payload_hash

    @pytest.mark.asyncio
    async def test_deregistered_source_cancels_intent(self, service, network, send_tokens):
        command_id = send_tokens()
        await service.poll_once()
        network.gateway("ethereum").deregister_chain("crossfi", caller=service.relayer_address)
        network.ledger("crossfi").mine(1)

        await service.poll_once()
        await service.process_pending()

        assert service.tracker.get_by_command(command_id).state == IntentState.CANCELLED
        assert await service.client.get_command_state("ethereum", command_id) == CommandState.UNKNOWN

    @pytest.mark.asyncio
    async def test_cancel_queued_command(self, service, network, send_tokens):
        command_id = send_tokens()
        await relay_until_released(service, network, "crossfi")

        assert service.cancel(command_id) is True
        await service.process_pending()

        assert service.tracker.get_by_command(command_id).state == IntentState.CANCELLED
        assert network.ledger("ethereum").tokens.balance_of("IXFI", USER) == 0


# =============================================================================
# Compensation
# =============================================================================

class TestCompensation:
    """Operator retry and refund of failed commands."""

    async def fail_on_paused_destination(self, service, network, send_tokens):
        network.gateway("ethereum").pause(caller=service.relayer_address)
        command_id = send_tokens()
        await relay_until_released(service, network, "crossfi")
        await service.process_pending()
        return command_id

    @pytest.mark.asyncio
    async def test_paused_destination_fails_fast(self, service, network, send_tokens):
        command_id = await self.fail_on_paused_destination(service, network, send_tokens)

        failed = service.get_failed(command_id)
        assert failed.error_category == "fatal"
        assert failed.retry_count == 1
        assert service.get_status()["failedTransactions"] == 1

    @pytest.mark.asyncio
    async def test_refund_restores_source_balance(self, service, network, send_tokens):
        command_id = await self.fail_on_paused_destination(service, network, send_tokens)
        assert network.ledger("crossfi").tokens.balance_of("IXFI", USER) == 0

        result = await service.compensate(command_id, "refund")

        assert result["success"] is True
        assert network.ledger("crossfi").tokens.balance_of("IXFI", USER) == 5 * ONE_TOKEN
        assert service.get_failed(command_id).compensation == "refund"
        with pytest.raises(ValueError):
            await service.compensate(command_id, "refund")

    @pytest.mark.asyncio
    async def test_retry_after_unpause(self, service, network, send_tokens):
        command_id = await self.fail_on_paused_destination(service, network, send_tokens)
        network.gateway("ethereum").unpause(caller=service.relayer_address)

        result = await service.compensate(command_id, "retry")

        assert result["success"] is True
        assert network.ledger("ethereum").tokens.balance_of("IXFI", USER) == 5 * ONE_TOKEN
        assert service.failed.list(include_compensated=False) == []
        assert service.tracker.get_by_command(command_id).state == IntentState.APPROVED

    @pytest.mark.asyncio
    async def test_refund_refused_once_executed(self, service, network, send_tokens):
        command_id = await self.fail_on_paused_destination(service, network, send_tokens)
        network.gateway("ethereum").unpause(caller=service.relayer_address)
        await service.compensate(command_id, "retry")
        service.get_failed(command_id).compensated = False

        with pytest.raises(ValueError, match="refund refused"):
            await service.compensate(command_id, "refund")

    @pytest.mark.asyncio
    async def test_unknown_command_and_action(self, service):
        with pytest.raises(KeyError):
            await service.compensate("0x" + "00" * 32, "retry")
        with pytest.raises(ValueError):
            await service.compensate("0x" + "00" * 32, "forget")

    @pytest.mark.asyncio
    async def test_halted_relayer_refuses_compensation(self, service, network, send_tokens):
        command_id = await self.fail_on_paused_destination(service, network, send_tokens)
        await service.emergency_stop()

        with pytest.raises(RelayerHaltedError):
            await service.compensate(command_id, "refund")
        assert service.get_failed(command_id).compensated is False
        assert network.ledger("crossfi").tokens.balance_of("IXFI", USER) == 0


# =============================================================================
# Restart
# =============================================================================

class TestRestart:
    """Processed events survive a restart."""

    @pytest.mark.asyncio
    async def test_processed_events_are_not_relayed_again(self, settings, clock, tmp_path):
        durable = settings.model_copy(update={"state_dir": str(tmp_path)})
        service = build_relayer_service(durable, clock=clock)
        network = service.network
        network.ledger("crossfi").tokens.mint("IXFI", USER, ONE_TOKEN)
        network.gateway("crossfi").send_token("ethereum", USER, "IXFI", ONE_TOKEN, caller=USER)
        await relay_until_released(service, network, "crossfi")
        await service.process_pending()

        restarted = RelayerService(durable, service.client, service.signer, network=service.network)
        assert restarted.processed.load() == 1
        network.ledger("crossfi").mine(1)

        assert await restarted.poll_once() == []
        assert len(restarted.tracker) == 0
        assert (tmp_path / "processed_events.json").exists()

    async def refund_parked_transfer(self, service):
        network = service.network
        network.gateway("ethereum").pause(caller=service.relayer_address)
        network.ledger("crossfi").tokens.mint("IXFI", USER, ONE_TOKEN)
        command_id = network.gateway("crossfi").send_token("ethereum", USER, "IXFI", ONE_TOKEN, caller=USER)
        await relay_until_released(service, network, "crossfi")
        await service.process_pending()
        assert (await service.compensate(command_id, "refund"))["success"] is True
        network.gateway("ethereum").unpause(caller=service.relayer_address)
        return command_id

    @pytest.mark.asyncio
    async def test_refunded_transfer_is_not_relayed_after_restart(self, settings, clock, tmp_path):
        durable = settings.model_copy(update={"state_dir": str(tmp_path)})
        service = build_relayer_service(durable, clock=clock)
        network = service.network
        await self.refund_parked_transfer(service)

        restarted = RelayerService(durable, service.client, service.signer, network=network)
        restarted.processed.load()
        restarted.failed.load()
        network.ledger("crossfi").mine(1)

        assert await restarted.poll_once() == []
        await restarted.process_pending()
        assert network.ledger("ethereum").tokens.balance_of("IXFI", USER) == 0
        assert network.ledger("crossfi").tokens.balance_of("IXFI", USER) == ONE_TOKEN

    @pytest.mark.asyncio
    async def test_refund_record_alone_blocks_relay(self, settings, clock, tmp_path):
        durable = settings.model_copy(update={"state_dir": str(tmp_path)})
        service = build_relayer_service(durable, clock=clock)
        await self.refund_parked_transfer(service)

        restarted = RelayerService(durable, service.client, service.signer, network=service.network)
        restarted.failed.load()

        assert await restarted.poll_once() == []
        assert len(restarted.tracker) == 0


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:
    """Start, stop and health reporting."""

    @pytest.mark.asyncio
    async def test_start_and_emergency_stop(self, service):
        assert service.get_health()["status"] == "stopped"

        await service.start()
        assert service.get_health()["status"] == "healthy"
        assert service.get_status()["isRunning"] is True

        result = await service.emergency_stop()
        assert result["stopped"] is True
        assert service.get_health()["status"] == "halted"
        assert service.get_status()["emergencyStopped"] is True

    @pytest.mark.asyncio
    async def test_start_requires_whitelisted_relayer(self, service):
        network = service.network
        network.authorization.remove_relayer(service.relayer_address)

        with pytest.raises(UnrecoverableError, match="not whitelisted"):
            await service.start()
        assert service.is_running is False

    @pytest.mark.asyncio
    async def test_chains_report_gasless_support(self, service):
        chains = {c["name"]: c for c in await service.get_chains()}

        assert chains["crossfi"]["isHub"] is True
        assert chains["crossfi"]["gasless"] is True
        assert chains["ethereum"]["blockConfirmations"] == 12


# =============================================================================
# Gasless batches
# =============================================================================

class TestGaslessBatches:
    """Batches relayed through the service are paid from credits."""

    @pytest.fixture
    def priced(self, service):
        network = service.network
        network.oracle.set_price("XFI/USD", XFI_PRICE, caller=service.relayer_address)
        return network

    @pytest.fixture
    def target(self, priced):
        calls = []

        def record(sender, value, data):
            calls.append(data)
            return 21_000

        priced.executor("crossfi").targets.register(PING, record)
        return calls

    def signed_batch(self, nonce=0):
        data = encode_meta_transactions([MetaTransaction(PING, 0, b"ping")])
        deadline = START_TIME + 600
        signature = sign_batch(USER_KEY, 4157, HUB_EXECUTOR, USER, data, nonce, deadline)
        return "0x" + data.hex(), signature, nonce, deadline

    @pytest.mark.asyncio
    async def test_batch_is_paid_from_credits(self, service, priced, target):
        priced.ledger("crossfi").tokens.mint("IXFI", USER, 10 * ONE_TOKEN)
        priced.vault.deposit(10 * ONE_TOKEN, caller=USER)
        before = (await service.get_credits(USER))["balanceCents"]

        result = await service.submit_batch(USER, *self.signed_batch())

        assert result.successes == [True]
        assert result.paid is True
        assert target == [b"ping"]
        assert (await service.get_credits(USER))["balanceCents"] == before - result.cost_cents
        assert await service.get_batch_nonce(USER) == 1
        assert service.metrics.batches_relayed == 1
        assert service.metrics.credits_consumed_cents == result.cost_cents
        assert service.metrics.unpaid_batches == 0

    @pytest.mark.asyncio
    async def test_batch_without_credits_is_refused(self, service, priced, target):
        with pytest.raises(InsufficientCreditsError):
            await service.submit_batch(USER, *self.signed_batch())

        assert target == []
        assert await service.get_batch_nonce(USER) == 0

    @pytest.mark.asyncio
    async def test_empty_batch_is_malformed(self, service, priced):
        priced.ledger("crossfi").tokens.mint("IXFI", USER, ONE_TOKEN)
        priced.vault.deposit(ONE_TOKEN, caller=USER)
        data = encode_meta_transactions([])
        deadline = START_TIME + 600
        signature = sign_batch(USER_KEY, 4157, HUB_EXECUTOR, USER, data, 0, deadline)

        with pytest.raises(MalformedBatchError):
            await service.submit_batch(USER, data, signature, 0, deadline)
        assert await service.get_batch_nonce(USER) == 0
        assert service.metrics.batches_relayed == 0

    @pytest.mark.asyncio
    async def test_call_dicts_are_encoded(self, service, priced, target):
        priced.ledger("crossfi").tokens.mint("IXFI", USER, ONE_TOKEN)
        priced.vault.deposit(ONE_TOKEN, caller=USER)
        _, signature, nonce, deadline = self.signed_batch()
        calls = [{"to": PING, "value": 0, "data": "0x" + b"ping".hex()}]

        result = await service.submit_batch(USER, calls, signature, nonce, deadline)

        assert result.successes == [True]
        assert target == [b"ping"]

    @pytest.mark.asyncio
    async def test_halted_relayer_refuses_batches(self, service, priced, target):
        await service.emergency_stop()

        with pytest.raises(RelayerHaltedError) as exc_info:
            await service.submit_batch(USER, *self.signed_batch())
        assert exc_info.value.kind == "RelayerHalted"
        assert target == []
        assert await service.get_batch_nonce(USER) == 0


# =============================================================================
# Unpaid batches
# =============================================================================

class TestUnpaidSettlement:
    """Batches whose debit failed are listed and settled by the operator."""

    @pytest.fixture
    def unpaid(self, service, monkeypatch):
        network = service.network
        network.oracle.set_price("XFI/USD", XFI_PRICE, caller=service.relayer_address)
        network.executor("crossfi").targets.register(PING, lambda sender, value, data: 21_000)
        # The credit check passes but the debit after the calls cannot.
        monkeypatch.setattr(service.client, "has_enough_credits", AsyncMock(return_value=True))
        data = encode_meta_transactions([MetaTransaction(PING, 0, b"ping")])
        deadline = START_TIME + 600
        signature = sign_batch(USER_KEY, 4157, HUB_EXECUTOR, USER, data, 0, deadline)

        async def relay():
            return await service.submit_batch(USER, data, signature, 0, deadline)

        return relay

    @pytest.mark.asyncio
    async def test_unpaid_batch_is_listed(self, service, unpaid):
        result = await unpaid()

        assert result.paid is False
        assert service.metrics.unpaid_batches == 1
        assert service.metrics.credits_consumed_cents == 0
        [owed] = await service.list_unpaid()
        assert (owed.batch_id, owed.user) == (result.batch_id, USER)
        assert await service.list_unpaid("crossfi") == [owed]

    @pytest.mark.asyncio
    async def test_settle_after_deposit(self, service, unpaid):
        result = await unpaid()
        network = service.network
        network.ledger("crossfi").tokens.mint("IXFI", USER, ONE_TOKEN)
        network.vault.deposit(ONE_TOKEN, caller=USER)
        before = network.vault.get_credit_balance(USER)

        settled = await service.settle_unpaid("crossfi", result.batch_id)

        assert settled["settled"] is True
        assert network.vault.get_credit_balance(USER) == before - result.cost_cents
        assert await service.list_unpaid() == []

    @pytest.mark.asyncio
    async def test_settle_without_credits_keeps_debt(self, service, unpaid):
        result = await unpaid()

        settled = await service.settle_unpaid("crossfi", result.batch_id)

        assert settled["settled"] is False
        assert [u.batch_id for u in await service.list_unpaid()] == [result.batch_id]

    @pytest.mark.asyncio
    async def test_settle_unknown_batch(self, service, unpaid):
        with pytest.raises(KeyError):
            await service.settle_unpaid("crossfi", 42)
