"""
Tests for the in-process ledger: transactions, sequence numbers, events,
token balances and the id derivations every component agrees on.
"""

import pytest
from eth_abi import encode
from eth_utils import keccak

from relayhub.core.ledger import (
    InsufficientBalanceError,
    InvalidAddressError,
    LocalLedger,
    ZeroAmountError,
    derive_command_id,
    derive_refund_command_id,
    normalize_address,
    payload_hash,
    to_bytes,
)
from relayhub.core.ledger.signatures import recover_digest_signer, sign_digest
from relayhub.core.recovery import NonceConflictError

from conftest import RELAYER, RELAYER_KEY, USER


# =============================================================================
# Transactions
# =============================================================================

class TestTransactions:
    """A transaction either commits completely or leaves no trace."""

    def test_commit_mines_block_and_bumps_nonce(self, ethereum_ledger):
        with ethereum_ledger.transaction(RELAYER) as tx:
            ethereum_ledger.emit("Ping", RELAYER, value=1)

        assert ethereum_ledger.block_number == 1
        assert ethereum_ledger.get_transaction_count(RELAYER) == 1
        receipt = ethereum_ledger.get_receipt(tx.tx_hash)
        assert receipt.block_number == 1
        assert [e.name for e in receipt.events] == ["Ping"]

    def test_failed_transaction_commits_nothing(self, ethereum_ledger):
        with pytest.raises(ValueError):
            with ethereum_ledger.transaction(RELAYER):
                ethereum_ledger.emit("Ping", RELAYER)
                raise ValueError("boom")

        assert ethereum_ledger.block_number == 0
        assert ethereum_ledger.get_transaction_count(RELAYER) == 0
        assert ethereum_ledger.get_logs(0) == []

    def test_failed_transaction_restores_balances(self, ethereum_ledger):
        ethereum_ledger.tokens.mint("IXFI", USER, 10)

        with pytest.raises(InsufficientBalanceError):
            with ethereum_ledger.transaction(USER):
                ethereum_ledger.tokens.transfer("IXFI", USER, RELAYER, 4)
                ethereum_ledger.tokens.burn("IXFI", USER, 99)

        assert ethereum_ledger.tokens.balance_of("IXFI", USER) == 10
        assert ethereum_ledger.tokens.balance_of("IXFI", RELAYER) == 0

    def test_savepoint_undoes_only_its_block(self, ethereum_ledger):
        ethereum_ledger.tokens.mint("IXFI", USER, 10)

        with ethereum_ledger.transaction(RELAYER):
            ethereum_ledger.emit("Before", RELAYER)
            with pytest.raises(ValueError):
                with ethereum_ledger.savepoint():
                    ethereum_ledger.tokens.transfer("IXFI", USER, RELAYER, 4)
                    ethereum_ledger.emit("Inside", RELAYER)
                    raise ValueError("call reverted")
            ethereum_ledger.emit("After", RELAYER)

        assert ethereum_ledger.tokens.balance_of("IXFI", USER) == 10
        assert [e.name for e in ethereum_ledger.get_logs(0)] == ["Before", "After"]
        assert ethereum_ledger.get_transaction_count(RELAYER) == 1

    def test_nested_transaction_joins_outer(self, ethereum_ledger):
        with ethereum_ledger.transaction(RELAYER) as outer:
            with ethereum_ledger.transaction(USER) as inner:
                ethereum_ledger.emit("A", RELAYER)
            ethereum_ledger.emit("B", RELAYER)

        assert inner is outer
        assert ethereum_ledger.block_number == 1
        assert ethereum_ledger.get_transaction_count(RELAYER) == 1
        assert ethereum_ledger.get_transaction_count(USER) == 0
        assert [e.log_index for e in ethereum_ledger.get_logs(0)] == [0, 1]

    def test_explicit_nonce_must_match(self, ethereum_ledger):
        with pytest.raises(NonceConflictError) as exc_info:
            with ethereum_ledger.transaction(RELAYER, nonce=3):
                pass

        assert exc_info.value.context.details == {"expected": 0, "got": 3}
        assert exc_info.value.context.recoverable is True

        with ethereum_ledger.transaction(RELAYER, nonce=0):
            pass
        assert ethereum_ledger.get_transaction_count(RELAYER) == 1

    def test_emit_outside_transaction_is_rejected(self, ethereum_ledger):
        with pytest.raises(RuntimeError):
            ethereum_ledger.emit("Ping", RELAYER)

    def test_transaction_hashes_are_unique_per_sender_nonce(self, ethereum_ledger):
        with ethereum_ledger.transaction(RELAYER) as first:
            pass
        with ethereum_ledger.transaction(RELAYER) as second:
            pass
        assert first.tx_hash != second.tx_hash

    def test_get_logs_filters_by_block_name_and_address(self, ethereum_ledger):
        with ethereum_ledger.transaction(RELAYER):
            ethereum_ledger.emit("A", RELAYER)
        ethereum_ledger.mine(2)
        with ethereum_ledger.transaction(RELAYER):
            ethereum_ledger.emit("B", USER)

        assert [e.name for e in ethereum_ledger.get_logs(0, 1)] == ["A"]
        assert [e.name for e in ethereum_ledger.get_logs(2, names=["B"])] == ["B"]
        assert ethereum_ledger.get_logs(0, address=USER.lower())[0].name == "B"

    def test_event_timestamp_comes_from_clock(self, ethereum_ledger, clock):
        clock.advance(42)
        with ethereum_ledger.transaction(RELAYER):
            ethereum_ledger.emit("Ping", RELAYER)
        assert ethereum_ledger.get_logs(0)[0].timestamp == clock.now


# =============================================================================
# Tokens
# =============================================================================

class TestTokenLedger:
    """Tests for balances kept per symbol."""

    def test_mint_burn_transfer(self):
        ledger = LocalLedger("crossfi", 4157)
        ledger.tokens.mint("IXFI", USER, 100)
        ledger.tokens.transfer("IXFI", USER, RELAYER, 40)
        ledger.tokens.burn("IXFI", RELAYER, 15)

        assert ledger.tokens.balance_of("IXFI", USER) == 60
        assert ledger.tokens.balance_of("IXFI", RELAYER.lower()) == 25
        assert ledger.tokens.total_supply("IXFI") == 85

    def test_overdraw_is_rejected(self):
        ledger = LocalLedger("crossfi", 4157)
        ledger.tokens.mint("IXFI", USER, 10)
        with pytest.raises(InsufficientBalanceError) as exc_info:
            ledger.tokens.burn("IXFI", USER, 11)
        assert exc_info.value.details["balance"] == 10
        assert ledger.tokens.balance_of("IXFI", USER) == 10

    def test_zero_amounts_are_rejected(self):
        ledger = LocalLedger("crossfi", 4157)
        with pytest.raises(ZeroAmountError):
            ledger.tokens.mint("IXFI", USER, 0)


# =============================================================================
# Hashing
# =============================================================================

class TestHashing:
    """Id derivations shared by gateways, relayer and CLI."""

    def test_command_id_matches_abi_encoding(self):
        tx_hash = "0x" + "ab" * 32
        hashed = payload_hash(b"hello")
        expected = "0x" + keccak(
            encode(
                ["string", "bytes32", "uint256", "bytes32"],
                ["crossfi", to_bytes(tx_hash), 7, to_bytes(hashed)],
            )
        ).hex()

        assert derive_command_id("crossfi", tx_hash, 7, hashed) == expected

    def test_command_id_depends_on_every_input(self):
        tx_hash = "0x" + "ab" * 32
        hashed = payload_hash(b"hello")
        base = derive_command_id("crossfi", tx_hash, 0, hashed)

        assert derive_command_id("ethereum", tx_hash, 0, hashed) != base
        assert derive_command_id("crossfi", "0x" + "cd" * 32, 0, hashed) != base
        assert derive_command_id("crossfi", tx_hash, 1, hashed) != base
        assert derive_command_id("crossfi", tx_hash, 0, payload_hash(b"other")) != base

    def test_refund_id_is_stable_and_distinct(self):
        command_id = derive_command_id("crossfi", "0x" + "ab" * 32, 0, payload_hash(b""))
        refund_id = derive_refund_command_id(command_id)

        assert refund_id == derive_refund_command_id(command_id)
        assert refund_id != command_id

    def test_command_id_rejects_short_hash(self):
        with pytest.raises(ValueError):
            derive_command_id("crossfi", "0xabcd", 0, payload_hash(b""))

    def test_normalize_address(self):
        assert normalize_address(USER.lower()) == USER
        with pytest.raises(InvalidAddressError):
            normalize_address("not-an-address")
        with pytest.raises(InvalidAddressError):
            normalize_address("")

    def test_digest_signature_round_trip(self):
        digest = keccak(b"approve me")
        signature = sign_digest(RELAYER_KEY, digest)

        assert recover_digest_signer(digest, signature) == RELAYER
        assert recover_digest_signer(digest, "0x1234") is None
