"""
Batch Meta-Transaction Executor

One signature, one nonce and one deadline authorize a whole batch. Once the
batch is authorized its nonce is spent, then every call runs inside its own
exception boundary: a failing call is recorded as ``False``, its token moves
and events are undone, and the next call still runs. An empty batch is
malformed and spends nothing.

The gas metered across the batch is priced once and debited from the user's
credits in a single ``consume_credits`` call. A debit that fails after the
calls ran is recorded as an unpaid batch; nothing is rolled back.
"""

import logging
from typing import Dict, List, Optional, Tuple

from relayhub.core.ledger.chain import LocalLedger
from relayhub.core.ledger.errors import (
    InsufficientBalanceError,
    InvalidNonceError,
    InvalidSignatureError,
    LedgerError,
    MalformedBatchError,
    OutstandingDebtError,
    TransactionExpiredError,
    UnauthorizedError,
    UnauthorizedRelayerError,
)
from relayhub.core.ledger.hashing import BytesLike, account_key, normalize_address, to_bytes
from relayhub.core.gateway.authorization import RelayerAuthorizationTable
from relayhub.core.vault.vault import GasCreditVault

from .models import BatchExecutionLog, BatchResult, GasEstimate, MetaTransaction, UnpaidBatch
from .signing import DOMAIN_NAME, DOMAIN_VERSION, decode_meta_transactions, recover_batch_signer
from .targets import CallTargetRegistry

logger = logging.getLogger(__name__)

UNPAID_POLICY_LOG = "log"
UNPAID_POLICY_BLOCK = "block"

BASE_TX_GAS = 21_000
CALLDATA_ZERO_BYTE_GAS = 4
CALLDATA_NONZERO_BYTE_GAS = 16
CALL_OVERHEAD_GAS = 2_600
VALUE_TRANSFER_GAS = 9_000
DEFAULT_TARGET_GAS = 25_000
REVERTED_CALL_GAS = 5_000
LOG_GAS = 1_500


def calldata_gas(data: bytes) -> int:
    zeros = data.count(0)
    return zeros * CALLDATA_ZERO_BYTE_GAS + (len(data) - zeros) * CALLDATA_NONZERO_BYTE_GAS


class GasMeter:
    """Accumulates the gas a batch consumes."""

    def __init__(self, calldata: bytes):
        self.total = BASE_TX_GAS + calldata_gas(calldata)

    def charge_call(self, tx: MetaTransaction, consumed: Optional[int], success: bool) -> int:
        cost = CALL_OVERHEAD_GAS + LOG_GAS
        if tx.value:
            cost += VALUE_TRANSFER_GAS
        if success:
            cost += DEFAULT_TARGET_GAS if consumed is None else max(consumed, 0)
        else:
            cost += REVERTED_CALL_GAS
        self.total += cost
        return cost


class BatchExecutor:
    """MetaTxGateway for one ledger."""

    def __init__(
        self,
        ledger: LocalLedger,
        address: str,
        admin: str,
        authorization: RelayerAuthorizationTable,
        vault: GasCreditVault,
        native_price_key: str,
        native_symbol: str = "",
        gas_price_wei: int = 1_000_000_000,
        unpaid_policy: str = UNPAID_POLICY_LOG,
        targets: Optional[CallTargetRegistry] = None,
        name: str = DOMAIN_NAME,
        version: str = DOMAIN_VERSION,
    ):
        if unpaid_policy not in (UNPAID_POLICY_LOG, UNPAID_POLICY_BLOCK):
            raise ValueError(f"Unknown unpaid batch policy: {unpaid_policy}")
        self.ledger = ledger
        self.address = normalize_address(address)
        self.admin = account_key(admin)
        self.authorization = authorization
        self.vault = vault
        self.native_price_key = native_price_key
        self.native_symbol = native_symbol
        self.gas_price_wei = gas_price_wei
        self.unpaid_policy = unpaid_policy
        self.targets = targets or CallTargetRegistry()
        self.name = name
        self.version = version

        self._nonces: Dict[str, int] = {}
        self._logs: List[BatchExecutionLog] = []
        self._unpaid: Dict[int, UnpaidBatch] = {}

    @property
    def chain_id(self) -> int:
        return self.ledger.chain_id

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_meta_transactions(
        self,
        from_address: str,
        meta_tx_data: BytesLike,
        signature: BytesLike,
        nonce: int,
        deadline: int,
        *,
        caller: str,
    ) -> BatchResult:
        raw_data = to_bytes(meta_tx_data)
        with self.ledger.transaction(caller) as tx:
            if not self.authorization.is_authorized(caller):
                raise UnauthorizedRelayerError(
                    f"{caller} is not an authorized relayer", relayer=caller
                )
            now = self.ledger.timestamp()
            if now > deadline:
                raise TransactionExpiredError(
                    f"Batch deadline {deadline} passed at {now}", deadline=deadline, now=now
                )
            user = normalize_address(from_address)
            expected = self._nonces.get(user, 0)
            if nonce != expected:
                raise InvalidNonceError(
                    f"Nonce {nonce} does not match expected {expected}",
                    expected=expected,
                    got=nonce,
                )
            signer = recover_batch_signer(
                self.chain_id,
                self.address,
                user,
                raw_data,
                nonce,
                deadline,
                signature,
                name=self.name,
                version=self.version,
            )
            if signer != user:
                raise InvalidSignatureError(
                    "Batch signature does not recover to the sender", user=user, signer=signer
                )
            calls = decode_meta_transactions(raw_data)
            if not calls:
                raise MalformedBatchError("Batch holds no calls", user=user)
            if self.unpaid_policy == UNPAID_POLICY_BLOCK and self.get_unpaid_batches(user):
                raise OutstandingDebtError(
                    f"{user} has unsettled batches", user=user
                )

            # Authorization is final from here on.
            self._nonces[user] = expected + 1
            batch_id = len(self._logs)

            meter = GasMeter(raw_data + to_bytes(signature))
            successes: List[bool] = []
            for index, call in enumerate(calls):
                success, consumed, error = self._run_call(user, call)
                meter.charge_call(call, consumed, success)
                successes.append(success)
                self.ledger.emit(
                    "MetaTransactionExecuted",
                    self.address,
                    batch_id=batch_id,
                    index=index,
                    user=user,
                    relayer=account_key(caller),
                    target=call.to,
                    value=call.value,
                    success=success,
                    error=error,
                )

            gas_used = meter.total
            cost_cents, paid, unpaid_reason = self._settle(user, gas_used)

            entry = BatchExecutionLog(
                batch_id=batch_id,
                user=user,
                relayer=account_key(caller),
                meta_tx_data=raw_data,
                gas_used=gas_used,
                successes=tuple(successes),
                timestamp=now,
                cost_cents=cost_cents,
                paid=paid,
                tx_hash=tx.tx_hash,
            )
            self._logs.append(entry)
            if not paid:
                self._unpaid[batch_id] = UnpaidBatch(
                    batch_id=batch_id,
                    user=user,
                    gas_used=gas_used,
                    owed_cents=cost_cents,
                    reason=unpaid_reason or "unknown",
                    created_at=now,
                )
                logger.warning(
                    "batch_unpaid",
                    extra={
                        "batch_id": batch_id,
                        "user": user,
                        "owed_cents": cost_cents,
                        "reason": unpaid_reason,
                    },
                )

            self.ledger.emit(
                "BatchTransactionExecuted",
                self.address,
                batch_id=batch_id,
                user=user,
                relayer=account_key(caller),
                gas_used=gas_used,
                cost_cents=cost_cents,
                paid=paid,
                successes=list(successes),
            )

        logger.info(
            "batch_executed",
            extra={
                "batch_id": batch_id,
                "user": user,
                "calls": len(successes),
                "failed_calls": successes.count(False),
                "gas_used": gas_used,
                "paid": paid,
            },
        )
        return BatchResult(
            batch_id=batch_id,
            successes=successes,
            gas_used=gas_used,
            cost_cents=cost_cents,
            paid=paid,
            tx_hash=tx.tx_hash,
            unpaid_reason=None if paid else unpaid_reason,
        )

    def settle_unpaid(self, batch_id: int, *, caller: str) -> bool:
        """Retry the debit of an unpaid batch at its recorded cost."""
        if not self.authorization.is_authorized(caller) and account_key(caller) != self.admin:
            raise UnauthorizedRelayerError(f"{caller} may not settle batches", relayer=caller)
        unpaid = self._unpaid.get(batch_id)
        if unpaid is None or unpaid.settled:
            return True

        owed = unpaid.owed_cents
        if owed is None:
            owed = self._price_gas(unpaid.gas_used)
            unpaid.owed_cents = owed
        if not self.vault.consume_credits(unpaid.user, owed, caller=self.address):
            return False

        unpaid.settled = True
        logger.info("batch_settled", extra={"batch_id": batch_id, "user": unpaid.user, "cents": owed})
        return True

    # ------------------------------------------------------------------
    # Estimation and reads
    # ------------------------------------------------------------------

    def estimate_gas(self, meta_tx_data: BytesLike, signature: BytesLike = b"\x00" * 65) -> int:
        """Upper estimate of the gas a batch will use, without running it."""
        raw_data = to_bytes(meta_tx_data)
        calls = decode_meta_transactions(raw_data)
        total = BASE_TX_GAS + calldata_gas(raw_data + to_bytes(signature))
        for call in calls:
            total += CALL_OVERHEAD_GAS + LOG_GAS + DEFAULT_TARGET_GAS
            if call.value:
                total += VALUE_TRANSFER_GAS
        return total

    def estimate_cost(self, meta_tx_data: BytesLike, gas_limit: Optional[int] = None) -> GasEstimate:
        gas = gas_limit if gas_limit is not None else self.estimate_gas(meta_tx_data)
        return GasEstimate(
            gas_limit=gas,
            gas_price_wei=self.gas_price_wei,
            cost_cents=self._price_gas(gas),
            calls=len(decode_meta_transactions(meta_tx_data)),
        )

    def get_nonce(self, user: str) -> int:
        return self._nonces.get(account_key(user), 0)

    def get_batch_log(self, batch_id: int) -> BatchExecutionLog:
        return self._logs[batch_id]

    def get_batch_successes(self, batch_id: int) -> List[bool]:
        return list(self._logs[batch_id].successes)

    def get_batch_transactions(self, batch_id: int) -> List[MetaTransaction]:
        return decode_meta_transactions(self._logs[batch_id].meta_tx_data)

    def get_total_batch_count(self) -> int:
        return len(self._logs)

    def get_unpaid_batches(
        self,
        user: Optional[str] = None,
        include_settled: bool = False,
    ) -> List[UnpaidBatch]:
        key = account_key(user) if user else None
        return [
            unpaid
            for unpaid in self._unpaid.values()
            if (include_settled or not unpaid.settled) and (key is None or unpaid.user == key)
        ]

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def set_relayer_authorization(self, relayer: str, authorized: bool, *, caller: str) -> None:
        if account_key(caller) != self.admin:
            raise UnauthorizedError(f"{caller} is not the executor admin", caller=caller)
        if authorized:
            self.authorization.add_relayer(relayer)
        else:
            self.authorization.remove_relayer(relayer)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_call(self, user: str, call: MetaTransaction) -> Tuple[bool, Optional[int], Optional[str]]:
        target = self.targets.get(call.to)
        try:
            with self.ledger.savepoint():
                if call.value:
                    if not self.native_symbol:
                        raise ValueError("value transfers are not supported on this ledger")
                    balance = self.ledger.tokens.balance_of(self.native_symbol, user)
                    if balance < call.value:
                        raise InsufficientBalanceError(
                            f"{user} holds {balance} {self.native_symbol}, call sends {call.value}"
                        )
                if target is None and call.data:
                    raise LookupError(f"no contract at {call.to}")
                consumed = target(user, call.value, call.data) if target is not None else 0
                if call.value:
                    self.ledger.tokens.transfer(self.native_symbol, user, call.to, call.value)
            return True, consumed, None
        except Exception as exc:  # noqa: BLE001
            logger.info(
                "meta_tx_call_failed",
                extra={"user": user, "target": call.to, "error": str(exc)},
            )
            return False, None, str(exc)

    def _settle(self, user: str, gas_used: int) -> Tuple[Optional[int], bool, Optional[str]]:
        try:
            cost_cents = self._price_gas(gas_used)
        except LedgerError as exc:
            return None, False, exc.kind
        if self.vault.consume_credits(user, cost_cents, caller=self.address):
            return cost_cents, True, None
        return cost_cents, False, "InsufficientCredits"

    def _price_gas(self, gas_used: int) -> int:
        native = self.vault.get_asset_price(self.native_price_key)
        return self.vault.calculate_credits_for_gas(
            gas_used, self.gas_price_wei, native.price_usd_8dp
        )
