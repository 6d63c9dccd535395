"""Signs approval digests with the relayer key set."""

from typing import List, Sequence

from eth_account import Account

from relayhub.core.gateway.models import Command
from relayhub.core.ledger.hashing import approval_digest
from relayhub.core.ledger.signatures import sign_digest


class CommandSigner:
    """
    Holds the relayer's submitting key plus any co-signer keys.

    The first key is the relayer identity: it submits transactions and is
    always among the signers.
    """

    def __init__(self, private_keys: Sequence[str]):
        keys = [key for key in private_keys if key]
        if not keys:
            raise ValueError("At least one relayer private key is required")
        self._accounts = [Account.from_key(key) for key in keys]

    @property
    def address(self) -> str:
        return self._accounts[0].address

    @property
    def addresses(self) -> List[str]:
        return [account.address for account in self._accounts]

    def sign(
        self,
        command: Command,
        chain_id: int,
        gateway_address: str,
        threshold: int,
    ) -> List[str]:
        """Return up to ``threshold`` signatures approving ``command`` on one gateway."""
        digest = approval_digest(
            command.command_id,
            command.source_chain,
            command.source_address,
            command.payload_hash,
            int(command.command_type),
            command.destination_address,
            command.symbol,
            command.amount,
            chain_id,
            gateway_address,
        )
        count = max(1, min(threshold, len(self._accounts)))
        return [sign_digest(account.key, digest) for account in self._accounts[:count]]
