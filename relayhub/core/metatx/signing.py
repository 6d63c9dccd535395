"""
EIP-712 batch authorization.

A user signs ``BatchTransaction(address from, bytes metaTxData, uint256 nonce,
uint256 deadline)`` in the domain ``{name, version, chainId,
verifyingContract}`` of the executor on the destination chain.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import to_checksum_address

from relayhub.core.ledger.errors import MalformedBatchError
from relayhub.core.ledger.hashing import BytesLike, to_bytes

from .models import MetaTransaction

logger = logging.getLogger(__name__)

DOMAIN_NAME = "MetaTxGateway"
DOMAIN_VERSION = "1"
META_TX_ABI = "(address,uint256,bytes)[]"

BATCH_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "BatchTransaction": [
        {"name": "from", "type": "address"},
        {"name": "metaTxData", "type": "bytes"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}


def encode_meta_transactions(transactions: Sequence[MetaTransaction]) -> bytes:
    return encode(
        [META_TX_ABI],
        [[(to_checksum_address(tx.to), tx.value, tx.data) for tx in transactions]],
    )


def decode_meta_transactions(meta_tx_data: BytesLike) -> List[MetaTransaction]:
    try:
        (rows,) = decode([META_TX_ABI], to_bytes(meta_tx_data))
    except (DecodingError, ValueError, OverflowError) as exc:
        raise MalformedBatchError(f"Undecodable batch data: {exc}") from exc
    return [
        MetaTransaction(to=to_checksum_address(to), value=value, data=bytes(data))
        for to, value, data in rows
    ]


def batch_typed_data(
    chain_id: int,
    verifying_contract: str,
    from_address: str,
    meta_tx_data: BytesLike,
    nonce: int,
    deadline: int,
    name: str = DOMAIN_NAME,
    version: str = DOMAIN_VERSION,
) -> Dict[str, Any]:
    return {
        "types": BATCH_TYPES,
        "primaryType": "BatchTransaction",
        "domain": {
            "name": name,
            "version": version,
            "chainId": chain_id,
            "verifyingContract": to_checksum_address(verifying_contract),
        },
        "message": {
            "from": to_checksum_address(from_address),
            "metaTxData": to_bytes(meta_tx_data),
            "nonce": nonce,
            "deadline": deadline,
        },
    }


def sign_batch(
    private_key: Union[str, bytes],
    chain_id: int,
    verifying_contract: str,
    from_address: str,
    meta_tx_data: BytesLike,
    nonce: int,
    deadline: int,
) -> str:
    signable = encode_typed_data(
        full_message=batch_typed_data(
            chain_id, verifying_contract, from_address, meta_tx_data, nonce, deadline
        )
    )
    signed = Account.sign_message(signable, private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def recover_batch_signer(
    chain_id: int,
    verifying_contract: str,
    from_address: str,
    meta_tx_data: BytesLike,
    nonce: int,
    deadline: int,
    signature: BytesLike,
    name: str = DOMAIN_NAME,
    version: str = DOMAIN_VERSION,
) -> Optional[str]:
    """Recover the signer of a batch, or None if the signature is malformed."""
    try:
        signable = encode_typed_data(
            full_message=batch_typed_data(
                chain_id,
                verifying_contract,
                from_address,
                meta_tx_data,
                nonce,
                deadline,
                name=name,
                version=version,
            )
        )
        return Account.recover_message(signable, signature=to_bytes(signature))
    except Exception as exc:  # noqa: BLE001
        logger.debug("batch_signature_recovery_failed", extra={"error": str(exc)})
        return None
