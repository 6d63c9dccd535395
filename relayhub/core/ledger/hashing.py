"""
Hashing helpers shared by the gateway, the relayer and the CLI.

Ids and hashes travel as 0x-prefixed lowercase hex strings; payloads as bytes.
"""

from typing import Optional, Union

from eth_abi import encode
from eth_utils import is_address, keccak, to_checksum_address

from .errors import InvalidAddressError

BytesLike = Union[bytes, bytearray, str]


def to_hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


def keccak_hex(data: bytes) -> str:
    return to_hex(keccak(data))


def to_bytes(value: BytesLike) -> bytes:
    """Accept raw bytes or a 0x-prefixed hex string."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value[2:] if value.startswith(("0x", "0X")) else value
    return bytes.fromhex(text)


def to_bytes32(value: BytesLike) -> bytes:
    raw = to_bytes(value)
    if len(raw) != 32:
        raise ValueError(f"expected 32 bytes, got {len(raw)}")
    return raw


def normalize_address(value: str) -> str:
    """Checksum an EVM address, raising InvalidAddress for anything else."""
    if not value or not is_address(value):
        raise InvalidAddressError(f"Invalid address: {value!r}", address=value)
    return to_checksum_address(value)


def account_key(value: str) -> str:
    """Balance key for an account: checksummed when it is an EVM address."""
    return to_checksum_address(value) if is_address(value) else value


def payload_hash(payload: BytesLike) -> str:
    return keccak_hex(to_bytes(payload))


def derive_command_id(
    source_chain: str,
    source_tx_hash: BytesLike,
    log_index: int,
    payload_hash_value: BytesLike,
) -> str:
    """Deterministic command id for a source event."""
    encoded = encode(
        ["string", "bytes32", "uint256", "bytes32"],
        [
            source_chain,
            to_bytes32(source_tx_hash),
            log_index,
            to_bytes32(payload_hash_value),
        ],
    )
    return keccak_hex(encoded)


def derive_refund_command_id(command_id: BytesLike) -> str:
    """Command id of the compensation that returns a token leg to its sender."""
    return keccak_hex(encode(["string", "bytes32"], ["refund", to_bytes32(command_id)]))


def approval_digest(
    command_id: BytesLike,
    source_chain: str,
    source_address: str,
    payload_hash_value: BytesLike,
    command_type: int,
    destination_address: str,
    symbol: Optional[str],
    amount: int,
    chain_id: int,
    gateway_address: str,
) -> bytes:
    """Digest relayers sign to approve a command on one specific gateway."""
    encoded = encode(
        [
            "bytes32",
            "string",
            "string",
            "bytes32",
            "uint8",
            "string",
            "string",
            "uint256",
            "uint256",
            "address",
        ],
        [
            to_bytes32(command_id),
            source_chain,
            source_address,
            to_bytes32(payload_hash_value),
            int(command_type),
            destination_address,
            symbol or "",
            amount,
            chain_id,
            to_checksum_address(gateway_address),
        ],
    )
    return keccak(encoded)


def encode_token_payload(account: str, amount: int, symbol: str) -> bytes:
    """Payload of MintToken / BurnToken commands."""
    return encode(["string", "uint256", "string"], [account, amount, symbol])
