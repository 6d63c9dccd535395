"""Personal-sign helpers over 32-byte digests."""

import logging
from typing import Optional, Union

from eth_account import Account
from eth_account.messages import encode_defunct

from .hashing import BytesLike, to_bytes

logger = logging.getLogger(__name__)


def sign_digest(private_key: Union[str, bytes], digest: bytes) -> str:
    """Sign ``digest`` with the EIP-191 prefix and return the hex signature."""
    signed = Account.sign_message(encode_defunct(primitive=digest), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def recover_digest_signer(digest: bytes, signature: BytesLike) -> Optional[str]:
    """Recover the checksummed signer of ``digest``, or None for a malformed signature."""
    try:
        return Account.recover_message(
            encode_defunct(primitive=digest),
            signature=to_bytes(signature),
        )
    except Exception as exc:  # noqa: BLE001
        logger.debug("signature_recovery_failed", extra={"error": str(exc)})
        return None
