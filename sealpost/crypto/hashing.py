import hashlib
import struct

from eth_utils import keccak as _keccak, to_canonical_address

from sealpost.core.canon import canonical_json
from sealpost.core.types import MessageMeta, NO_KEY_LOCATOR

DOMAIN_TAG = b"\x19\x45"
MESSAGE_PREFIX = b"MSG:"


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def keccak(data: bytes) -> bytes:
    return _keccak(data)


def locator_commitment(locator: str) -> bytes:
    """keccak256 of the UTF-8 locator string; what the ledger stores instead of the locator."""
    return keccak(locator.encode("utf-8"))


NO_KEY_COMMITMENT = locator_commitment(NO_KEY_LOCATOR)


def _field(data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + data


def commitment_preimage(
    sender: str,
    recipient: str,
    timestamp: int,
    content_digest: bytes,
    iv: bytes,
    content_locator_commitment: bytes,
    key_locator_commitment: bytes,
    nonce: int,
) -> bytes:
    """
    Length-prefixed, field-ordered encoding of everything a signature binds.
    Each field is a 4-byte big-endian length followed by its bytes; integers are
    fixed-width big-endian (timestamp uint64, nonce uint128).
    """
    parts = (
        DOMAIN_TAG,
        MESSAGE_PREFIX,
        to_canonical_address(sender),
        to_canonical_address(recipient),
        timestamp.to_bytes(8, "big"),
        content_digest,
        iv,
        content_locator_commitment,
        key_locator_commitment,
        nonce.to_bytes(16, "big"),
    )
    return b"".join(_field(p) for p in parts)


def message_commitment(
    sender: str,
    recipient: str,
    timestamp: int,
    content_digest: bytes,
    iv: bytes,
    content_locator_commitment: bytes,
    key_locator_commitment: bytes,
    nonce: int,
) -> bytes:
    """32-byte keccak256 commitment that senders sign (EIP-191 wrapped) in signed mode."""
    return keccak(commitment_preimage(
        sender, recipient, timestamp, content_digest, iv,
        content_locator_commitment, key_locator_commitment, nonce,
    ))


def meta_commitment(meta: MessageMeta) -> bytes:
    """Recompute the signed commitment of an accepted record."""
    return message_commitment(
        meta.sender, meta.recipient, meta.timestamp, meta.content_digest, meta.iv,
        meta.content_locator_commitment, meta.key_locator_commitment, meta.nonce,
    )


def message_hash(meta: MessageMeta) -> str:
    """Hex SHA-256 of the canonical JSON of a ledger record (for exports / audits)."""
    return hashlib.sha256(canonical_json(meta.to_dict())).hexdigest()
