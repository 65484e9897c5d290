from dataclasses import dataclass
from typing import Optional, Union

from sealpost.core.canon import canonical_json, parse_json
from sealpost.core.encoding import b64_decode, b64_encode, from_hex, to_hex

NULL_IDENTITY = "0x" + "00" * 20
DIGEST_SIZE = 32
IV_SIZE = 12
KEY_SIZE = 32
ZERO32 = bytes(DIGEST_SIZE)
ZERO_IV = bytes(IV_SIZE)

CONTENT_ALGO = "AES-256-GCM"
KEY_SCHEME = "RSA-OAEP-256"
ENVELOPE_VERSION = 1

# Stand-in key locator for messages sent without a key envelope; only its commitment is anchored.
NO_KEY_LOCATOR = "local://no-key"


def is_null_identity(identity: Optional[str]) -> bool:
    return not identity or identity.lower() == NULL_IDENTITY


# ── Signature variant ───────────────────────────────────────────────

@dataclass(frozen=True)
class Unsigned:
    """Explicit opt-out of signature binding."""

    def to_dict(self) -> dict:
        return {}


@dataclass(frozen=True)
class Signed:
    """secp256k1 (v, r, s) over the EIP-191 wrapped message commitment."""
    v: int
    r: bytes
    s: bytes

    def to_dict(self) -> dict:
        return {"v": self.v, "r": to_hex(self.r), "s": to_hex(self.s)}


UNSIGNED = Unsigned()
Signature = Union[Unsigned, Signed]


def signature_from_vrs(v: int, r: bytes, s: bytes) -> Signature:
    """All-zero components select unsigned mode; anything else must verify."""
    if v == 0 and not any(r) and not any(s):
        return UNSIGNED
    return Signed(v=v, r=bytes(r), s=bytes(s))


def signature_from_dict(d: Optional[dict]) -> Signature:
    if not d:
        return UNSIGNED
    return Signed(v=int(d["v"]), r=from_hex(d["r"]), s=from_hex(d["s"]))


# ── Ledger records ──────────────────────────────────────────────────

@dataclass(frozen=True)
class KeyRecord:
    """Latest published RSA public key of an identity (overwritten on re-registration)."""
    owner: str
    public_key_digest: bytes
    public_key_locator: str
    updated_at: int

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "public_key_digest": to_hex(self.public_key_digest),
            "public_key_locator": self.public_key_locator,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class Candidate:
    """A proposed message, as submitted by `sender`."""
    sender: str
    recipient: str
    content_digest: bytes
    iv: bytes
    content_locator_commitment: bytes
    key_locator_commitment: bytes
    nonce: int
    signature: Signature = UNSIGNED


@dataclass(frozen=True)
class MessageMeta:
    """Committed ledger record. Immutable once accepted."""
    id: int
    sender: str
    recipient: str
    timestamp: int                          # ledger acceptance time
    content_digest: bytes                   # sha256(ciphertext)
    iv: bytes
    content_locator_commitment: bytes       # keccak256(content locator)
    key_locator_commitment: bytes           # keccak256(key locator) or the no-key sentinel
    nonce: int
    signature: Signature = UNSIGNED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sender": self.sender,
            "recipient": self.recipient,
            "timestamp": self.timestamp,
            "content_digest": to_hex(self.content_digest),
            "iv": to_hex(self.iv),
            "content_locator_commitment": to_hex(self.content_locator_commitment),
            "key_locator_commitment": to_hex(self.key_locator_commitment),
            "nonce": self.nonce,
            "signature": self.signature.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "MessageMeta":
        return cls(
            id=int(d["id"]),
            sender=d["sender"],
            recipient=d["recipient"],
            timestamp=int(d["timestamp"]),
            content_digest=from_hex(d["content_digest"]),
            iv=from_hex(d["iv"]),
            content_locator_commitment=from_hex(d["content_locator_commitment"]),
            key_locator_commitment=from_hex(d["key_locator_commitment"]),
            nonce=int(d["nonce"]),
            signature=signature_from_dict(d.get("signature")),
        )

    @property
    def is_signed(self) -> bool:
        return isinstance(self.signature, Signed)


# ── Notifications ───────────────────────────────────────────────────

@dataclass(frozen=True)
class MessageSent:
    id: int
    sender: str
    recipient: str
    timestamp: int
    content_digest: bytes
    iv: bytes
    content_locator_commitment: bytes
    key_locator_commitment: bytes
    nonce: int

    @classmethod
    def from_meta(cls, meta: MessageMeta) -> "MessageSent":
        return cls(
            id=meta.id,
            sender=meta.sender,
            recipient=meta.recipient,
            timestamp=meta.timestamp,
            content_digest=meta.content_digest,
            iv=meta.iv,
            content_locator_commitment=meta.content_locator_commitment,
            key_locator_commitment=meta.key_locator_commitment,
            nonce=meta.nonce,
        )


@dataclass(frozen=True)
class KeyRegistered:
    identity: str
    digest: bytes
    locator: str
    updated_at: int


# ── Off-ledger envelopes ────────────────────────────────────────────

def _envelope_fields(data: bytes, *required: str) -> dict:
    """Parse a stored envelope; any shape other than an object with string fields is a ValueError."""
    d = parse_json(data)
    if not isinstance(d, dict):
        raise ValueError(f"Envelope must be a JSON object, got {type(d).__name__}")
    for name in required:
        if not isinstance(d.get(name), str):
            raise ValueError(f"Envelope field {name!r} must be a string")
    version = d.get("v", ENVELOPE_VERSION)
    if isinstance(version, bool) or not isinstance(version, int):
        raise ValueError(f"Envelope version must be an integer, got {version!r}")
    return d


@dataclass(frozen=True)
class ContentEnvelope:
    iv: bytes
    ciphertext: bytes           # AES-GCM output, 16-byte tag appended

    def to_json(self) -> bytes:
        return canonical_json({
            "algo": CONTENT_ALGO,
            "v": ENVELOPE_VERSION,
            "iv": to_hex(self.iv),
            "ciphertext_b64": b64_encode(self.ciphertext),
        })

    @classmethod
    def from_json(cls, data: bytes) -> "ContentEnvelope":
        d = _envelope_fields(data, "algo", "iv", "ciphertext_b64")
        if d["algo"] != CONTENT_ALGO:
            raise ValueError(f"Unsupported content algorithm: {d['algo']!r}")
        return cls(iv=from_hex(d["iv"]), ciphertext=b64_decode(d["ciphertext_b64"]))


@dataclass(frozen=True)
class KeyEnvelope:
    wrapped_key: bytes
    scheme: str = KEY_SCHEME
    version: int = ENVELOPE_VERSION

    def to_json(self) -> bytes:
        return canonical_json({
            "scheme": self.scheme,
            "v": self.version,
            "encrypted_key_b64": b64_encode(self.wrapped_key),
        })

    @classmethod
    def from_json(cls, data: bytes) -> "KeyEnvelope":
        d = _envelope_fields(data, "encrypted_key_b64")
        scheme = d.get("scheme", KEY_SCHEME)
        if not isinstance(scheme, str):
            raise ValueError("Envelope field 'scheme' must be a string")
        return cls(
            wrapped_key=b64_decode(d["encrypted_key_b64"]),
            scheme=scheme,
            version=d.get("v", ENVELOPE_VERSION),
        )


@dataclass(frozen=True)
class CorrelationRecord:
    """Client-side mapping from a ledger id to the real (unhashed) locators."""
    message_id: int
    content_locator: str
    key_locator: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "content_locator": self.content_locator,
            "key_locator": self.key_locator,
        }
