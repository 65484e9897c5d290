"""
Hybrid envelope codec: AES-256-GCM for the body, RSA-OAEP-256 for the per-message key.

Pure functions over bytes. Storage and ledger calls belong to the client.
"""

import hmac
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from sealpost.core.errors import (
    AuthenticationFailed,
    IntegrityMismatch,
    NoKeyMaterial,
    UnwrapFailed,
)
from sealpost.core.types import IV_SIZE, KEY_SIZE, ContentEnvelope, KeyEnvelope
from sealpost.crypto.hashing import sha256


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


@dataclass(frozen=True)
class Sealed:
    """Output of `encrypt`: what goes to the content store plus the ledger digest."""
    content: ContentEnvelope
    key: Optional[KeyEnvelope]
    digest: bytes

    @property
    def iv(self) -> bytes:
        return self.content.iv


def wrap_key(symmetric_key: bytes, public_key: rsa.RSAPublicKey) -> KeyEnvelope:
    return KeyEnvelope(wrapped_key=public_key.encrypt(symmetric_key, _oaep()))


def unwrap_key(envelope: KeyEnvelope, private_key: rsa.RSAPrivateKey) -> bytes:
    try:
        key = private_key.decrypt(envelope.wrapped_key, _oaep())
    except ValueError as e:
        raise UnwrapFailed(f"Key unwrap failed: {e}") from e
    if len(key) != KEY_SIZE:
        raise UnwrapFailed(f"Unwrapped key has {len(key)} bytes, expected {KEY_SIZE}")
    return key


def encrypt(plaintext: bytes, recipient_public_key: Optional[rsa.RSAPublicKey]) -> Sealed:
    """
    Seal `plaintext` under a fresh 256-bit key and 96-bit IV.
    Without a recipient key the result carries no key envelope and nobody can open it.
    """
    symmetric_key = AESGCM.generate_key(bit_length=256)
    iv = os.urandom(IV_SIZE)
    ciphertext = AESGCM(symmetric_key).encrypt(iv, plaintext, None)

    key_envelope = None
    if recipient_public_key is not None:
        key_envelope = wrap_key(symmetric_key, recipient_public_key)

    return Sealed(
        content=ContentEnvelope(iv=iv, ciphertext=ciphertext),
        key=key_envelope,
        digest=sha256(ciphertext),
    )


def decrypt(
    content: ContentEnvelope,
    key_envelope: Optional[KeyEnvelope],
    private_key: rsa.RSAPrivateKey,
    expected_digest: bytes,
) -> bytes:
    """
    Open a sealed message. Order matters:
    key presence -> unwrap -> ciphertext digest -> AEAD tag.
    The digest is compared before AES-GCM runs, so substituted ciphertext never decrypts.
    """
    if key_envelope is None:
        raise NoKeyMaterial("Message was sent without a key envelope")

    symmetric_key = unwrap_key(key_envelope, private_key)

    if not hmac.compare_digest(sha256(content.ciphertext), expected_digest):
        raise IntegrityMismatch("Ciphertext digest does not match the ledger record")

    try:
        return AESGCM(symmetric_key).decrypt(content.iv, content.ciphertext, None)
    except (InvalidTag, ValueError) as e:
        raise AuthenticationFailed("AES-GCM authentication failed") from e
