from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.exceptions import ValidationError as KeysValidationError

from sealpost.core.types import Signed
from sealpost.crypto.hashing import sha256


class IdentityKeyPair:
    """
    Ethereum-style identity: the address is the principal, the secp256k1 key signs
    message commitments wrapped in the EIP-191 "signed message" envelope.
    """

    def __init__(self, account):
        self._account = account

    @classmethod
    def generate(cls) -> "IdentityKeyPair":
        return cls(Account.create())

    @property
    def address(self) -> str:
        return self._account.address

    def sign_commitment(self, commitment: bytes) -> Signed:
        signed = self._account.sign_message(encode_defunct(primitive=commitment))
        return Signed(
            v=signed.v,
            r=signed.r.to_bytes(32, "big"),
            s=signed.s.to_bytes(32, "big"),
        )

    def __repr__(self) -> str:
        return f"IdentityKeyPair({self.address})"


def recover_signer(commitment: bytes, signature: Signed) -> Optional[str]:
    """Address that produced `signature` over `commitment`, or None if the signature is malformed."""
    try:
        return Account.recover_message(
            encode_defunct(primitive=commitment),
            vrs=(
                signature.v,
                int.from_bytes(signature.r, "big"),
                int.from_bytes(signature.s, "big"),
            ),
        )
    except (ValueError, TypeError, KeysValidationError):
        return None


@dataclass(frozen=True)
class RecipientKeyPair:
    """RSA key pair used to wrap per-message AES keys (RSA-OAEP-256)."""
    private_key: rsa.RSAPrivateKey

    @classmethod
    def generate(cls, key_size: int = 2048) -> "RecipientKeyPair":
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=key_size))

    @classmethod
    def from_private_pem(cls, pem: bytes) -> "RecipientKeyPair":
        key = serialization.load_pem_private_key(pem, password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ValueError("Expected an RSA private key")
        return cls(key)

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()

    def private_pem(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_pem(self) -> bytes:
        return public_pem(self.public_key)

    def fingerprint(self) -> bytes:
        """SHA-256 of the published public PEM; registered on the ledger as the key digest."""
        return sha256(self.public_pem())


def public_pem(key: rsa.RSAPublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_public_pem(pem: bytes) -> rsa.RSAPublicKey:
    key = serialization.load_pem_public_key(pem)
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("Expected an RSA public key")
    return key
