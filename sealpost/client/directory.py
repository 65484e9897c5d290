import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import rsa

from sealpost.chain.ledger import MessageLedger
from sealpost.core.errors import NotFound
from sealpost.core.types import KeyRecord
from sealpost.crypto.hashing import sha256
from sealpost.crypto.keys import RecipientKeyPair, load_public_pem
from sealpost.store.content import ContentStore, fetch_with_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyLookup:
    record: Optional[KeyRecord]
    public_key: Optional[rsa.RSAPublicKey]
    note: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.public_key is not None


class KeyDirectory:
    """
    Identity -> RSA public key, anchored by the ledger's key records.
    The PEM lives in the content store; the ledger holds its SHA-256 and locator.
    """

    def __init__(self, ledger: MessageLedger, store: ContentStore, fetch_attempts: int = 3):
        self.ledger = ledger
        self.store = store
        self.fetch_attempts = fetch_attempts

    def publish(self, identity: str, keypair: RecipientKeyPair) -> KeyRecord:
        pem = keypair.public_pem()
        locator = self.store.put(pem)
        return self.ledger.register_key(identity, sha256(pem), locator)

    def lookup(self, identity: str) -> KeyLookup:
        record = self.ledger.get_key_record(identity)
        if record is None:
            return KeyLookup(None, None, "Recipient has no registered public key")

        try:
            pem = fetch_with_retry(self.store, record.public_key_locator, attempts=self.fetch_attempts)
        except NotFound:
            logger.warning("Public key for %s not found at %s", identity, record.public_key_locator)
            return KeyLookup(record, None, f"Cannot access recipient key at {record.public_key_locator}")

        if not hmac.compare_digest(sha256(pem), record.public_key_digest):
            logger.warning("Public key for %s does not match its registered digest", identity)
            return KeyLookup(record, None, "Recipient key does not match its registered fingerprint")

        try:
            public_key = load_public_pem(pem)
        except (ValueError, UnsupportedAlgorithm):
            logger.warning("Public key for %s is not a valid RSA PEM", identity)
            return KeyLookup(record, None, "Recipient key is not a valid RSA public key")
        return KeyLookup(record, public_key)

    def resolve(self, identity: str) -> Optional[rsa.RSAPublicKey]:
        return self.lookup(identity).public_key
