import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from sealpost.chain.ledger import MessageLedger, require_identity
from sealpost.client.directory import KeyDirectory
from sealpost.core.errors import (
    AuthenticationFailed,
    IntegrityMismatch,
    LocatorMismatch,
    NoKeyMaterial,
    NotFound,
    UnwrapFailed,
)
from sealpost.core.types import (
    UNSIGNED,
    Candidate,
    ContentEnvelope,
    CorrelationRecord,
    KeyEnvelope,
    KeyRecord,
    MessageMeta,
    MessageSent,
)
from sealpost.crypto.envelope import decrypt, encrypt
from sealpost.crypto.hashing import NO_KEY_COMMITMENT, locator_commitment, message_commitment
from sealpost.crypto.keys import IdentityKeyPair, RecipientKeyPair
from sealpost.storage.vault import LocalVault
from sealpost.store.content import ContentStore, fetch_with_retry

logger = logging.getLogger(__name__)


class InboxStatus(str, Enum):
    DECRYPTED = "decrypted"
    LOCATORS_UNKNOWN = "locators-unknown"
    LOCATOR_MISMATCH = "locator-mismatch"
    CONTENT_UNAVAILABLE = "content-unavailable"
    MALFORMED_ENVELOPE = "malformed-envelope"
    NO_PRIVATE_KEY = "no-private-key"
    NO_KEY = "no-key"
    UNWRAP_FAILED = "unwrap-failed"
    INTEGRITY_MISMATCH = "integrity-mismatch"
    AUTHENTICATION_FAILED = "authentication-failed"


_DECRYPT_FAILURES = {
    NoKeyMaterial: (InboxStatus.NO_KEY, "No encrypted data key (message sent when you had no public key)."),
    UnwrapFailed: (InboxStatus.UNWRAP_FAILED, "Cannot unwrap data key (wrong or rotated private key)."),
    IntegrityMismatch: (InboxStatus.INTEGRITY_MISMATCH, "Integrity mismatch (ledger digest != ciphertext digest)."),
    AuthenticationFailed: (InboxStatus.AUTHENTICATION_FAILED, "Ciphertext failed authentication."),
}


@dataclass(frozen=True)
class SendResult:
    message_id: int
    meta: MessageMeta
    content_locator: str
    key_locator: Optional[str]
    degraded: bool = False
    notes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class InboxItem:
    """One inbox entry. Exactly one of `plaintext` / `note` is meaningful, per `status`."""
    meta: MessageMeta
    status: InboxStatus
    plaintext: Optional[bytes] = None
    note: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is InboxStatus.DECRYPTED

    @property
    def text(self) -> Optional[str]:
        if self.plaintext is None:
            return None
        return self.plaintext.decode("utf-8", errors="replace")


class MessagingClient:
    """
    Drives the send and receive protocols for one identity.

    Send:    look up recipient key -> seal -> store envelopes -> commit locators -> submit
             -> remember real locators locally.
    Receive: read inbox ids -> resolve locators from the vault -> check them against the
             ledger commitments -> fetch -> open. Per-message failures become notes.
    """

    def __init__(
        self,
        identity: IdentityKeyPair,
        ledger: MessageLedger,
        store: ContentStore,
        vault: Optional[LocalVault] = None,
        directory: Optional[KeyDirectory] = None,
        max_workers: int = 4,
        fetch_attempts: int = 3,
    ):
        self.identity = identity
        self.ledger = ledger
        self.store = store
        self.vault = vault if vault is not None else LocalVault()
        self.directory = directory or KeyDirectory(ledger, store, fetch_attempts=fetch_attempts)
        self.max_workers = max_workers
        self.fetch_attempts = fetch_attempts

    @property
    def address(self) -> str:
        return self.identity.address

    def register_key(self, keypair: Optional[RecipientKeyPair] = None) -> KeyRecord:
        """Publish an RSA public key for this identity and keep the private half in the vault."""
        keypair = keypair or RecipientKeyPair.generate()
        self.vault.save_private_key(self.address, keypair)
        return self.directory.publish(self.address, keypair)

    # ── send ──

    def send(self, recipient: str, plaintext: bytes | str, *, signed: bool = False) -> SendResult:
        """
        Encrypt, store and anchor one message. Ledger rejections propagate as the specific
        LedgerError; nothing is retried, since a fresh nonce / IV / time must be derived first.
        """
        recipient = require_identity(recipient, "recipient")
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        notes: List[str] = []
        lookup = self.directory.lookup(recipient)
        if not lookup.found:
            notes.append(f"{lookup.note} - sending without encrypted data key.")

        sealed = encrypt(plaintext, lookup.public_key)
        content_locator = self.store.put(sealed.content.to_json())
        key_locator = self.store.put(sealed.key.to_json()) if sealed.key is not None else None

        content_commitment = locator_commitment(content_locator)
        key_commitment = locator_commitment(key_locator) if key_locator else NO_KEY_COMMITMENT
        nonce = self.ledger.last_nonce(self.address) + 1

        signature = UNSIGNED
        if signed:
            # Binds the acceptance time; a submission landing in a later tick is rejected.
            commitment = message_commitment(
                self.address, recipient, self.ledger.now(), sealed.digest, sealed.iv,
                content_commitment, key_commitment, nonce,
            )
            signature = self.identity.sign_commitment(commitment)

        meta = self.ledger.submit(Candidate(
            sender=self.address,
            recipient=recipient,
            content_digest=sealed.digest,
            iv=sealed.iv,
            content_locator_commitment=content_commitment,
            key_locator_commitment=key_commitment,
            nonce=nonce,
            signature=signature,
        ))

        # Past this point the message is permanent; never resubmit.
        record = CorrelationRecord(meta.id, content_locator, key_locator)
        try:
            self.vault.save_correlation(record)
        except Exception:
            logger.error(
                "Message %d accepted but correlation not saved (content=%s key=%s)",
                meta.id, content_locator, key_locator,
            )
            raise

        return SendResult(
            message_id=meta.id,
            meta=meta,
            content_locator=content_locator,
            key_locator=key_locator,
            degraded=key_locator is None,
            notes=tuple(notes),
        )

    # ── receive ──

    def receive(self) -> List[InboxItem]:
        """Open every inbox entry; failures are reported per item, in inbox order."""
        metas = [self.ledger.get_message(i) for i in self.ledger.get_inbox_ids(self.address)]
        keypair = self.vault.load_private_key(self.address)

        if self.max_workers > 1 and len(metas) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                return list(pool.map(lambda m: self.open_message(m, keypair), metas))
        return [self.open_message(m, keypair) for m in metas]

    def open_message(self, meta: MessageMeta, keypair: Optional[RecipientKeyPair] = None) -> InboxItem:
        record = self.vault.get_correlation(meta.id)
        if record is None:
            return InboxItem(
                meta, InboxStatus.LOCATORS_UNKNOWN,
                note="Off-ledger locators unknown on this device (ask the sender to share them).",
            )

        try:
            self._check_locators(meta, record)
        except LocatorMismatch as e:
            return InboxItem(meta, InboxStatus.LOCATOR_MISMATCH, note=str(e))

        try:
            content_blob = fetch_with_retry(self.store, record.content_locator, attempts=self.fetch_attempts)
            key_blob = None
            if record.key_locator:
                key_blob = fetch_with_retry(self.store, record.key_locator, attempts=self.fetch_attempts)
        except NotFound as e:
            return InboxItem(meta, InboxStatus.CONTENT_UNAVAILABLE, note=f"Content unavailable: {e.locator}")

        try:
            content = ContentEnvelope.from_json(content_blob)
            key_envelope = KeyEnvelope.from_json(key_blob) if key_blob is not None else None
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            return InboxItem(meta, InboxStatus.MALFORMED_ENVELOPE, note=f"Malformed envelope: {e}")

        if content.iv != meta.iv:
            return InboxItem(meta, InboxStatus.INTEGRITY_MISMATCH, note="IV in envelope differs from the ledger record.")

        if keypair is None:
            keypair = self.vault.load_private_key(self.address)
        if key_envelope is not None and keypair is None:
            return InboxItem(meta, InboxStatus.NO_PRIVATE_KEY, note="Private key not imported for this identity.")

        try:
            plaintext = decrypt(
                content, key_envelope,
                keypair.private_key if keypair else None,
                meta.content_digest,
            )
        except (NoKeyMaterial, UnwrapFailed, IntegrityMismatch, AuthenticationFailed) as e:
            status, note = _DECRYPT_FAILURES[type(e)]
            logger.info("Message %d not decrypted: %s", meta.id, status.value)
            return InboxItem(meta, status, note=note)

        return InboxItem(meta, InboxStatus.DECRYPTED, plaintext=plaintext)

    @staticmethod
    def _check_locators(meta: MessageMeta, record: CorrelationRecord) -> None:
        if locator_commitment(record.content_locator) != meta.content_locator_commitment:
            raise LocatorMismatch(f"Content locator does not match the ledger commitment for message {meta.id}")
        expected_key = locator_commitment(record.key_locator) if record.key_locator else NO_KEY_COMMITMENT
        if expected_key != meta.key_locator_commitment:
            raise LocatorMismatch(f"Key locator does not match the ledger commitment for message {meta.id}")

    def watch(self, handler: Callable[[InboxItem], None]) -> "InboxWatch":
        """
        Deliver each newly accepted message addressed to this identity to `handler`, once per id.
        See InboxWatch for how messages whose locators or content are not yet available are retried.
        """
        return InboxWatch(self, handler)


# Statuses that may resolve later, once the correlation record or the blob shows up.
_RETRYABLE = frozenset({InboxStatus.LOCATORS_UNKNOWN, InboxStatus.CONTENT_UNAVAILABLE})


class InboxWatch:
    """
    Live delivery for one client. The ledger announces a message before its sender has
    recorded the locators, so an item that opens as LOCATORS_UNKNOWN or CONTENT_UNAVAILABLE
    is parked and opened again when a correlation record for it is saved, when a later
    message for this identity arrives, or on `retry()`. Each id reaches the handler exactly once, with
    its first final status. Calling the watch (or `close()`) unsubscribes.
    """

    def __init__(self, client: MessagingClient, handler: Callable[[InboxItem], None]):
        self.client = client
        self.handler = handler
        self._delivered: Set[int] = set()
        self._pending: Dict[int, InboxStatus] = {}
        self._lock = threading.Lock()
        self._unsubscribe = client.ledger.subscribe(self._on_event, recipient=client.address)
        self._remove_listener = client.vault.on_correlation(self._on_correlation)

    @property
    def pending(self) -> Dict[int, InboxStatus]:
        with self._lock:
            return dict(self._pending)

    def _attempt(self, message_id: int) -> None:
        with self._lock:
            if message_id in self._delivered:
                return
        meta = self.client.ledger.get_message(message_id)
        if meta is None:
            return
        item = self.client.open_message(meta)
        with self._lock:
            if message_id in self._delivered:
                return
            if item.status in _RETRYABLE:
                self._pending[message_id] = item.status
                return
            self._delivered.add(message_id)
            self._pending.pop(message_id, None)
        self.handler(item)

    def _on_event(self, event) -> None:
        if isinstance(event, MessageSent):
            self.retry()
            self._attempt(event.id)

    def _on_correlation(self, record: CorrelationRecord) -> None:
        with self._lock:
            waiting = record.message_id in self._pending
        if waiting:
            self._attempt(record.message_id)

    def retry(self) -> None:
        """Open every parked message again."""
        for message_id in sorted(self.pending):
            self._attempt(message_id)

    def close(self) -> None:
        self._unsubscribe()
        self._remove_listener()

    __call__ = close
