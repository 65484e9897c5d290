import logging
import os
import threading
import time
from collections import defaultdict
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from eth_utils import is_address, to_checksum_address

from sealpost.core.errors import (
    BadNonce,
    BadSignature,
    DuplicateIV,
    InvalidInput,
    LedgerError,
    RateLimited,
)
from sealpost.core.types import (
    DIGEST_SIZE,
    IV_SIZE,
    UNSIGNED,
    Candidate,
    KeyRecord,
    KeyRegistered,
    MessageMeta,
    MessageSent,
    Signed,
    is_null_identity,
    signature_from_vrs,
    ZERO32,
)
from sealpost.crypto.hashing import message_commitment
from sealpost.crypto.keys import recover_signer
from sealpost.storage import StorageBackend, create_storage

logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVAL = 10
MAX_NONCE = 2 ** 128 - 1

Event = Union[MessageSent, KeyRegistered]
Handler = Callable[[Event], None]


def _canonical_identity(identity: str) -> str:
    """Checksum form used as the ledger's identity key; unparseable input is returned as-is."""
    try:
        return to_checksum_address(identity)
    except (ValueError, TypeError):
        return identity


def require_identity(identity, field: str) -> str:
    if not isinstance(identity, str) or is_null_identity(identity) or not is_address(identity):
        raise InvalidInput(f"{field} must be a non-null address, got {identity!r}")
    return to_checksum_address(identity)


def _require_bytes(value, size: int, field: str) -> bytes:
    if not isinstance(value, (bytes, bytearray)) or len(value) != size:
        raise InvalidInput(f"{field} must be {size} bytes")
    if not any(value):
        raise InvalidInput(f"{field} must not be zero")
    return bytes(value)


class MessageLedger:
    """
    Authoritative, append-only record of accepted messages plus the identity key directory.

    Submissions from one sender are strictly serialized; different senders only contend on the
    short commit section (id allocation, indices, persistence). A submission is validated in
    full before anything is written, so a rejected message leaves no trace: no nonce bump,
    no rate-limit timestamp, no IV marked used.
    """

    def __init__(
        self,
        min_interval: Optional[int] = None,
        clock: Optional[Callable[[], float]] = None,
        storage: Optional[Union[StorageBackend, str]] = None,
    ):
        if min_interval is None:
            min_interval = int(os.environ.get("SEALPOST_MIN_INTERVAL", DEFAULT_MIN_INTERVAL))
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = min_interval
        self.clock = clock or time.time

        self._messages: Dict[int, MessageMeta] = {}
        self._inbox: Dict[str, List[int]] = defaultdict(list)
        self._outbox: Dict[str, List[int]] = defaultdict(list)
        self._nonce: Dict[str, int] = {}
        self._last_sent_at: Dict[str, int] = {}
        self._used_ivs: Set[Tuple[str, str, bytes]] = set()
        self._keys: Dict[str, KeyRecord] = {}
        self._next_id = 1

        self._subscribers: List[Tuple[Handler, Optional[str]]] = []
        self._sender_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._commit_lock = threading.RLock()

        if isinstance(storage, str):
            storage = create_storage(storage) if storage.strip() else None
        self.storage: Optional[StorageBackend] = storage
        if self.storage:
            self._load()

    def _load(self) -> None:
        for meta in self.storage.load_messages():
            self._apply(meta)
        for record in self.storage.load_key_records():
            self._keys[record.owner] = record
        logger.info(
            "Loaded %d messages and %d key records from storage",
            len(self._messages), len(self._keys),
        )

    def now(self) -> int:
        return int(self.clock())

    def _sender_lock(self, sender: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._sender_locks.get(sender)
            if lock is None:
                lock = self._sender_locks[sender] = threading.Lock()
            return lock

    # ── write path ──

    def submit(self, candidate: Candidate) -> MessageMeta:
        """
        Validate and append a message. Raises InvalidInput, RateLimited, DuplicateIV,
        BadNonce or BadSignature (checked in that order); nothing is retried here.
        """
        sender = _canonical_identity(candidate.sender)
        with self._sender_lock(sender):
            now = self.now()
            try:
                meta = self._validate(candidate, now)
            except LedgerError as e:
                logger.warning("Rejected message from %s: %s (%s)", sender, e.kind, e.category)
                raise
            meta = self._commit(meta)

        logger.info("Accepted message %d: %s -> %s (nonce %d)", meta.id, meta.sender, meta.recipient, meta.nonce)
        self._notify(MessageSent.from_meta(meta))
        return meta

    def _validate(self, c: Candidate, now: int) -> MessageMeta:
        # 1. structure
        sender = require_identity(c.sender, "sender")
        recipient = require_identity(c.recipient, "recipient")
        content_digest = _require_bytes(c.content_digest, DIGEST_SIZE, "content_digest")
        iv = _require_bytes(c.iv, IV_SIZE, "iv")
        clc = _require_bytes(c.content_locator_commitment, DIGEST_SIZE, "content_locator_commitment")
        klc = _require_bytes(c.key_locator_commitment, DIGEST_SIZE, "key_locator_commitment")
        if isinstance(c.nonce, bool) or not isinstance(c.nonce, int) or not 0 <= c.nonce <= MAX_NONCE:
            raise InvalidInput(f"nonce must be an unsigned 128-bit integer, got {c.nonce!r}")

        # 2. rate limit (a sender that never sent is not limited)
        last = self._last_sent_at.get(sender)
        if last is not None and now - last < self.min_interval:
            raise RateLimited(sender, retry_after=last + self.min_interval - now)

        # 3. per-pair IV uniqueness
        if (sender, recipient, iv) in self._used_ivs:
            raise DuplicateIV(f"IV {iv.hex()} already used for {sender} -> {recipient}")

        # 4. nonce sequence
        expected = self._nonce.get(sender, 0) + 1
        if c.nonce != expected:
            raise BadNonce(expected=expected, got=c.nonce)

        # 5. optional signature binding, over the acceptance time
        if isinstance(c.signature, Signed):
            commitment = message_commitment(sender, recipient, now, content_digest, iv, clc, klc, c.nonce)
            signer = recover_signer(commitment, c.signature)
            if signer is None or signer != sender:
                raise BadSignature(f"bad signature: recovered {signer}, expected {sender}")
        elif c.signature is not UNSIGNED:
            raise InvalidInput(f"Unknown signature variant: {c.signature!r}")

        return MessageMeta(
            id=0,  # allocated at commit
            sender=sender,
            recipient=recipient,
            timestamp=now,
            content_digest=content_digest,
            iv=iv,
            content_locator_commitment=clc,
            key_locator_commitment=klc,
            nonce=c.nonce,
            signature=c.signature,
        )

    def _commit(self, pending: MessageMeta) -> MessageMeta:
        with self._commit_lock:
            meta = replace(pending, id=self._next_id)
            # Durable first: if storage raises, memory is untouched.
            if self.storage:
                self.storage.commit_message(meta)
            self._apply(meta)
            return meta

    def _apply(self, meta: MessageMeta) -> None:
        self._messages[meta.id] = meta
        self._next_id = max(self._next_id, meta.id + 1)
        self._outbox[meta.sender].append(meta.id)
        self._inbox[meta.recipient].append(meta.id)
        self._nonce[meta.sender] = meta.nonce
        self._last_sent_at[meta.sender] = meta.timestamp
        self._used_ivs.add((meta.sender, meta.recipient, meta.iv))

    def send_message(
        self,
        sender: str,
        recipient: str,
        *,
        content_digest: bytes,
        iv: bytes,
        content_locator_commitment: bytes,
        key_locator_commitment: bytes,
        nonce: int,
        sig_v: int = 0,
        sig_r: bytes = ZERO32,
        sig_s: bytes = ZERO32,
    ) -> int:
        """Wire-level entry point: raw (v, r, s), all zero meaning unsigned. Returns the new id."""
        meta = self.submit(Candidate(
            sender=sender,
            recipient=recipient,
            content_digest=content_digest,
            iv=iv,
            content_locator_commitment=content_locator_commitment,
            key_locator_commitment=key_locator_commitment,
            nonce=nonce,
            signature=signature_from_vrs(sig_v, sig_r, sig_s),
        ))
        return meta.id

    def register_key(self, identity: str, digest: bytes, locator: str) -> KeyRecord:
        """Publish (or replace) an identity's public-key fingerprint and locator."""
        owner = require_identity(identity, "identity")
        if not isinstance(digest, (bytes, bytearray)) or not any(digest):
            raise InvalidInput("public key digest must not be empty")
        with self._commit_lock:
            record = KeyRecord(
                owner=owner,
                public_key_digest=bytes(digest),
                public_key_locator=locator,
                updated_at=self.now(),
            )
            if self.storage:
                self.storage.put_key_record(record)
            self._keys[owner] = record

        logger.info("Registered key for %s at %s", owner, locator)
        self._notify(KeyRegistered(
            identity=owner, digest=record.public_key_digest, locator=locator, updated_at=record.updated_at,
        ))
        return record

    # ── notifications ──

    def subscribe(self, handler: Handler, recipient: Optional[str] = None) -> Callable[[], None]:
        """
        Register `handler` for ledger events. With `recipient`, only MessageSent events
        addressed to it are delivered. Returns an unsubscribe callable.
        """
        entry = (handler, _canonical_identity(recipient) if recipient else None)
        with self._commit_lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._commit_lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def _notify(self, event: Event) -> None:
        with self._commit_lock:
            subscribers = list(self._subscribers)
        for handler, recipient in subscribers:
            if recipient is not None and not (isinstance(event, MessageSent) and event.recipient == recipient):
                continue
            try:
                handler(event)
            except Exception:
                logger.warning("Subscriber %r failed on %s", handler, type(event).__name__, exc_info=True)

    # ── reads ──

    def get_inbox_ids(self, identity: str) -> List[int]:
        return list(self._inbox.get(_canonical_identity(identity), ()))

    def get_outbox_ids(self, identity: str) -> List[int]:
        return list(self._outbox.get(_canonical_identity(identity), ()))

    def is_iv_used(self, sender: str, recipient: str, iv: bytes) -> bool:
        return (_canonical_identity(sender), _canonical_identity(recipient), bytes(iv)) in self._used_ivs

    def get_message(self, message_id: int) -> Optional[MessageMeta]:
        return self._messages.get(message_id)

    def get_key_record(self, identity: str) -> Optional[KeyRecord]:
        return self._keys.get(_canonical_identity(identity))

    def last_nonce(self, sender: str) -> int:
        return self._nonce.get(_canonical_identity(sender), 0)

    def last_sent_at(self, sender: str) -> Optional[int]:
        return self._last_sent_at.get(_canonical_identity(sender))

    def messages(self) -> List[MessageMeta]:
        with self._commit_lock:
            return [self._messages[i] for i in sorted(self._messages)]

    def key_records(self) -> List[KeyRecord]:
        with self._commit_lock:
            return list(self._keys.values())

    def __len__(self) -> int:
        return len(self._messages)

    def close(self) -> None:
        if self.storage:
            self.storage.close()
            self.storage = None
