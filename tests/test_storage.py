# tests/test_storage.py
import os
from pathlib import Path

import pytest

from sealpost.chain.ledger import MessageLedger
from sealpost.core.errors import BadNonce, DuplicateIV, NotFound, RateLimited
from sealpost.core.types import Candidate, CorrelationRecord
from sealpost.crypto.hashing import locator_commitment
from sealpost.crypto.keys import IdentityKeyPair, RecipientKeyPair
from sealpost.storage import LocalVault, SQLiteStorage, StorageBackend, create_storage
from sealpost.store import LocalContentStore, MemoryContentStore, fetch_with_retry


class FakeClock:
    def __init__(self, t: int = 0):
        self.t = t

    def __call__(self) -> int:
        return self.t


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def storage(temp_db_path: Path) -> SQLiteStorage:
    s = SQLiteStorage(db_path=temp_db_path)
    yield s
    s.close()


def candidate(sender: str, recipient: str, nonce: int, iv: bytes | None = None) -> Candidate:
    return Candidate(
        sender=sender,
        recipient=recipient,
        content_digest=os.urandom(32),
        iv=iv or os.urandom(12),
        content_locator_commitment=locator_commitment(f"local://c{nonce}"),
        key_locator_commitment=locator_commitment(f"local://k{nonce}"),
        nonce=nonce,
    )


def test_create_storage_dynamic_routing(temp_db_path: Path):
    storage = create_storage(f"sqlite://{temp_db_path}")
    assert isinstance(storage, SQLiteStorage)
    assert str(storage.db_path) == str(temp_db_path.resolve())
    storage.close()

    plain = create_storage(str(temp_db_path))
    assert isinstance(plain, SQLiteStorage)
    assert isinstance(plain, StorageBackend)
    plain.close()


@pytest.mark.parametrize("uri", ["", "   ", "postgres://localhost/ledger"])
def test_create_storage_rejects_unknown(uri):
    with pytest.raises(ValueError):
        create_storage(uri)


def test_sqlite_init_default_and_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("SEALPOST_DB_PATH", raising=False)
    default_storage = SQLiteStorage()
    assert default_storage.db_path.name == "sealpost-ledger.db"
    default_storage.close()

    env_path = tmp_path / "env" / "env-test.db"
    monkeypatch.setenv("SEALPOST_DB_PATH", str(env_path))
    env_storage = SQLiteStorage()
    assert env_storage.db_path == env_path.resolve()
    env_storage.close()


def test_sqlite_schema_creation(storage: SQLiteStorage):
    cursor = storage.conn.cursor()
    cursor.execute("PRAGMA table_info(messages)")
    columns = {row[1] for row in cursor.fetchall()}
    assert columns == {
        "id", "sender", "recipient", "timestamp", "content_digest", "iv",
        "content_locator_commitment", "key_locator_commitment", "nonce",
        "signature_json", "message_hash",
    }
    cursor.execute("PRAGMA table_info(key_records)")
    assert {row[1] for row in cursor.fetchall()} == {
        "owner", "public_key_digest", "public_key_locator", "updated_at",
    }


def test_ledger_state_survives_restart(temp_db_path: Path):
    clock = FakeClock(100)
    alice, bob = IdentityKeyPair.generate(), IdentityKeyPair.generate()

    ledger = MessageLedger(min_interval=10, clock=clock, storage=str(temp_db_path))
    first = candidate(alice.address, bob.address, 1)
    ledger.submit(first)
    ledger.register_key(bob.address, b"\x0b" * 32, "local://bob-key")
    ledger.close()

    reopened = MessageLedger(min_interval=10, clock=clock, storage=str(temp_db_path))
    assert len(reopened) == 1
    assert reopened.last_nonce(alice.address) == 1
    assert reopened.is_iv_used(alice.address, bob.address, first.iv)
    assert reopened.get_key_record(bob.address).public_key_locator == "local://bob-key"
    assert reopened.get_inbox_ids(bob.address) == [1]

    # rate-limit state is rebuilt from the stored timestamp
    with pytest.raises(RateLimited):
        reopened.submit(candidate(alice.address, bob.address, 2))

    clock.t = 110
    with pytest.raises(DuplicateIV):
        reopened.submit(candidate(alice.address, bob.address, 2, iv=first.iv))
    assert reopened.submit(candidate(alice.address, bob.address, 2)).id == 2
    reopened.close()


def test_signature_persisted(temp_db_path: Path):
    from dataclasses import replace
    from sealpost.crypto.hashing import message_commitment

    clock = FakeClock(7)
    alice, bob = IdentityKeyPair.generate(), IdentityKeyPair.generate()
    c = candidate(alice.address, bob.address, 1)
    sig = alice.sign_commitment(message_commitment(
        c.sender, c.recipient, 7, c.content_digest, c.iv,
        c.content_locator_commitment, c.key_locator_commitment, c.nonce,
    ))

    with SQLiteStorage(temp_db_path) as storage:
        ledger = MessageLedger(min_interval=10, clock=clock, storage=storage)
        meta = ledger.submit(replace(c, signature=sig))
        assert storage.load_messages() == [meta]
        assert storage.get_message_count() == 1


def test_query_messages_and_identities(storage: SQLiteStorage):
    clock = FakeClock(0)
    ledger = MessageLedger(min_interval=0, clock=clock, storage=storage)
    alice, bob, carol = (IdentityKeyPair.generate() for _ in range(3))
    ledger.submit(candidate(alice.address, bob.address, 1))
    ledger.submit(candidate(alice.address, carol.address, 2))
    ledger.submit(candidate(carol.address, bob.address, 1))

    assert [m.id for m in storage.query_messages(limit=2)] == [2, 3]
    assert [m.id for m in storage.query_messages(recipient=bob.address)] == [1, 3]
    assert [m.id for m in storage.query_messages(sender=alice.address)] == [1, 2]
    assert set(storage.list_identities()) == {alice.address, bob.address, carol.address}
    assert storage.list_identities()[0] in (carol.address, bob.address)


def test_closed_storage_raises(storage: SQLiteStorage):
    storage.close()
    with pytest.raises(RuntimeError, match="closed"):
        storage.load_messages()


class FailingStorage(StorageBackend):
    def commit_message(self, meta):
        raise OSError("disk full")

    def put_key_record(self, record):
        raise OSError("disk full")

    def load_messages(self):
        return []

    def load_key_records(self):
        return []

    def close(self):
        pass


def test_storage_failure_leaves_memory_untouched():
    alice, bob = IdentityKeyPair.generate(), IdentityKeyPair.generate()
    ledger = MessageLedger(min_interval=10, clock=FakeClock(0), storage=FailingStorage())
    c = candidate(alice.address, bob.address, 1)

    with pytest.raises(OSError):
        ledger.submit(c)
    assert len(ledger) == 0
    assert ledger.last_nonce(alice.address) == 0
    assert ledger.last_sent_at(alice.address) is None
    assert not ledger.is_iv_used(alice.address, bob.address, c.iv)

    with pytest.raises(OSError):
        ledger.register_key(bob.address, b"\x01" * 32, "local://k")
    assert ledger.get_key_record(bob.address) is None


def test_uniqueness_enforced_by_schema(storage: SQLiteStorage):
    import sqlite3

    alice, bob = IdentityKeyPair.generate(), IdentityKeyPair.generate()
    ledger = MessageLedger(min_interval=0, clock=FakeClock(0), storage=storage)
    meta = ledger.submit(candidate(alice.address, bob.address, 1))

    from dataclasses import replace
    with pytest.raises(sqlite3.IntegrityError):
        storage.commit_message(replace(meta, id=99))
    with pytest.raises(BadNonce):
        ledger.submit(candidate(alice.address, bob.address, 1))


# ── local vault ──

def test_vault_correlation_roundtrip(tmp_path: Path):
    vault = LocalVault(tmp_path / "vault.db")
    record = CorrelationRecord(message_id=3, content_locator="local://c", key_locator=None)
    vault.save_correlation(record)
    assert vault.get_correlation(3) == record
    assert vault.get_correlation(4) is None
    vault.close()

    with LocalVault(tmp_path / "vault.db") as reopened:
        assert reopened.get_correlation(3) == record


def test_vault_export_import_between_parties():
    sender_vault, recipient_vault = LocalVault(), LocalVault()
    sender_vault.save_correlation(CorrelationRecord(1, "local://content", "local://key"))

    blob = sender_vault.export_correlation(1)
    assert sender_vault.export_correlation(2) is None
    imported = recipient_vault.import_correlation(blob)
    assert imported == CorrelationRecord(1, "local://content", "local://key")
    assert recipient_vault.get_correlation(1) == imported


def test_vault_private_keys():
    vault = LocalVault()
    keys = RecipientKeyPair.generate()
    assert vault.load_private_key("0xabc") is None
    vault.save_private_key("0xabc", keys)
    assert vault.load_private_key("0xabc").fingerprint() == keys.fingerprint()
    vault.close()
    with pytest.raises(RuntimeError, match="closed"):
        vault.get_correlation(1)


# ── content store ──

def test_local_content_store(tmp_path: Path):
    store = LocalContentStore(tmp_path / "blobs")
    locator = store.put(b"ciphertext blob")
    assert locator.startswith("local://")
    assert store.put(b"ciphertext blob") == locator
    assert store.get(locator) == b"ciphertext blob"

    with pytest.raises(NotFound):
        store.get("local://" + "0" * 64)
    with pytest.raises(NotFound):
        store.get("local://../../etc/passwd")
    with pytest.raises(NotFound):
        store.get("ipfs://bafy")


def test_local_content_store_env_root(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("SEALPOST_STORE_DIR", str(tmp_path / "env-blobs"))
    store = LocalContentStore()
    assert store.root == (tmp_path / "env-blobs").resolve()


def test_memory_store_delete():
    store = MemoryContentStore()
    locator = store.put(b"x")
    assert len(store) == 1
    store.delete(locator)
    with pytest.raises(NotFound):
        store.get(locator)


class FlakyStore(MemoryContentStore):
    """Returns NotFound for the first `misses` reads."""

    def __init__(self, misses: int):
        super().__init__()
        self.misses = misses
        self.calls = 0

    def get(self, locator: str) -> bytes:
        self.calls += 1
        if self.calls <= self.misses:
            raise NotFound(locator)
        return super().get(locator)


def test_fetch_with_retry_recovers():
    store = FlakyStore(misses=2)
    locator = store.put(b"eventually")
    assert fetch_with_retry(store, locator, attempts=3, delay=0) == b"eventually"
    assert store.calls == 3


def test_fetch_with_retry_gives_up():
    store = FlakyStore(misses=5)
    locator = store.put(b"never")
    with pytest.raises(NotFound):
        fetch_with_retry(store, locator, attempts=3, delay=0)
    assert store.calls == 3
