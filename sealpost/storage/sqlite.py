import json
import os
import sqlite3
from pathlib import Path
from typing import Dict, List, Optional

from sealpost.core.encoding import from_hex, to_hex
from sealpost.core.types import KeyRecord, MessageMeta, signature_from_dict
from sealpost.crypto.hashing import message_hash
from . import StorageBackend


_MESSAGE_COLUMNS = """
    id, sender, recipient, timestamp, content_digest, iv,
    content_locator_commitment, key_locator_commitment, nonce, signature_json
"""


class SQLiteStorage(StorageBackend):
    """SQLite persistence for accepted messages and the key directory."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            env_path = os.environ.get("SEALPOST_DB_PATH")
            db_path = env_path if env_path else Path.cwd() / "sealpost-ledger.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = self.db_path.resolve()

        self._conn: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self):
        # Writes are serialized by the ledger's commit lock; reads may come from any thread.
        self._conn = sqlite3.connect(str(self.db_path), isolation_level=None, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_schema()

    def _create_schema(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id                          INTEGER PRIMARY KEY,
                sender                      TEXT    NOT NULL,
                recipient                   TEXT    NOT NULL,
                timestamp                   INTEGER NOT NULL,
                content_digest              TEXT    NOT NULL,
                iv                          TEXT    NOT NULL,
                content_locator_commitment  TEXT    NOT NULL,
                key_locator_commitment      TEXT    NOT NULL,
                nonce                       INTEGER NOT NULL,
                signature_json              TEXT    NOT NULL,
                message_hash                TEXT    NOT NULL,
                UNIQUE (sender, recipient, iv),
                UNIQUE (sender, nonce)
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS key_records (
                owner               TEXT    PRIMARY KEY,
                public_key_digest   TEXT    NOT NULL,
                public_key_locator  TEXT    NOT NULL,
                updated_at          INTEGER NOT NULL
            )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_recipient ON messages(recipient, id)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_sender    ON messages(sender, id)")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Storage connection is closed")
        return self._conn

    def commit_message(self, meta: MessageMeta) -> None:
        sig_str = json.dumps(meta.signature.to_dict(), sort_keys=True, separators=(",", ":"))
        # Single INSERT: either the whole record lands or nothing does.
        self.conn.execute(f"""
            INSERT INTO messages ({_MESSAGE_COLUMNS}, message_hash)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            meta.id, meta.sender, meta.recipient, meta.timestamp,
            to_hex(meta.content_digest), to_hex(meta.iv),
            to_hex(meta.content_locator_commitment), to_hex(meta.key_locator_commitment),
            meta.nonce, sig_str, message_hash(meta),
        ))

    def put_key_record(self, record: KeyRecord) -> None:
        self.conn.execute("""
            INSERT INTO key_records (owner, public_key_digest, public_key_locator, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(owner) DO UPDATE SET
                public_key_digest  = excluded.public_key_digest,
                public_key_locator = excluded.public_key_locator,
                updated_at         = excluded.updated_at
        """, (record.owner, to_hex(record.public_key_digest), record.public_key_locator, record.updated_at))

    @staticmethod
    def _row_to_meta(row) -> MessageMeta:
        mid, sender, recipient, ts, digest, iv, clc, klc, nonce, sjson = row
        return MessageMeta(
            id=mid,
            sender=sender,
            recipient=recipient,
            timestamp=ts,
            content_digest=from_hex(digest),
            iv=from_hex(iv),
            content_locator_commitment=from_hex(clc),
            key_locator_commitment=from_hex(klc),
            nonce=nonce,
            signature=signature_from_dict(json.loads(sjson)),
        )

    def load_messages(self) -> List[MessageMeta]:
        cursor = self.conn.execute(f"SELECT {_MESSAGE_COLUMNS} FROM messages ORDER BY id ASC")
        return [self._row_to_meta(row) for row in cursor]

    def load_message_hashes(self) -> Dict[int, str]:
        cursor = self.conn.execute("SELECT id, message_hash FROM messages")
        return {mid: h for mid, h in cursor}

    def load_key_records(self) -> List[KeyRecord]:
        cursor = self.conn.execute("""
            SELECT owner, public_key_digest, public_key_locator, updated_at
            FROM key_records ORDER BY owner ASC
        """)
        return [
            KeyRecord(owner=o, public_key_digest=from_hex(d), public_key_locator=loc, updated_at=u)
            for o, d, loc, u in cursor
        ]

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def get_message_count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]

    def list_identities(self) -> list[str]:
        """Every identity that has sent or received a message, most recently active first."""
        cursor = self.conn.execute("""
            SELECT identity FROM (
                SELECT sender AS identity, MAX(id) AS last_id FROM messages GROUP BY sender
                UNION ALL
                SELECT recipient AS identity, MAX(id) AS last_id FROM messages GROUP BY recipient
            )
            GROUP BY identity
            ORDER BY MAX(last_id) DESC
        """)
        return [row[0] for row in cursor.fetchall()]

    def query_messages(
        self,
        limit: int = 50,
        sender: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> List[MessageMeta]:
        """Most recent `limit` records (optionally filtered), returned oldest first."""
        clauses, params = [], []
        if sender:
            clauses.append("sender = ?")
            params.append(sender)
        if recipient:
            clauses.append("recipient = ?")
            params.append(recipient)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = self.conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages {where} ORDER BY id DESC LIMIT ?",
            (*params, limit),
        )
        loaded = [self._row_to_meta(row) for row in cursor]
        loaded.reverse()  # latest last
        return loaded
