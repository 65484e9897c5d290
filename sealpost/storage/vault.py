import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Callable, List, Optional

from sealpost.core.types import CorrelationRecord
from sealpost.crypto.keys import RecipientKeyPair

logger = logging.getLogger(__name__)


class LocalVault:
    """
    Client-side state that never touches the ledger:
    - correlation records (message id -> real content/key locators)
    - RSA private keys per identity

    `db_path=None` keeps everything in memory.
    """

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            target = ":memory:"
        else:
            path = Path(db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            target = str(path.resolve())
        self._lock = threading.RLock()
        self._listeners: List[Callable[[CorrelationRecord], None]] = []
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            target, isolation_level=None, check_same_thread=False
        )
        self._create_schema()

    def _create_schema(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS correlations (
                message_id       INTEGER PRIMARY KEY,
                content_locator  TEXT    NOT NULL,
                key_locator      TEXT
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS private_keys (
                identity  TEXT PRIMARY KEY,
                pem       BLOB NOT NULL
            )
        """)

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Vault is closed")
        return self._conn

    # ── correlation side channel ──

    def save_correlation(self, record: CorrelationRecord) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO correlations (message_id, content_locator, key_locator) VALUES (?, ?, ?)",
                (record.message_id, record.content_locator, record.key_locator),
            )
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(record)
            except Exception:
                logger.warning("Correlation listener %r failed for message %d", listener, record.message_id, exc_info=True)

    def on_correlation(self, listener: Callable[[CorrelationRecord], None]) -> Callable[[], None]:
        """Call `listener` after every saved or imported correlation record. Returns a remover."""
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def get_correlation(self, message_id: int) -> Optional[CorrelationRecord]:
        with self._lock:
            row = self.conn.execute(
                "SELECT content_locator, key_locator FROM correlations WHERE message_id = ?",
                (message_id,),
            ).fetchone()
        if row is None:
            return None
        return CorrelationRecord(message_id=message_id, content_locator=row[0], key_locator=row[1])

    def export_correlation(self, message_id: int) -> Optional[str]:
        """JSON blob suitable for handing to the recipient over any side channel."""
        record = self.get_correlation(message_id)
        if record is None:
            return None
        return json.dumps(record.to_dict(), sort_keys=True)

    def import_correlation(self, blob: str) -> CorrelationRecord:
        d = json.loads(blob)
        record = CorrelationRecord(
            message_id=int(d["message_id"]),
            content_locator=d["content_locator"],
            key_locator=d.get("key_locator"),
        )
        self.save_correlation(record)
        return record

    # ── private key material ──

    def save_private_key(self, identity: str, keypair: RecipientKeyPair) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO private_keys (identity, pem) VALUES (?, ?)",
                (identity, keypair.private_pem()),
            )

    def load_private_key(self, identity: str) -> Optional[RecipientKeyPair]:
        with self._lock:
            row = self.conn.execute(
                "SELECT pem FROM private_keys WHERE identity = ?", (identity,)
            ).fetchone()
        if row is None:
            return None
        return RecipientKeyPair.from_private_pem(bytes(row[0]))

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
