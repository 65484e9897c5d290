# sealpost/storage/__init__.py
"""
Storage backends for durable ledger state and the client's local vault.
"""

from abc import ABC, abstractmethod
from typing import Dict, List
from pathlib import Path
from sealpost.core.types import KeyRecord, MessageMeta


class StorageBackend(ABC):
    """Abstract base for all persistent ledger storage implementations."""

    @abstractmethod
    def commit_message(self, meta: MessageMeta) -> None:
        """Durably record an accepted message. Must be all-or-nothing."""

    @abstractmethod
    def put_key_record(self, record: KeyRecord) -> None:
        pass

    @abstractmethod
    def load_messages(self) -> List[MessageMeta]:
        pass

    @abstractmethod
    def load_key_records(self) -> List[KeyRecord]:
        pass

    def load_message_hashes(self) -> Dict[int, str]:
        """Record hashes written at commit time, by message id. Backends that keep none return {}."""
        return {}

    @abstractmethod
    def close(self) -> None:
        pass


def create_storage(uri: str) -> StorageBackend:
    uri = uri.strip()
    if uri.startswith("sqlite://"):
        from .sqlite import SQLiteStorage
        # Extract everything after sqlite://
        raw_path = uri[len("sqlite://"):]
        if raw_path.startswith("//"):
            raw_path = raw_path[1:]
        return SQLiteStorage(Path(raw_path).resolve())
    elif "://" in uri:
        raise ValueError(f"Unsupported storage URI: {uri}")
    elif uri:
        # Plain file path -> SQLite
        from .sqlite import SQLiteStorage
        return SQLiteStorage(Path(uri).resolve())
    raise ValueError("Empty storage URI")


from .sqlite import SQLiteStorage
from .vault import LocalVault

__all__ = ["StorageBackend", "create_storage", "SQLiteStorage", "LocalVault"]
