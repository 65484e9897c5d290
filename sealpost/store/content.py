import hashlib
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict

from sealpost.core.errors import NotFound

logger = logging.getLogger(__name__)

LOCATOR_SCHEME = "local://"


class ContentStore(ABC):
    """Content-addressable blob store: put(bytes) -> locator, get(locator) -> bytes."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        pass

    @abstractmethod
    def get(self, locator: str) -> bytes:
        """Raise NotFound if nothing is stored under `locator`."""


def content_locator(data: bytes) -> str:
    return LOCATOR_SCHEME + hashlib.sha256(data).hexdigest()


class MemoryContentStore(ContentStore):
    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        locator = content_locator(data)
        with self._lock:
            self._blobs[locator] = bytes(data)
        return locator

    def get(self, locator: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[locator]
            except KeyError:
                raise NotFound(locator) from None

    def delete(self, locator: str) -> None:
        """Drop a blob (simulates expiry in tests and tooling)."""
        with self._lock:
            self._blobs.pop(locator, None)

    def __len__(self) -> int:
        return len(self._blobs)


class LocalContentStore(ContentStore):
    """One file per blob under `root`, named by the blob's SHA-256."""

    def __init__(self, root: str | Path | None = None):
        if root is None:
            env_root = os.environ.get("SEALPOST_STORE_DIR")
            root = env_root if env_root else Path.home() / ".sealpost" / "blobs"
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.root = self.root.resolve()

    def _path_for(self, locator: str) -> Path:
        if not locator.startswith(LOCATOR_SCHEME):
            raise NotFound(locator)
        name = locator[len(LOCATOR_SCHEME):]
        if len(name) != 64 or any(c not in "0123456789abcdef" for c in name):
            raise NotFound(locator)
        return self.root / name

    def put(self, data: bytes) -> str:
        locator = content_locator(data)
        path = self._path_for(locator)
        if not path.exists():
            tmp = path.with_suffix(f".tmp-{threading.get_ident()}")
            tmp.write_bytes(data)
            os.replace(tmp, path)
        return locator

    def get(self, locator: str) -> bytes:
        path = self._path_for(locator)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFound(locator) from None


def fetch_with_retry(
    store: ContentStore,
    locator: str,
    attempts: int = 3,
    delay: float = 0.05,
) -> bytes:
    """
    Bounded retries on NotFound for eventually-consistent stores.
    Re-raises the last NotFound once `attempts` are exhausted.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts):
        try:
            return store.get(locator)
        except NotFound:
            logger.debug("Blob %s not yet available (attempt %d/%d)", locator, attempt, attempts)
            time.sleep(delay * attempt)
    return store.get(locator)
