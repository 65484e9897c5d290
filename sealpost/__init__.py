# sealpost/__init__.py
"""
sealpost — end-to-end encrypted messages anchored in an append-only ledger.

The ledger keeps a small, tamper-evident record per message (digest, IV, locator
commitments, nonce, optional signature); the AES-GCM body and RSA-OAEP wrapped key
live in a content-addressable store.
"""

__version__ = "0.1.0-dev"

from sealpost.chain.ledger import MessageLedger
from sealpost.client.directory import KeyDirectory
from sealpost.client.orchestrator import InboxItem, InboxStatus, InboxWatch, MessagingClient, SendResult
from sealpost.crypto.keys import IdentityKeyPair, RecipientKeyPair
from sealpost.storage import LocalVault, SQLiteStorage, create_storage
from sealpost.store import LocalContentStore, MemoryContentStore
from sealpost.verify.verifier import LedgerVerifier

__all__ = [
    "MessageLedger",
    "KeyDirectory",
    "MessagingClient",
    "SendResult",
    "InboxItem",
    "InboxStatus",
    "InboxWatch",
    "IdentityKeyPair",
    "RecipientKeyPair",
    "LocalVault",
    "SQLiteStorage",
    "create_storage",
    "LocalContentStore",
    "MemoryContentStore",
    "LedgerVerifier",
]
