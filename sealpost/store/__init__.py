# sealpost/store/__init__.py
"""
Content-addressable blob stores holding encrypted envelopes and published public keys.
"""

from .content import (
    ContentStore,
    LocalContentStore,
    MemoryContentStore,
    content_locator,
    fetch_with_retry,
)

__all__ = [
    "ContentStore",
    "LocalContentStore",
    "MemoryContentStore",
    "content_locator",
    "fetch_with_retry",
]
