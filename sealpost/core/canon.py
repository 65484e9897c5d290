import json
from typing import Any

try:
    import jcs
except ImportError:
    raise ImportError("Please install jcs: pip install jcs")


def canonical_json(obj: Any) -> bytes:
    """
    Produce deterministic UTF-8 bytes according to RFC 8785 (JSON Canonicalization Scheme).
    Every blob written to the content store and every exported ledger line goes through here,
    so identical envelopes always map to identical bytes (and identical locators).
    """
    return jcs.canonicalize(obj)


def parse_json(data: bytes) -> Any:
    """Parse a stored JSON blob; raises ValueError on malformed input."""
    return json.loads(data.decode("utf-8"))
