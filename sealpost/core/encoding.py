import base64


def b64_encode(data: bytes) -> str:
    """Standard base64 with padding, as written into stored envelopes."""
    return base64.b64encode(data).decode("ascii")


def b64_decode(s: str) -> bytes:
    return base64.b64decode(s, validate=True)


def to_hex(data: bytes) -> str:
    """0x-prefixed lowercase hex."""
    return "0x" + data.hex()


def from_hex(s: str) -> bytes:
    h = s[2:] if s.startswith(("0x", "0X")) else s
    if len(h) % 2:
        raise ValueError(f"Odd-length hex string: {s!r}")
    return bytes.fromhex(h)
