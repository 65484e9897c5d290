"""
Error taxonomy.

Every failure carries a ``category``:
    input           - malformed call, rejected before any state mutation
    contention      - stale nonce / time / IV; re-derive fresh values and resubmit
    authentication  - signature does not bind the declared sender
    availability    - blob or correlation data missing; may succeed later
    cryptographic   - unwrap / digest / AEAD failures
"""


class SealpostError(Exception):
    """Base for all sealpost errors."""
    category = "general"


# ── Ledger rejections ───────────────────────────────────────────────

class LedgerError(SealpostError):
    """A submission rejected by the ledger. Never retried by the ledger itself."""
    kind = "ledger-error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)


class InvalidInput(LedgerError):
    kind = "invalid-input"
    category = "input"


class RateLimited(LedgerError):
    kind = "rate-limited"
    category = "contention"

    def __init__(self, sender: str, retry_after: int):
        self.sender = sender
        self.retry_after = retry_after
        super().__init__(f"rate-limited: {sender} may send again in {retry_after}s")


class DuplicateIV(LedgerError):
    kind = "duplicate-iv"
    category = "contention"


class BadNonce(LedgerError):
    kind = "bad-nonce"
    category = "contention"

    def __init__(self, expected: int, got: int):
        self.expected = expected
        self.got = got
        super().__init__(f"bad nonce: expected {expected}, got {got}")


class BadSignature(LedgerError):
    kind = "bad-signature"
    category = "authentication"


# ── Envelope codec ──────────────────────────────────────────────────

class EnvelopeError(SealpostError):
    category = "cryptographic"


class NoKeyMaterial(EnvelopeError):
    """The message was sent without a key envelope."""


class UnwrapFailed(EnvelopeError):
    """RSA-OAEP unwrap failed (wrong private key or corrupted wrapped key)."""


class IntegrityMismatch(EnvelopeError):
    """Ciphertext digest (or IV) disagrees with the ledger record."""


class AuthenticationFailed(EnvelopeError):
    """AES-GCM tag check failed."""


# ── Content store / side channel ────────────────────────────────────

class StoreError(SealpostError):
    category = "availability"


class NotFound(StoreError):
    def __init__(self, locator: str):
        self.locator = locator
        super().__init__(f"Not found in content store: {locator}")


class LocatorMismatch(SealpostError):
    """A locator does not hash to the commitment anchored on the ledger."""
    category = "availability"
