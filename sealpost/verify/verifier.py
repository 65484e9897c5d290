from typing import Dict, List, Optional, Set, Tuple
from dataclasses import dataclass

from sealpost.core.types import MessageMeta, Signed
from sealpost.crypto.hashing import message_hash, meta_commitment
from sealpost.crypto.keys import recover_signer
from sealpost.storage import StorageBackend


@dataclass
class VerificationFailure:
    index: int
    message: str
    category: str = "general"  # e.g. "ordering", "nonce", "iv", "rate_limit", "signature", "hash", "storage"


@dataclass
class VerificationResult:
    is_valid: bool
    message: str = ""
    failures: List[VerificationFailure] = None

    def __post_init__(self):
        if self.failures is None:
            self.failures = []

    @property
    def first_failure(self) -> Optional[VerificationFailure]:
        return self.failures[0] if self.failures else None

    def __bool__(self):
        return self.is_valid

    def __str__(self):
        if self.is_valid:
            return "Ledger is valid ✓"
        lines = [f"Verification FAILED ({len(self.failures)} issues):"]
        for f in self.failures:
            lines.append(f"  • [{f.index}] {f.category}: {f.message}")
        return "\n".join(lines)


class LedgerVerifier:
    """
    Offline auditor for exported or persisted ledger records.
    Re-checks the acceptance invariants without trusting whoever produced the records.
    """

    def __init__(self, min_interval: Optional[int] = None):
        """min_interval: also check rate-limit spacing per sender when given."""
        self.min_interval = min_interval

    def _fail(self, result: VerificationResult, index: int, message: str, category: str) -> None:
        result.failures.append(VerificationFailure(index, message, category))
        result.is_valid = False

    def verify(self, records: List[MessageMeta]) -> VerificationResult:
        if not records:
            return VerificationResult(True, "Empty ledger is valid")

        result = VerificationResult(True)
        nonces: Dict[str, int] = {}
        last_sent: Dict[str, int] = {}
        used_ivs: Set[Tuple[str, str, bytes]] = set()

        for i, meta in enumerate(records):
            # 1. ordering
            if i == 0 and meta.id < 1:
                self._fail(result, i, f"First id must be >= 1, got {meta.id}", "ordering")
            if i > 0:
                prev = records[i - 1]
                if meta.id <= prev.id:
                    self._fail(result, i, f"Id {meta.id} does not increase after {prev.id}", "ordering")
                if meta.timestamp < prev.timestamp:
                    self._fail(result, i, f"Timestamp {meta.timestamp} precedes {prev.timestamp}", "ordering")

            # 2. nonce sequence per sender
            expected = nonces.get(meta.sender, 0) + 1
            if meta.nonce != expected:
                self._fail(result, i, f"Nonce gap for {meta.sender}: expected {expected}, got {meta.nonce}", "nonce")
            nonces[meta.sender] = meta.nonce

            # 3. IV uniqueness per (sender, recipient)
            triple = (meta.sender, meta.recipient, meta.iv)
            if triple in used_ivs:
                self._fail(result, i, f"IV {meta.iv.hex()} reused for {meta.sender} -> {meta.recipient}", "iv")
            used_ivs.add(triple)

            # 4. rate-limit spacing
            if self.min_interval is not None and meta.sender in last_sent:
                gap = meta.timestamp - last_sent[meta.sender]
                if gap < self.min_interval:
                    self._fail(result, i, f"{meta.sender} sent {gap}s after previous message", "rate_limit")
            last_sent[meta.sender] = meta.timestamp

            # 5. signature binding
            if isinstance(meta.signature, Signed):
                signer = recover_signer(meta_commitment(meta), meta.signature)
                if signer != meta.sender:
                    self._fail(result, i, f"Invalid signature (recovered {signer})", "signature")

        self._summarize(result, len(records))
        return result

    def _summarize(self, result: VerificationResult, count: int) -> None:
        result.message = (
            f"Valid ledger ({count} messages)" if result.is_valid
            else f"Failed with {len(result.failures)} issues"
        )

    def check_hashes(self, result: VerificationResult, records: List[MessageMeta], stored: Dict[int, str]) -> None:
        """Compare each record against the hash its backend wrote at commit time."""
        for i, meta in enumerate(records):
            expected = stored.get(meta.id)
            if expected is not None and expected != message_hash(meta):
                self._fail(result, i, f"Record {meta.id} no longer matches its stored hash", "hash")

    def verify_from_storage(self, storage: StorageBackend) -> VerificationResult:
        """
        Load records from persistent storage and verify them.
        Returns result with extra info if load fails.
        """
        try:
            records = storage.load_messages()
        except Exception as e:
            return VerificationResult(
                False,
                f"Failed to load ledger from storage: {str(e)}",
                [VerificationFailure(-1, str(e), "storage")]
            )

        result = self.verify(records)
        if records:
            self.check_hashes(result, records, storage.load_message_hashes())
            self._summarize(result, len(records))
        return result
