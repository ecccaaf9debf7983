import hashlib
from uuid import uuid4


class IdempotencyKey:
    @staticmethod
    def compute_hash(*parts: str) -> str:
        """Deterministic SHA-256 over the ':'-joined parts."""
        raw = ":".join(str(part) for part in parts)
        return hashlib.sha256(raw.encode()).hexdigest()

    @staticmethod
    def bucket(*parts: str, buckets: int = 100) -> int:
        """
        Maps the parts onto a stable bucket in [0, buckets).
        Used for split-step variant assignment: the same lead, automation
        and step always land in the same bucket, on any worker.
        """
        return int(IdempotencyKey.compute_hash(*parts)[:8], 16) % buckets


def new_claim_token() -> str:
    return uuid4().hex
