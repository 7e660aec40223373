"""
Pending usage record pool.

Many providers submit concurrently; the batcher drains from a single
thread. The pool is in-memory only: records not yet anchored are lost on
a crash.
"""

import logging
import threading
from typing import List, Set, Tuple

from edgecharge.core.codec import normalize_address
from edgecharge.core.errors import ReplayError, SignatureError
from edgecharge.core.records import SignedUsageRecord
from edgecharge.core.signer import verify_signed_record

logger = logging.getLogger(__name__)


class RecordPool:
    """Unordered multiset of signed records awaiting anchoring.

    Used (provider, nonce) pairs stay in the replay guard for the life of
    the pool, also after their records are drained, so the guard grows by
    one entry per accepted record. Restart the relayer process to reset it
    once the anchored windows are settled.
    """

    def __init__(self, verify_signatures: bool = True):
        self.verify_signatures = verify_signatures
        self._lock = threading.Lock()
        self._pending: List[SignedUsageRecord] = []
        self._seen_nonces: Set[Tuple[str, str]] = set()

    def add(self, signed: SignedUsageRecord) -> None:
        """Accept one signed record.

        Raises:
            SignatureError: If the provider signature does not verify
            ReplayError: If the provider already used this nonce
        """
        if self.verify_signatures and not verify_signed_record(signed):
            logger.warning("Rejected record with invalid signature from %s", signed.provider)
            raise SignatureError(f"Invalid signature for record {signed.nonce} from {signed.provider}")

        key = (normalize_address(signed.provider), signed.nonce)
        with self._lock:
            if key in self._seen_nonces:
                logger.info("Replayed nonce %s from %s ignored", signed.nonce, key[0])
                raise ReplayError(f"Nonce already used: {signed.nonce}", key=signed.nonce)
            self._seen_nonces.add(key)
            self._pending.append(signed)

    def drain(self, now: int) -> List[SignedUsageRecord]:
        """Remove and return every record whose window has closed by now.

        Records still open, or added after the drain, wait for a later cycle.
        """
        with self._lock:
            closed = [r for r in self._pending if r.window_end <= now]
            self._pending = [r for r in self._pending if r.window_end > now]
        return closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
