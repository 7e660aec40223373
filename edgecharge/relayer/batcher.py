"""
Periodic usage batcher.

Each cycle drains closed records from the pool, builds one Merkle batch per
provider and anchors it. Runs single-threaded on a fixed interval.
"""

import logging
import threading
import time
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional

from edgecharge.core.codec import normalize_address, to_hex
from edgecharge.core.errors import EdgeChargeError
from edgecharge.core.merkle import UsageBatch, build_batch
from edgecharge.storage.models import AnchorRecord

from .audit import AnchorAuditLog
from .pool import RecordPool
from .submitter import AnchorSubmitter

logger = logging.getLogger(__name__)


class UsageBatcher:
    """Turns pooled records into ledger anchors."""

    def __init__(
        self,
        pool: RecordPool,
        submitter: AnchorSubmitter,
        audit_log: Optional[AnchorAuditLog] = None,
        interval_seconds: float = 60,
        verify_signatures: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.pool = pool
        self.submitter = submitter
        self.audit_log = audit_log if audit_log is not None else AnchorAuditLog()
        self.interval_seconds = interval_seconds
        self.verify_signatures = verify_signatures
        self._clock = clock
        # anchored batches by anchor id hex, kept for dispute evidence
        self.batches: Dict[str, UsageBatch] = {}

    def run_cycle(self, now: Optional[int] = None) -> List[AnchorRecord]:
        """Drain, batch and anchor everything closed by now.

        A batch that fails is dropped for this cycle and recorded as failed;
        the other providers' batches still go through.
        """
        now = int(self._clock()) if now is None else now
        records = self.pool.drain(now)
        if not records:
            return []

        by_provider = defaultdict(list)
        for record in records:
            by_provider[normalize_address(record.provider)].append(record)

        entries = []
        for provider in sorted(by_provider):
            batch = build_batch(provider, by_provider[provider], self.verify_signatures)
            if batch.is_empty or batch.total_usage == 0:
                logger.info("Skipping batch for %s: no billable usage", provider)
                continue
            entries.append(self._submit(batch))
        return entries

    def _submit(self, batch: UsageBatch) -> AnchorRecord:
        fields = dict(
            submitted_at=datetime.now(),
            provider=batch.provider,
            window_start=batch.window_start,
            window_end=batch.window_end,
            merkle_root=to_hex(batch.merkle_root),
            total_usage=batch.total_usage,
            leaf_count=len(batch.records),
        )
        try:
            result = self.submitter.submit(batch)
        except (EdgeChargeError, ConnectionError, TimeoutError) as e:
            logger.error("Batch for %s dropped this cycle: %s", batch.provider, e)
            entry = AnchorRecord(status="failed", error=str(e), **fields)
        else:
            anchor_hex = to_hex(result.anchor_id)
            self.batches[anchor_hex] = batch
            entry = AnchorRecord(
                status=result.status,
                anchor_id=anchor_hex,
                attempts=result.attempts,
                **fields,
            )
            logger.info(
                "Anchored %d records for %s: total=%d root=%s",
                len(batch.records), batch.provider, batch.total_usage, fields["merkle_root"],
            )
        self.audit_log.record(entry)
        return entry

    def run_forever(self, stop: threading.Event) -> None:
        """Run cycles every interval_seconds until stop is set."""
        logger.info("Batcher started, interval=%ss", self.interval_seconds)
        while not stop.is_set():
            self.run_cycle()
            stop.wait(self.interval_seconds)
        logger.info("Batcher stopped")
