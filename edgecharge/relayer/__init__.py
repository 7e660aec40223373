"""
Relayer pipeline.

Collects signed usage records, batches closed windows per provider and
anchors each batch on the ledger.
"""

from .audit import AnchorAuditLog
from .batcher import UsageBatcher
from .factory import build_batcher
from .pool import RecordPool
from .submitter import AnchorSubmitter, SubmissionResult

__all__ = [
    "AnchorAuditLog",
    "AnchorSubmitter",
    "RecordPool",
    "SubmissionResult",
    "UsageBatcher",
    "build_batcher",
]
