"""
Data models for storage layer.

Defines the relayer's audit records of anchor submissions.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class AnchorRecord:
    """Relayer-side record of one anchor submission attempt.

    Audit only: the ledger is authoritative for what was anchored.
    """
    submitted_at: datetime
    provider: str
    window_start: int
    window_end: int
    merkle_root: str
    total_usage: int
    leaf_count: int
    status: str  # "anchored", "already_anchored" or "failed"
    anchor_id: Optional[str] = None
    attempts: int = 1
    error: Optional[str] = None
