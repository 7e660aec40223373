"""
Relayer assembly from settings.
"""

import logging
from typing import Optional

from edgecharge.config.loader import EdgeChargeSettings

from .audit import AnchorAuditLog
from .batcher import UsageBatcher
from .pool import RecordPool
from .submitter import AnchorSubmitter

logger = logging.getLogger(__name__)


def build_batcher(
    ledger,
    relayer: str,
    settings: EdgeChargeSettings,
    pool: Optional[RecordPool] = None,
    mirror_audit: bool = True,
) -> UsageBatcher:
    """Wire a pool, submitter and audit log into a batcher.

    Args:
        ledger: Ledger accepting submit_usage_anchor calls
        relayer: Authorized relayer address used for submissions
        settings: Relayer and storage settings
        pool: Record pool to drain; a fresh one if omitted
        mirror_audit: Also write audit entries to settings.storage.db_path

    Returns:
        UsageBatcher ready for run_cycle or run_forever
    """
    config = settings.relayer
    submitter = AnchorSubmitter(
        ledger,
        relayer,
        max_attempts=config.max_submit_attempts,
        backoff_seconds=config.retry_backoff_seconds,
    )
    audit_log = AnchorAuditLog(
        size=config.audit_log_size,
        db_path=settings.storage.db_path if mirror_audit else None,
    )
    logger.debug(
        "Relayer %s: interval=%ss attempts=%d audit=%d",
        relayer, config.batch_interval_seconds, config.max_submit_attempts, config.audit_log_size,
    )
    return UsageBatcher(
        pool if pool is not None else RecordPool(),
        submitter,
        audit_log=audit_log,
        interval_seconds=config.batch_interval_seconds,
    )
