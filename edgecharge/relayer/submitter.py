"""
Anchor submission with caller-side retry.

Anchor ids are derived from the batch contents only, so resubmitting the
same batch after an ambiguous failure either lands once or comes back as
a duplicate. Retrying transport failures is therefore always safe.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from edgecharge.core.codec import anchor_id as derive_anchor_id, to_hex
from edgecharge.core.errors import ReplayError, StaleStateError, TransportError
from edgecharge.core.merkle import UsageBatch

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (TransportError, StaleStateError, ConnectionError, TimeoutError)


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of submitting one batch."""
    status: str  # "anchored" or "already_anchored"
    anchor_id: bytes
    attempts: int


class AnchorSubmitter:
    """Submits batches to a ledger as an authorized relayer."""

    def __init__(
        self,
        ledger,
        relayer: str,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.ledger = ledger
        self.relayer = relayer
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def submit(self, batch: UsageBatch) -> SubmissionResult:
        """Anchor a batch, retrying transport failures.

        Args:
            batch: Non-empty batch with positive total usage

        Returns:
            SubmissionResult; a duplicate counts as already anchored

        Raises:
            TransportError, ConnectionError, TimeoutError: After max_attempts
            ValidationError, AuthorizationError, PausedError: Immediately, never retried
        """
        expected_id = derive_anchor_id(
            batch.provider, batch.window_start, batch.window_end, batch.merkle_root
        )
        attempt = 0
        while True:
            attempt += 1
            try:
                anchor_id = self.ledger.submit_usage_anchor(
                    self.relayer,
                    batch.provider,
                    batch.window_start,
                    batch.window_end,
                    batch.merkle_root,
                    batch.total_usage,
                )
                return SubmissionResult("anchored", anchor_id, attempt)
            except ReplayError:
                if attempt > 1:
                    logger.info("Anchor %s landed on an earlier attempt", to_hex(expected_id))
                else:
                    logger.info("Anchor %s already anchored, nothing to do", to_hex(expected_id))
                return SubmissionResult("already_anchored", expected_id, attempt)
            except RETRYABLE_ERRORS as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        "Giving up on anchor %s after %d attempts: %s",
                        to_hex(expected_id), attempt, e,
                    )
                    raise
                logger.warning(
                    "Anchor submission attempt %d/%d failed: %s",
                    attempt, self.max_attempts, e,
                )
                self._sleep(self.backoff_seconds * attempt)
