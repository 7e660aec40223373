"""
Usage record data structures.

Defines the metered usage record produced by a provider's metering agent.
"""

import secrets
from dataclasses import dataclass

from .errors import ValidationError


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of usage metered on one edge node for one window.

    The unsigned projection is what gets canonically encoded, hashed and
    signed; the signature itself never takes part in the leaf hash.
    """
    provider: str
    node_id: str
    window_start: int
    window_end: int
    units_consumed: int
    rate_id: str
    nonce: str

    def __post_init__(self):
        """Validate window ordering and non-negative usage."""
        if self.window_start >= self.window_end:
            raise ValidationError("window_start must be before window_end")
        if self.units_consumed < 0:
            raise ValidationError("units_consumed must be >= 0")
        if not self.nonce:
            raise ValidationError("nonce is required")


@dataclass(frozen=True)
class SignedUsageRecord:
    """A usage record plus the provider's signature over its leaf hash."""
    record: UsageRecord
    signature: str

    @property
    def provider(self) -> str:
        return self.record.provider

    @property
    def nonce(self) -> str:
        return self.record.nonce

    @property
    def window_start(self) -> int:
        return self.record.window_start

    @property
    def window_end(self) -> int:
        return self.record.window_end

    @property
    def units_consumed(self) -> int:
        return self.record.units_consumed


def new_nonce() -> str:
    """Generate a random 16-byte nonce as 0x-prefixed hex."""
    return "0x" + secrets.token_hex(16)
