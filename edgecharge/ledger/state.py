"""
Ledger entities, events and typed requests.

State values are immutable; transitions build new ones instead of
mutating in place.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Union

from edgecharge.core.codec import UINT64_MAX, ZERO_ADDRESS, ZERO_HASH, hash_from_hex, normalize_address, to_hex
from edgecharge.core.errors import EncodingError, ValidationError

HashLike = Union[bytes, str]


@dataclass(frozen=True)
class UsageAnchor:
    """On-ledger assertion of a provider's total usage over a window."""
    anchor_id: bytes
    provider: str
    window_start: int
    window_end: int
    merkle_root: bytes
    total_usage: int
    disputed: bool = False
    exists: bool = True

    @classmethod
    def missing(cls, anchor_id: bytes) -> "UsageAnchor":
        """Zero-valued placeholder returned for unknown ids."""
        return cls(
            anchor_id=anchor_id,
            provider=ZERO_ADDRESS,
            window_start=0,
            window_end=0,
            merkle_root=ZERO_HASH,
            total_usage=0,
            disputed=False,
            exists=False,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "anchorId": to_hex(self.anchor_id),
            "provider": self.provider,
            "windowStart": self.window_start,
            "windowEnd": self.window_end,
            "merkleRoot": to_hex(self.merkle_root),
            "totalUsage": self.total_usage,
            "disputed": self.disputed,
            "exists": self.exists,
        }


@dataclass(frozen=True)
class Invoice:
    """Invoice anchored after off-ledger cost computation."""
    invoice_id: int
    enterprise: str
    provider: str
    amount: int
    invoice_hash: bytes
    paid: bool = False
    exists: bool = True

    @classmethod
    def missing(cls, invoice_id: int) -> "Invoice":
        return cls(
            invoice_id=invoice_id,
            enterprise=ZERO_ADDRESS,
            provider=ZERO_ADDRESS,
            amount=0,
            invoice_hash=ZERO_HASH,
            paid=False,
            exists=False,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoiceId": self.invoice_id,
            "enterprise": self.enterprise,
            "provider": self.provider,
            "amount": self.amount,
            "invoiceHash": to_hex(self.invoice_hash),
            "paid": self.paid,
            "exists": self.exists,
        }


@dataclass(frozen=True)
class LedgerEvent:
    """Event emitted by a ledger transition. Data values are JSON-friendly."""
    name: str
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerState:
    """Complete ledger state.

    Mappings are keyed by lower-case addresses (escrow, balances), anchor
    id bytes (anchors) and invoice id (invoices). Never mutate them in place.
    revision counts committed mutations; stores refuse a commit whose base
    revision is no longer current.
    """
    owner: str
    paused: bool = False
    relayers: FrozenSet[str] = frozenset()
    anchors: Mapping[bytes, UsageAnchor] = field(default_factory=dict)
    invoices: Mapping[int, Invoice] = field(default_factory=dict)
    next_invoice_id: int = 1
    escrow: Mapping[str, int] = field(default_factory=dict)
    balances: Mapping[str, int] = field(default_factory=dict)
    revision: int = 0

    @classmethod
    def genesis(cls, owner: str) -> "LedgerState":
        """Fresh ledger owned by owner."""
        return cls(owner=parse_address(owner, "owner"))


def parse_address(value: str, label: str) -> str:
    try:
        address = normalize_address(value)
    except EncodingError:
        raise ValidationError(f"Invalid {label}")
    if address == ZERO_ADDRESS:
        raise ValidationError(f"Invalid {label}")
    return address


def parse_hash(value: HashLike, label: str) -> bytes:
    try:
        return hash_from_hex(value)
    except EncodingError:
        raise ValidationError(f"Invalid {label}")


def is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class SubmitAnchorRequest:
    """Validated input for submit_usage_anchor."""
    provider: str
    window_start: int
    window_end: int
    merkle_root: bytes
    total_usage: int

    def __post_init__(self):
        object.__setattr__(self, "provider", parse_address(self.provider, "provider"))
        object.__setattr__(self, "merkle_root", parse_hash(self.merkle_root, "merkle root"))
        if not is_int(self.window_start) or not is_int(self.window_end):
            raise ValidationError("Invalid time window")
        if self.window_start < 0 or self.window_start >= self.window_end or self.window_end > UINT64_MAX:
            raise ValidationError("Invalid time window")
        if not is_int(self.total_usage) or self.total_usage <= 0:
            raise ValidationError("Invalid usage amount")


@dataclass(frozen=True)
class CreateInvoiceRequest:
    """Validated input for create_invoice."""
    enterprise: str
    provider: str
    amount: int
    invoice_hash: bytes

    def __post_init__(self):
        object.__setattr__(self, "enterprise", parse_address(self.enterprise, "enterprise"))
        object.__setattr__(self, "provider", parse_address(self.provider, "provider"))
        object.__setattr__(self, "invoice_hash", parse_hash(self.invoice_hash, "invoice hash"))
        if self.invoice_hash == ZERO_HASH:
            raise ValidationError("Invalid invoice hash")
        if not is_int(self.amount) or self.amount <= 0:
            raise ValidationError("Invalid amount")


@dataclass(frozen=True)
class OpenDisputeRequest:
    """Validated input for open_dispute."""
    anchor_id: bytes
    reason: str

    def __post_init__(self):
        object.__setattr__(self, "anchor_id", parse_hash(self.anchor_id, "anchor id"))
        if not isinstance(self.reason, str) or not self.reason.strip():
            raise ValidationError("Dispute reason required")
