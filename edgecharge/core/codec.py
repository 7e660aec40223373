"""
Canonical encoding of usage records.

Every component that hashes a record (signer, batcher, ledger verifier,
dispute auditor) goes through this module, so equal records always produce
byte-identical output no matter where they came from or how their fields
were ordered.
"""

import json
from typing import Any, Dict, Mapping, Union

from Crypto.Hash import keccak

from .errors import EncodingError
from .records import SignedUsageRecord, UsageRecord

HASH_SIZE = 32
ADDRESS_SIZE = 20
ZERO_HASH = bytes(HASH_SIZE)
ZERO_ADDRESS = "0x" + "00" * ADDRESS_SIZE

UINT64_MAX = 2 ** 64 - 1
UINT256_MAX = 2 ** 256 - 1

# (canonical key, attribute name) in the fixed output order
_FIELDS = (
    ("provider", "provider"),
    ("nodeId", "node_id"),
    ("windowStart", "window_start"),
    ("windowEnd", "window_end"),
    ("unitsConsumed", "units_consumed"),
    ("rateId", "rate_id"),
    ("nonce", "nonce"),
)

_INT_LIMITS = {
    "windowStart": UINT64_MAX,
    "windowEnd": UINT64_MAX,
    "unitsConsumed": UINT256_MAX,
}

RecordLike = Union[UsageRecord, SignedUsageRecord, Mapping[str, Any]]


def hash_bytes(data: bytes) -> bytes:
    """Keccak-256, used for leaves, pairs, anchor ids and addresses."""
    return keccak.new(digest_bits=256, data=data).digest()


def to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def hash_from_hex(value: Union[str, bytes]) -> bytes:
    """Parse a 32-byte hash from 0x-prefixed hex (bytes pass through).

    Raises:
        EncodingError: If the value is not exactly 32 bytes of hex
    """
    if isinstance(value, bytes):
        raw = value
    else:
        text = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raise EncodingError(f"Invalid hex hash: {value!r}")
    if len(raw) != HASH_SIZE:
        raise EncodingError(f"Hash must be {HASH_SIZE} bytes, got {len(raw)}")
    return raw


def is_address(value: Any) -> bool:
    """True for a 0x-prefixed 20-byte hex string."""
    if not isinstance(value, str) or len(value) != 2 + 2 * ADDRESS_SIZE:
        return False
    if not value.startswith(("0x", "0X")):
        return False
    try:
        bytes.fromhex(value[2:])
    except ValueError:
        return False
    return True


def normalize_address(value: str) -> str:
    """Lower-case an address so checksum casing never changes a hash.

    Raises:
        EncodingError: If value is not a 20-byte hex address
    """
    if not is_address(value):
        raise EncodingError(f"Invalid address: {value!r}")
    return "0x" + value[2:].lower()


def canonical_fields(record: RecordLike) -> Dict[str, Any]:
    """Project a record onto its semantic fields in canonical order.

    Accepts a UsageRecord, a SignedUsageRecord (signature ignored) or a
    mapping keyed either camelCase or snake_case.

    Raises:
        EncodingError: If a field is missing, mistyped or out of range
    """
    if isinstance(record, SignedUsageRecord):
        record = record.record

    fields: Dict[str, Any] = {}
    for key, attr in _FIELDS:
        if isinstance(record, Mapping):
            if key in record:
                value = record[key]
            elif attr in record:
                value = record[attr]
            else:
                raise EncodingError(f"Missing required field: {key}")
        else:
            value = getattr(record, attr, None)
        if value is None:
            raise EncodingError(f"Missing required field: {key}")

        if key in _INT_LIMITS:
            # bool is an int subclass but never a valid quantity
            if isinstance(value, bool) or not isinstance(value, int):
                raise EncodingError(f"Field {key} must be an integer")
            if value < 0 or value > _INT_LIMITS[key]:
                raise EncodingError(f"Field {key} out of range: {value}")
        elif key == "provider":
            value = normalize_address(value)
        else:
            if not isinstance(value, str) or not value:
                raise EncodingError(f"Field {key} must be a non-empty string")
        fields[key] = value

    return fields


def canonical_bytes(record: RecordLike) -> bytes:
    """Encode a record as compact, fixed-order UTF-8 JSON."""
    fields = canonical_fields(record)
    return json.dumps(fields, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def leaf_hash(record: RecordLike) -> bytes:
    """Merkle leaf for a record: hash of its canonical encoding."""
    return hash_bytes(canonical_bytes(record))


def _uint256(value: int, name: str) -> bytes:
    if isinstance(value, bool) or not isinstance(value, int):
        raise EncodingError(f"{name} must be an integer")
    if value < 0 or value > UINT256_MAX:
        raise EncodingError(f"{name} out of range: {value}")
    return value.to_bytes(32, "big")


def anchor_id(provider: str, window_start: int, window_end: int, merkle_root: bytes) -> bytes:
    """Derive the identity of a usage anchor.

    hash(provider ‖ windowStart ‖ windowEnd ‖ merkleRoot) with the address
    packed as 20 bytes and both timestamps as 32-byte big-endian integers.
    The same logical batch always maps to the same id.

    Args:
        provider: Provider address
        window_start: Inclusive start of the anchored window
        window_end: End of the anchored window
        merkle_root: 32-byte Merkle root

    Returns:
        32-byte anchor id

    Raises:
        EncodingError: If any input is outside its fixed-width domain
    """
    address = bytes.fromhex(normalize_address(provider)[2:])
    root = hash_from_hex(merkle_root)
    packed = (
        address
        + _uint256(window_start, "window_start")
        + _uint256(window_end, "window_end")
        + root
    )
    return hash_bytes(packed)


def record_from_mapping(data: Mapping[str, Any]) -> UsageRecord:
    """Build a UsageRecord from a camelCase or snake_case mapping.

    Raises:
        EncodingError: If a field is missing, mistyped or out of range
        ValidationError: If the window or usage values are inconsistent
    """
    fields = canonical_fields(data)
    return UsageRecord(**{attr: fields[key] for key, attr in _FIELDS})


def signed_record_to_dict(signed: SignedUsageRecord) -> Dict[str, Any]:
    """JSON-ready form of a signed record: canonical fields plus signature."""
    return {**canonical_fields(signed), "signature": signed.signature}


def signed_record_from_dict(data: Mapping[str, Any]) -> SignedUsageRecord:
    """Inverse of signed_record_to_dict.

    Raises:
        EncodingError: If the signature is missing or a field is invalid
    """
    signature = data.get("signature")
    if not isinstance(signature, str) or not signature:
        raise EncodingError("Missing required field: signature")
    return SignedUsageRecord(record=record_from_mapping(data), signature=signature)
