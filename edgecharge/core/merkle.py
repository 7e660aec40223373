"""
Merkle aggregation of usage records.

Builds a deterministic root over the leaf hashes of one batch, plus
inclusion proofs for individual records.

Tree rules (shared verbatim with dispute verification):
1. Pairs combine commutatively: hash(min(a, b) ‖ max(a, b))
2. Every layer is sorted before pairing, so the root depends on the
   multiset of leaves and not on arrival order
3. An odd trailing node pairs with itself
4. No leaves gives the all-zero hash; one leaf is its own root
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

from .codec import ZERO_HASH, hash_bytes, hash_from_hex, leaf_hash, normalize_address
from .errors import EncodingError, SignatureError
from .records import SignedUsageRecord
from .signer import verify_signed_record

logger = logging.getLogger(__name__)

HashLike = Union[bytes, str]


def combine(a: bytes, b: bytes) -> bytes:
    """Order-independent pair hash."""
    if a <= b:
        return hash_bytes(a + b)
    return hash_bytes(b + a)


def _as_hashes(values: Sequence[HashLike]) -> List[bytes]:
    return [hash_from_hex(value) for value in values]


def _layers(leaves: List[bytes]) -> List[List[bytes]]:
    layer = sorted(leaves)
    layers = [layer]
    while len(layer) > 1:
        next_layer = []
        for i in range(0, len(layer), 2):
            left = layer[i]
            right = layer[i + 1] if i + 1 < len(layer) else left
            next_layer.append(combine(left, right))
        layer = sorted(next_layer)
        layers.append(layer)
    return layers


def build_root(leaf_hashes: Sequence[HashLike]) -> bytes:
    """Compute the Merkle root of a set of leaf hashes.

    Args:
        leaf_hashes: 32-byte leaves (raw or 0x hex), in any order

    Returns:
        32-byte root; the zero hash for an empty input

    Raises:
        EncodingError: If a leaf is not a 32-byte hash
    """
    leaves = _as_hashes(leaf_hashes)
    if not leaves:
        return ZERO_HASH
    return _layers(leaves)[-1][0]


def build_proof(leaf_hashes: Sequence[HashLike], index: int) -> List[bytes]:
    """Build the inclusion proof for leaf_hashes[index].

    Replays the same sorted layering as build_root and records the sibling
    of the tracked node at every level.

    Raises:
        IndexError: If index is outside leaf_hashes
        EncodingError: If a leaf is not a 32-byte hash
    """
    leaves = _as_hashes(leaf_hashes)
    if index < 0 or index >= len(leaves):
        raise IndexError(f"leaf index {index} out of range for {len(leaves)} leaves")

    node = leaves[index]
    proof = []
    for layer in _layers(leaves)[:-1]:
        # equal hashes are interchangeable, the first occurrence will do
        position = layer.index(node)
        sibling_position = position ^ 1
        sibling = layer[sibling_position] if sibling_position < len(layer) else node
        proof.append(sibling)
        node = combine(node, sibling)
    return proof


def verify_proof(leaf: HashLike, proof: Sequence[HashLike], root: HashLike) -> bool:
    """Fold a proof onto a leaf and compare with the expected root.

    Malformed hashes yield False rather than an exception.
    """
    try:
        node = hash_from_hex(leaf)
        siblings = _as_hashes(proof)
        expected = hash_from_hex(root)
    except EncodingError:
        return False
    for sibling in siblings:
        node = combine(node, sibling)
    return node == expected


@dataclass(frozen=True)
class UsageBatch:
    """One provider's records from a closed window, aggregated for anchoring."""
    provider: str
    records: Tuple[SignedUsageRecord, ...]
    leaf_hashes: Tuple[bytes, ...]
    merkle_root: bytes
    total_usage: int
    window_start: Optional[int]
    window_end: Optional[int]
    excluded: Tuple[SignedUsageRecord, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.records

    def proof_for(self, index: int) -> List[bytes]:
        """Inclusion proof for records[index]."""
        return build_proof(self.leaf_hashes, index)


def build_batch(
    provider: str,
    records: Sequence[SignedUsageRecord],
    verify_signatures: bool = True,
) -> UsageBatch:
    """Aggregate one provider's signed records into a batch.

    Records signed by someone else, claiming another provider, or failing
    to encode are excluded from the batch instead of failing it.

    Args:
        provider: Provider address the batch is built for
        records: Signed records to aggregate
        verify_signatures: Re-check provider signatures before inclusion

    Returns:
        UsageBatch with root, total usage and window bounds
    """
    provider = normalize_address(provider)
    included = []
    hashes = []
    excluded = []

    for signed in records:
        try:
            if normalize_address(signed.provider) != provider:
                raise SignatureError(f"record belongs to {signed.provider}, not {provider}")
            if verify_signatures and not verify_signed_record(signed):
                raise SignatureError(f"invalid signature for nonce {signed.nonce}")
            hashes.append(leaf_hash(signed))
        except (SignatureError, EncodingError) as e:
            logger.warning("Excluding record from batch for %s: %s", provider, e)
            excluded.append(signed)
            continue
        included.append(signed)

    return UsageBatch(
        provider=provider,
        records=tuple(included),
        leaf_hashes=tuple(hashes),
        merkle_root=build_root(hashes),
        total_usage=sum(r.units_consumed for r in included),
        window_start=min((r.window_start for r in included), default=None),
        window_end=max((r.window_end for r in included), default=None),
        excluded=tuple(excluded),
    )
