"""
Dispute verification.

Re-checks that a usage record is included under an anchored Merkle root.
Uses the batch builder's own fold, so both sides apply identical
combine, sort and duplicate rules.
"""

import logging
from typing import List, Mapping, Sequence

from .codec import RecordLike, leaf_hash, normalize_address, to_hex
from .errors import ValidationError
from .merkle import HashLike, build_proof, verify_proof

logger = logging.getLogger(__name__)


def verify_inclusion(root: HashLike, leaf: HashLike, proof: Sequence[HashLike]) -> bool:
    """True if proof folds leaf onto root. Pure and read-only."""
    return verify_proof(leaf, proof, root)


class DisputeAuditor:
    """Independent auditor that reverifies records against anchors.

    Works against anything exposing get_usage_anchor(anchor_id), normally
    an EdgeChargeLedger.
    """

    def __init__(self, ledger):
        self.ledger = ledger

    def evidence_for(self, records: Sequence[RecordLike], target: RecordLike) -> List[bytes]:
        """Build the inclusion proof for target from the full record set.

        Raises:
            ValueError: If target is not one of records
        """
        hashes = [leaf_hash(r) for r in records]
        target_hash = leaf_hash(target)
        if target_hash not in hashes:
            raise ValueError("record is not part of the supplied set")
        return build_proof(hashes, hashes.index(target_hash))

    def check_record(self, anchor_id: HashLike, record: RecordLike, proof: Sequence[HashLike]) -> bool:
        """Recompute the record's leaf and verify it under the anchor's root.

        A record claiming a different provider than the anchor never
        verifies, whatever the proof says.

        Raises:
            ValidationError: If the anchor does not exist
        """
        anchor = self.ledger.get_usage_anchor(anchor_id)
        if not anchor.exists:
            raise ValidationError("Anchor does not exist")

        leaf = leaf_hash(record)
        if isinstance(record, Mapping):
            provider = record.get("provider")
        else:
            provider = getattr(record, "provider", None)
        if provider is None or normalize_address(provider) != anchor.provider:
            logger.info("Record provider %s does not match anchor provider %s", provider, anchor.provider)
            return False

        included = verify_inclusion(anchor.merkle_root, leaf, proof)
        logger.info(
            "Dispute check for anchor %s: %s",
            to_hex(anchor.anchor_id),
            "included" if included else "not included",
        )
        return included
