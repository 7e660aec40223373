"""
Provider record signing.

Binds a usage record to a provider identity with an ECDSA secp256k1
signature over the record's leaf hash. The identity is an address derived
from the public key, so a verifier needs nothing but the address, the
record and the signature.
"""

import logging
from dataclasses import replace
from typing import List, Union

from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.util import sigdecode_string, sigencode_string

from .codec import ADDRESS_SIZE, RecordLike, hash_bytes, is_address, leaf_hash, normalize_address, to_hex
from .errors import EncodingError
from .records import SignedUsageRecord, UsageRecord

logger = logging.getLogger(__name__)

SIGNATURE_SIZE = 65  # r (32) ‖ s (32) ‖ v (1)
PRIVATE_KEY_SIZE = 32

PrivateKey = Union[str, bytes]


def _signing_key(private_key: PrivateKey) -> SigningKey:
    if isinstance(private_key, str):
        text = private_key[2:] if private_key.startswith(("0x", "0X")) else private_key
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raise ValueError("private key must be hex")
    else:
        raw = private_key
    if len(raw) != PRIVATE_KEY_SIZE:
        raise ValueError(f"private key must be {PRIVATE_KEY_SIZE} bytes")
    return SigningKey.from_string(raw, curve=SECP256k1)


def _address_of(verifying_key: VerifyingKey) -> str:
    # 64-byte raw public point x ‖ y
    return to_hex(hash_bytes(verifying_key.to_string())[-ADDRESS_SIZE:])


def generate_private_key() -> str:
    """Create a fresh secp256k1 private key as 0x-prefixed hex."""
    return to_hex(SigningKey.generate(curve=SECP256k1).to_string())


def public_address(private_key: PrivateKey) -> str:
    """Derive the provider identity (address) for a private key."""
    return _address_of(_signing_key(private_key).get_verifying_key())


def _recover_candidates(signature: bytes, digest: bytes) -> List[VerifyingKey]:
    return VerifyingKey.from_public_key_recovery_with_digest(
        signature,
        digest,
        SECP256k1,
        sigdecode=sigdecode_string,
    )


def sign(record: RecordLike, private_key: PrivateKey) -> str:
    """Sign the leaf hash of a record.

    The nonce k is random, so signing the same record twice gives different
    bytes; both verify.

    Args:
        record: Unsigned record (or any record-like accepted by the codec)
        private_key: 32-byte secp256k1 key, hex or raw bytes

    Returns:
        0x-prefixed hex of r ‖ s ‖ v

    Raises:
        EncodingError: If the record cannot be canonically encoded
        ValueError: If the private key is malformed
    """
    key = _signing_key(private_key)
    digest = leaf_hash(record)
    rs = key.sign_digest(digest, sigencode=sigencode_string)

    own = key.get_verifying_key().to_string()
    for recovery_id, candidate in enumerate(_recover_candidates(rs, digest)):
        if candidate.to_string() == own:
            return to_hex(rs + bytes([recovery_id]))

    # recovery of a signature we just produced always yields our own key
    raise RuntimeError("signature recovery did not yield the signing key")


def verify(record: RecordLike, signature: str, claimed_identity: str) -> bool:
    """Check a signature against a record and the claimed provider address.

    Never raises on untrusted input: malformed signatures, wrong signers and
    tampered fields all return False.
    """
    if not isinstance(signature, str) or not is_address(claimed_identity):
        return False
    text = signature[2:] if signature.startswith(("0x", "0X")) else signature
    try:
        raw = bytes.fromhex(text)
    except ValueError:
        return False
    if len(raw) != SIGNATURE_SIZE:
        return False

    try:
        digest = leaf_hash(record)
    except EncodingError:
        return False

    rs, recovery_id = raw[:64], raw[64]
    try:
        candidates = _recover_candidates(rs, digest)
        if recovery_id >= len(candidates):
            return False
        candidate = candidates[recovery_id]
        if _address_of(candidate) != normalize_address(claimed_identity):
            return False
        return candidate.verify_digest(rs, digest, sigdecode=sigdecode_string)
    except Exception as exc:  # untrusted bytes: any failure is a rejection
        logger.debug("signature rejected: %s", exc)
        return False


def sign_record(record: UsageRecord, private_key: PrivateKey) -> SignedUsageRecord:
    """Sign a record and bundle it with its signature.

    The record's provider is normalized to the lower-case address so the
    signed form round-trips through the codec unchanged.
    """
    record = replace(record, provider=normalize_address(record.provider))
    return SignedUsageRecord(record=record, signature=sign(record, private_key))


def verify_signed_record(signed: SignedUsageRecord) -> bool:
    """Verify a signed record against its own provider field."""
    return verify(signed.record, signed.signature, signed.record.provider)
