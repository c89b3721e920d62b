"""
Cryptographic Integrity Primitives

Hashing, Ed25519 signatures and Merkle trees used by the identity layer
and the operational ledger:
- Content hashing (SHA-256) over canonical JSON
- Ed25519 keypairs and signatures, base64 on the wire
- DSID fingerprints (base58 of a truncated public-key hash)
- Merkle roots and inclusion proofs

All hash comparisons are constant-time.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import secrets
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import base58
import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

logger = structlog.get_logger(__name__)

FINGERPRINT_BYTES = 20


class IntegrityError(Exception):
    """Base exception for integrity verification failures."""

    pass


class InvalidKeyError(IntegrityError):
    """Raised when a key cannot be decoded as Ed25519."""

    pass


# ═══════════════════════════════════════════════════════════════════════════
# HASHING
# ═══════════════════════════════════════════════════════════════════════════


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(data: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_json_default)


def sha256_hex(data: str | bytes) -> str:
    """Lowercase hex SHA-256 (64 characters)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hash_payload(data: Any) -> str:
    """SHA-256 of the canonical JSON form of data."""
    return sha256_hex(canonical_json(data))


def hashes_equal(a: str, b: str) -> bool:
    """Constant-time comparison of two hex digests."""
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ═══════════════════════════════════════════════════════════════════════════
# ED25519 SIGNATURES
# ═══════════════════════════════════════════════════════════════════════════


def generate_keypair() -> tuple[str, str]:
    """
    Generate an Ed25519 keypair.

    Returns:
        Tuple of (private_key_b64, public_key_b64), both 32 raw bytes
    """
    private_key = Ed25519PrivateKey.generate()
    return (
        base64.b64encode(private_key.private_bytes_raw()).decode("utf-8"),
        base64.b64encode(private_key.public_key().public_bytes_raw()).decode("utf-8"),
    )


def decode_public_key(public_key_b64: str) -> bytes:
    """
    Decode and validate a base64 Ed25519 public key.

    Raises:
        InvalidKeyError: If the value is not 32 bytes of valid base64
    """
    try:
        raw = base64.b64decode(public_key_b64, validate=True)
        Ed25519PublicKey.from_public_bytes(raw)
    except (binascii.Error, ValueError) as e:
        raise InvalidKeyError("Public key must be a base64-encoded 32-byte Ed25519 key") from e
    return raw


def public_key_from_private(private_key_b64: str) -> str:
    """Derive the base64 public key from a base64 private key."""
    try:
        private_key = Ed25519PrivateKey.from_private_bytes(base64.b64decode(private_key_b64))
    except (binascii.Error, ValueError) as e:
        raise InvalidKeyError("Private key must be a base64-encoded 32-byte Ed25519 key") from e
    return base64.b64encode(private_key.public_key().public_bytes_raw()).decode("utf-8")


def sign_message(message: str, private_key_b64: str) -> str:
    """
    Sign a UTF-8 message with a base64 Ed25519 private key.

    Returns:
        Base64-encoded signature (64 raw bytes)
    """
    try:
        private_key = Ed25519PrivateKey.from_private_bytes(base64.b64decode(private_key_b64))
    except (binascii.Error, ValueError) as e:
        raise InvalidKeyError("Private key must be a base64-encoded 32-byte Ed25519 key") from e
    signature = private_key.sign(message.encode("utf-8"))
    return base64.b64encode(signature).decode("utf-8")


def verify_signature(message: str, signature_b64: str, public_key_b64: str) -> bool:
    """
    Verify an Ed25519 signature over a UTF-8 message.

    Returns:
        True if valid. Malformed keys or signatures are treated as invalid.
    """
    try:
        signature = base64.b64decode(signature_b64, validate=True)
        public_key = Ed25519PublicKey.from_public_bytes(base64.b64decode(public_key_b64))
        public_key.verify(signature, message.encode("utf-8"))
        return True
    except (InvalidSignature, binascii.Error, ValueError) as e:
        logger.debug("signature_verification_failed", error=type(e).__name__)
        return False


def key_fingerprint(public_key_b64: str) -> str:
    """base58 of the first 20 bytes of SHA-256 over the raw public key."""
    raw = decode_public_key(public_key_b64)
    digest = hashlib.sha256(raw).digest()[:FINGERPRINT_BYTES]
    return base58.b58encode(digest).decode("ascii")


# ═══════════════════════════════════════════════════════════════════════════
# MERKLE TREES
# ═══════════════════════════════════════════════════════════════════════════


def _hash_pair(left: str, right: str) -> str:
    return sha256_hex(left + right)


def merkle_root(leaves: list[str]) -> str:
    """
    Merkle root over hex leaf hashes.

    Pairs are hashed as sha256(left + right); an odd node at any level is
    paired with itself. A single leaf is its own root.
    """
    if not leaves:
        raise ValueError("Cannot compute a Merkle root of zero leaves")

    level = list(leaves)
    while len(level) > 1:
        if len(level) % 2 == 1:
            level.append(level[-1])
        level = [_hash_pair(level[i], level[i + 1]) for i in range(0, len(level), 2)]
    return level[0]


def merkle_path(leaves: list[str], index: int) -> list[tuple[str, str]]:
    """
    Sibling path from leaf `index` to the root.

    Returns:
        List of (sibling_hash, side) where side is "left" or "right"
        relative to the running hash.
    """
    if not 0 <= index < len(leaves):
        raise IndexError("Leaf index out of range")

    path: list[tuple[str, str]] = []
    level = list(leaves)
    while len(level) > 1:
        if len(level) % 2 == 1:
            level.append(level[-1])
        if index % 2 == 0:
            path.append((level[index + 1], "right"))
        else:
            path.append((level[index - 1], "left"))
        level = [_hash_pair(level[i], level[i + 1]) for i in range(0, len(level), 2)]
        index //= 2
    return path


def verify_merkle_path(leaf: str, path: list[tuple[str, str]], expected_root: str) -> bool:
    """Recompute the root from a leaf and its path and compare."""
    current = leaf
    for sibling, side in path:
        if side == "left":
            current = _hash_pair(sibling, current)
        elif side == "right":
            current = _hash_pair(current, sibling)
        else:
            return False
    return hashes_equal(current, expected_root)
