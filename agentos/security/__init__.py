"""
AgentOS Security

Token handling and cryptographic integrity primitives.
"""

from agentos.security.integrity import (
    IntegrityError,
    InvalidKeyError,
    canonical_json,
    generate_keypair,
    hash_payload,
    hashes_equal,
    key_fingerprint,
    merkle_path,
    merkle_root,
    sha256_hex,
    sign_message,
    verify_merkle_path,
    verify_signature,
)
from agentos.security.tokens import (
    Token,
    TokenError,
    TokenExpiredError,
    TokenInvalidError,
    TokenPayload,
    create_access_token,
    decode_token,
    issue_token,
)

__all__ = [
    "IntegrityError",
    "InvalidKeyError",
    "canonical_json",
    "sha256_hex",
    "hash_payload",
    "hashes_equal",
    "generate_keypair",
    "sign_message",
    "verify_signature",
    "key_fingerprint",
    "merkle_root",
    "merkle_path",
    "verify_merkle_path",
    "Token",
    "TokenPayload",
    "TokenError",
    "TokenExpiredError",
    "TokenInvalidError",
    "create_access_token",
    "issue_token",
    "decode_token",
]
