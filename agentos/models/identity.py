"""
Identity Models

Data structures for DSIDs (decentralized agent identities), key rotation
and proof-of-key verification challenges.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from agentos.models.base import AgentOSModel, generate_id, utc_now


class IdentityStatus(str, Enum):
    """Lifecycle of a DSID."""
    ACTIVE = "active"
    SUSPENDED = "suspended"   # Temporarily blocked, can be reinstated
    REVOKED = "revoked"       # Permanent


class KeyRotation(AgentOSModel):
    """A replaced signing key."""

    previous_public_key: str
    new_public_key: str
    rotated_at: datetime = Field(default_factory=utc_now)
    chain_tx: str | None = None


class DSIDDocument(AgentOSModel):
    """
    The resolvable document behind a DSID.

    The DSID string is derived from the first registered public key and
    never changes, even after key rotation.
    """

    dsid: str = Field(description="dsid:<network>:<base58 fingerprint>")
    owner_id: str = Field(description="Principal that controls this identity")
    agent_name: str = Field(min_length=1, max_length=120)
    public_key: str = Field(description="Current Ed25519 public key (base64)")

    status: IdentityStatus = Field(default=IdentityStatus.ACTIVE)
    status_reason: str | None = None

    verified: bool = Field(default=False)
    verified_at: datetime | None = None

    key_history: list[KeyRotation] = Field(default_factory=list)
    chain_tx: str | None = Field(
        default=None,
        description="Identity chain transaction of the registration record",
    )

    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status == IdentityStatus.ACTIVE

    @property
    def is_revoked(self) -> bool:
        return self.status == IdentityStatus.REVOKED


class VerificationChallenge(AgentOSModel):
    """A single-use nonce the identity holder must sign."""

    id: str = Field(default_factory=generate_id)
    dsid: str
    nonce: str
    issued_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at


class IdentityRecord(AgentOSModel):
    """A record published to the external identity chain."""

    action: str = Field(description="register, rotate, revoke, suspend, reinstate or anchor")
    dsid: str
    public_key: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class RegistrationResult(AgentOSModel):
    """Result of registering a DSID."""

    document: DSIDDocument
    private_key: str | None = Field(
        default=None,
        description="Generated private key (base64), returned once and never stored",
    )
