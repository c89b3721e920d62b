"""
Identity API Routes

DSID registration, key-ownership verification, key rotation and
lifecycle (suspend, reinstate, revoke).
"""

from typing import Any

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from agentos.api.dependencies import (
    IdentityDep,
    PrincipalDep,
    not_found,
    service_errors,
)
from agentos.models.identity import DSIDDocument, RegistrationResult, VerificationChallenge

router = APIRouter()


# ============================================================================
# Request Models
# ============================================================================

class RegisterRequest(BaseModel):
    """Register a DSID. Omit public_key to have a keypair generated."""
    agent_name: str = Field(min_length=1, max_length=120)
    public_key: str | None = Field(default=None, description="Base64 Ed25519 public key")
    metadata: dict[str, Any] = Field(default_factory=dict)


class VerifyRequest(BaseModel):
    signature: str = Field(description="Base64 signature of the challenge nonce")


class RotateRequest(BaseModel):
    new_public_key: str
    proof_signature: str = Field(
        description="Signature of new_public_key by the current key"
    )


class ReasonRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/register", response_model=RegistrationResult, status_code=status.HTTP_201_CREATED)
async def register_identity(
    request: RegisterRequest,
    principal: PrincipalDep,
    identity: IdentityDep,
) -> RegistrationResult:
    """
    Register a new DSID owned by the caller.

    When a keypair is generated the private key is returned once and never
    stored.
    """
    with service_errors():
        return await identity.register(
            owner_id=principal,
            agent_name=request.agent_name,
            public_key_b64=request.public_key,
            metadata=request.metadata,
        )


@router.get("", response_model=list[DSIDDocument])
async def list_my_identities(principal: PrincipalDep, identity: IdentityDep) -> list[DSIDDocument]:
    return await identity.list_by_owner(principal)


@router.get("/{dsid}", response_model=DSIDDocument)
async def resolve_identity(dsid: str, identity: IdentityDep) -> DSIDDocument:
    """Resolve a DSID document. Public."""
    document = await identity.resolve(dsid)
    if document is None:
        raise not_found("Identity")
    return document


@router.post("/{dsid}/challenge", response_model=VerificationChallenge)
async def issue_challenge(
    dsid: str,
    principal: PrincipalDep,
    identity: IdentityDep,
) -> VerificationChallenge:
    with service_errors():
        return await identity.issue_challenge(dsid, actor_id=principal)


@router.post("/{dsid}/verify", response_model=DSIDDocument)
async def verify_identity(
    dsid: str,
    request: VerifyRequest,
    principal: PrincipalDep,
    identity: IdentityDep,
) -> DSIDDocument:
    """Complete a challenge by signing its nonce with the DSID key."""
    with service_errors():
        return await identity.complete_challenge(dsid, request.signature, actor_id=principal)


@router.post("/{dsid}/rotate", response_model=DSIDDocument)
async def rotate_key(
    dsid: str,
    request: RotateRequest,
    principal: PrincipalDep,
    identity: IdentityDep,
) -> DSIDDocument:
    with service_errors():
        return await identity.rotate_key(
            dsid, request.new_public_key, request.proof_signature, actor_id=principal
        )


@router.post("/{dsid}/suspend", response_model=DSIDDocument)
async def suspend_identity(
    dsid: str,
    request: ReasonRequest,
    principal: PrincipalDep,
    identity: IdentityDep,
) -> DSIDDocument:
    with service_errors():
        return await identity.suspend(dsid, request.reason, actor_id=principal)


@router.post("/{dsid}/reinstate", response_model=DSIDDocument)
async def reinstate_identity(
    dsid: str,
    principal: PrincipalDep,
    identity: IdentityDep,
) -> DSIDDocument:
    with service_errors():
        return await identity.reinstate(dsid, actor_id=principal)


@router.post("/{dsid}/revoke", response_model=DSIDDocument)
async def revoke_identity(
    dsid: str,
    request: ReasonRequest,
    principal: PrincipalDep,
    identity: IdentityDep,
) -> DSIDDocument:
    """Permanently revoke a DSID. Revocation cannot be undone."""
    with service_errors():
        return await identity.revoke(dsid, request.reason, actor_id=principal)
