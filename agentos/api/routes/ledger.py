"""
Ledger API Routes

Query the operational chain, verify its integrity, fetch inclusion proofs
and manage memory anchors.
"""

from typing import Any

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from agentos.api.dependencies import (
    GovernanceDep,
    IdentityDep,
    LedgerDep,
    PrincipalDep,
    not_found,
    service_errors,
)
from agentos.models.base import PaginatedResponse
from agentos.models.ledger import Block, InclusionProof, LedgerEntry, LedgerEntryType, MemoryAnchor

router = APIRouter()


class EntriesResponse(PaginatedResponse):
    items: list[LedgerEntry]


class VerifyChainResponse(BaseModel):
    valid: bool
    broken_at: str | None = None


class AnchorRequest(BaseModel):
    agent_dsid: str
    content: str = Field(min_length=1, max_length=100000)
    label: str = Field(default="", max_length=200)


class VerifyAnchorRequest(BaseModel):
    content: str = Field(max_length=100000)


class VerifyAnchorResponse(BaseModel):
    anchor_id: str
    valid: bool


@router.get("/entries", response_model=EntriesResponse)
async def list_entries(
    principal: PrincipalDep,
    ledger: LedgerDep,
    actor: str | None = None,
    entry_type: LedgerEntryType | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> EntriesResponse:
    items, total = await ledger.get_entries(actor=actor, entry_type=entry_type, limit=limit, offset=offset)
    return EntriesResponse(items=items, total=total, limit=limit, offset=offset)


@router.get("/entries/{entry_id}", response_model=LedgerEntry)
async def get_entry(entry_id: str, principal: PrincipalDep, ledger: LedgerDep) -> LedgerEntry:
    entry = await ledger.get_entry(entry_id)
    if entry is None:
        raise not_found("Entry")
    return entry


@router.get("/entries/{entry_id}/proof", response_model=InclusionProof)
async def get_inclusion_proof(entry_id: str, principal: PrincipalDep, ledger: LedgerDep) -> InclusionProof:
    """Merkle proof that a sealed entry belongs to its block."""
    with service_errors():
        return await ledger.get_inclusion_proof(entry_id)


@router.get("/blocks", response_model=list[Block])
async def list_blocks(
    principal: PrincipalDep,
    ledger: LedgerDep,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[Block]:
    return await ledger.list_blocks(limit=limit, offset=offset)


@router.post("/blocks/seal", response_model=Block | None)
async def seal_block(governor: GovernanceDep, ledger: LedgerDep) -> Block | None:
    """Seal pending entries now. Returns null when nothing is pending."""
    return await ledger.seal_block()


@router.get("/blocks/{index}", response_model=Block)
async def get_block(index: int, principal: PrincipalDep, ledger: LedgerDep) -> Block:
    block = await ledger.get_block(index)
    if block is None:
        raise not_found("Block")
    return block


@router.get("/verify", response_model=VerifyChainResponse)
async def verify_chain(ledger: LedgerDep) -> VerifyChainResponse:
    valid, broken_at = await ledger.verify_chain()
    return VerifyChainResponse(valid=valid, broken_at=broken_at)


@router.get("/stats")
async def ledger_stats(ledger: LedgerDep) -> dict[str, Any]:
    return ledger.stats()


@router.post("/anchors", response_model=MemoryAnchor, status_code=status.HTTP_201_CREATED)
async def create_anchor(
    request: AnchorRequest,
    principal: PrincipalDep,
    ledger: LedgerDep,
    identity: IdentityDep,
) -> MemoryAnchor:
    """Anchor the hash of agent memory. Only the DSID's owner may anchor for it."""
    document = await identity.resolve(request.agent_dsid)
    if document is None:
        raise not_found("Identity")
    if document.owner_id != principal:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not the owner of this identity")
    return await ledger.anchor_memory(request.agent_dsid, request.content, label=request.label)


@router.get("/anchors/{anchor_id}", response_model=MemoryAnchor)
async def get_anchor(anchor_id: str, ledger: LedgerDep) -> MemoryAnchor:
    anchor = await ledger.get_anchor(anchor_id)
    if anchor is None:
        raise not_found("Memory anchor")
    return anchor


@router.post("/anchors/{anchor_id}/verify", response_model=VerifyAnchorResponse)
async def verify_anchor(anchor_id: str, request: VerifyAnchorRequest, ledger: LedgerDep) -> VerifyAnchorResponse:
    with service_errors():
        valid = await ledger.verify_memory(anchor_id, request.content)
    return VerifyAnchorResponse(anchor_id=anchor_id, valid=valid)
