"""
Trust API Routes

Trust profiles, tier capabilities and certification.
"""

from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel

from agentos.api.dependencies import GovernanceDep, TrustDep, not_found, service_errors
from agentos.models.base import TrustTier
from agentos.models.trust import TIER_CAPABILITIES, TrustEvent, TrustProfile

router = APIRouter()


class TrustProfileResponse(BaseModel):
    profile: TrustProfile
    capabilities: dict[str, Any]


@router.get("/tiers")
async def list_tiers() -> list[dict[str, Any]]:
    """Capabilities granted by each tier."""
    return [TIER_CAPABILITIES[tier].to_dict() for tier in TrustTier]


@router.get("/{dsid}", response_model=TrustProfileResponse)
async def get_trust_profile(dsid: str, trust: TrustDep) -> TrustProfileResponse:
    profile = await trust.get_profile(dsid)
    if profile is None:
        raise not_found("Identity")
    return TrustProfileResponse(
        profile=profile,
        capabilities=TIER_CAPABILITIES[profile.tier].to_dict(),
    )


@router.get("/{dsid}/history", response_model=list[TrustEvent])
async def get_trust_history(
    dsid: str,
    trust: TrustDep,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[TrustEvent]:
    return await trust.history(dsid, limit=limit)


@router.post("/{dsid}/certify", response_model=TrustProfile)
async def certify_identity(dsid: str, governor: GovernanceDep, trust: TrustDep) -> TrustProfile:
    """Grant T4. Requires the governance role."""
    with service_errors():
        return await trust.certify(dsid, certified_by=governor)


@router.post("/{dsid}/decertify", response_model=TrustProfile)
async def decertify_identity(dsid: str, governor: GovernanceDep, trust: TrustDep) -> TrustProfile:
    with service_errors():
        return await trust.decertify(dsid, decertified_by=governor)
