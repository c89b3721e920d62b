"""
Marketplace API Routes

Endpoints for the agent marketplace.
"""

from decimal import Decimal

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from agentos.api.dependencies import (
    MarketplaceDep,
    PrincipalDep,
    not_found,
    service_errors,
)
from agentos.models.marketplace import (
    Currency,
    License,
    Listing,
    MarketplaceStats,
    PricingModel,
    Purchase,
    Rating,
    RevenueDistribution,
    SearchResult,
)

router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class CreateListingRequest(BaseModel):
    """Request to create a listing."""
    agent_id: str
    title: str = Field(min_length=1, max_length=200)
    pricing_model: PricingModel = PricingModel.FREE
    price: Decimal = Field(default=Decimal("0"), ge=0)
    currency: Currency | None = None
    description: str = Field(default="", max_length=5000)
    category: str | None = Field(default=None, max_length=50)
    tags: list[str] = Field(default_factory=list, max_length=20)
    subscription_period_days: int | None = Field(default=None, ge=1, le=365)


class UpdateListingRequest(BaseModel):
    """Request to update a listing."""
    title: str | None = Field(default=None, min_length=1, max_length=200)
    price: Decimal | None = Field(default=None, ge=0)
    description: str | None = Field(default=None, max_length=5000)
    category: str | None = Field(default=None, max_length=50)
    tags: list[str] | None = Field(default=None, max_length=20)


class PurchaseRequest(BaseModel):
    listing_id: str
    units: int = Field(default=1, ge=1, le=10000)


class PurchaseResponse(BaseModel):
    purchase: Purchase
    license: License


class RateRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(default=None, max_length=1000)


# ============================================================================
# Search & Listings
# ============================================================================

@router.get("/search", response_model=SearchResult)
async def search_listings(
    marketplace: MarketplaceDep,
    q: str | None = Query(default=None, max_length=200),
    category: str | None = None,
    pricing_model: PricingModel | None = None,
    max_price: Decimal | None = Query(default=None, ge=0),
    min_rating: float | None = Query(default=None, ge=0, le=5),
    tags: list[str] | None = Query(default=None),
    sort_by: str = "relevance",
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> SearchResult:
    """Search active listings. Public."""
    with service_errors():
        return await marketplace.search(
            query=q,
            category=category,
            pricing_model=pricing_model,
            max_price=max_price,
            min_rating=min_rating,
            tags=tags,
            sort_by=sort_by,
            limit=limit,
            offset=offset,
        )


@router.post("/listings", response_model=Listing, status_code=status.HTTP_201_CREATED)
async def create_listing(
    request: CreateListingRequest,
    principal: PrincipalDep,
    marketplace: MarketplaceDep,
) -> Listing:
    """Create a draft listing."""
    with service_errors():
        return await marketplace.create_listing(seller_id=principal, **request.model_dump())


@router.post("/publish", response_model=Listing, status_code=status.HTTP_201_CREATED)
async def publish_agent(
    request: CreateListingRequest,
    principal: PrincipalDep,
    marketplace: MarketplaceDep,
) -> Listing:
    """Create and publish a listing in one step."""
    with service_errors():
        return await marketplace.publish(seller_id=principal, **request.model_dump())


@router.post("/listings/{listing_id}/publish", response_model=Listing)
async def publish_listing(
    listing_id: str,
    principal: PrincipalDep,
    marketplace: MarketplaceDep,
) -> Listing:
    with service_errors():
        return await marketplace.publish_listing(listing_id, principal)


@router.get("/listings/{listing_id}", response_model=Listing)
async def get_listing(listing_id: str, marketplace: MarketplaceDep) -> Listing:
    listing = await marketplace.get_listing(listing_id, record_view=True)
    if listing is None:
        raise not_found("Listing")
    return listing


@router.patch("/listings/{listing_id}", response_model=Listing)
async def update_listing(
    listing_id: str,
    request: UpdateListingRequest,
    principal: PrincipalDep,
    marketplace: MarketplaceDep,
) -> Listing:
    updates = request.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    with service_errors():
        return await marketplace.update_listing(listing_id, principal, **updates)


@router.delete("/listings/{listing_id}", response_model=Listing)
async def delist_listing(
    listing_id: str,
    principal: PrincipalDep,
    marketplace: MarketplaceDep,
) -> Listing:
    with service_errors():
        return await marketplace.delist_listing(listing_id, principal)


@router.post("/listings/{listing_id}/rate", response_model=Rating)
async def rate_listing(
    listing_id: str,
    request: RateRequest,
    principal: PrincipalDep,
    marketplace: MarketplaceDep,
) -> Rating:
    with service_errors():
        return await marketplace.rate_listing(
            listing_id, principal, request.rating, comment=request.comment
        )


# ============================================================================
# Purchases
# ============================================================================

@router.post("/purchase", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED)
async def purchase_listing(
    request: PurchaseRequest,
    principal: PrincipalDep,
    marketplace: MarketplaceDep,
) -> PurchaseResponse:
    with service_errors():
        purchase, license_ = await marketplace.purchase(request.listing_id, principal, units=request.units)
    return PurchaseResponse(purchase=purchase, license=license_)


@router.post("/purchases/{purchase_id}/refund", response_model=Purchase)
async def refund_purchase(
    purchase_id: str,
    principal: PrincipalDep,
    marketplace: MarketplaceDep,
) -> Purchase:
    with service_errors():
        return await marketplace.refund(purchase_id, principal)


@router.get("/purchases", response_model=list[Purchase])
async def my_purchases(
    principal: PrincipalDep,
    marketplace: MarketplaceDep,
    limit: int = Query(default=50, ge=1, le=200),
) -> list[Purchase]:
    return await marketplace.get_purchases(principal, limit=limit)


@router.get("/sales", response_model=list[Purchase])
async def my_sales(
    principal: PrincipalDep,
    marketplace: MarketplaceDep,
    limit: int = Query(default=50, ge=1, le=200),
) -> list[Purchase]:
    return await marketplace.get_sales(principal, limit=limit)


@router.get("/revenue-split", response_model=RevenueDistribution)
async def revenue_split(
    marketplace: MarketplaceDep,
    amount: Decimal = Query(ge=0),
) -> RevenueDistribution:
    """How a sale of the given amount would be distributed."""
    return marketplace.calculate_revenue_distribution(amount)


@router.get("/stats", response_model=MarketplaceStats)
async def marketplace_stats(marketplace: MarketplaceDep) -> MarketplaceStats:
    return await marketplace.get_stats()
