"""
Marketplace Models

Data structures for the agent marketplace: listings, purchases, licenses
and revenue distribution.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import Field

from agentos.models.base import AgentOSModel, generate_id, utc_now


class PricingModel(str, Enum):
    """How an agent is sold."""
    FREE = "free"
    ONE_TIME = "one_time"          # Perpetual access
    SUBSCRIPTION = "subscription"  # Access for a fixed period
    USAGE = "usage"                # Pay per session


class ListingStatus(str, Enum):
    """Status of a marketplace listing."""
    DRAFT = "draft"
    ACTIVE = "active"
    DELISTED = "delisted"


class Currency(str, Enum):
    """Supported currencies."""
    AOS = "AOS"     # Platform token
    USD = "USD"
    USDC = "USDC"


class PurchaseStatus(str, Enum):
    """Status of a purchase."""
    COMPLETED = "completed"
    REFUNDED = "refunded"


class Listing(AgentOSModel):
    """
    An agent listed in the marketplace.
    """

    id: str = Field(default_factory=generate_id)
    agent_id: str = Field(description="ID of the agent being sold")
    seller_id: str = Field(description="Principal ID of the seller")
    seller_dsid: str = Field(description="DSID of the listed agent")

    # Pricing
    pricing_model: PricingModel = Field(default=PricingModel.FREE)
    price: Decimal = Field(default=Decimal("0"), ge=0, description="Price per purchase or per use")
    currency: Currency = Field(default=Currency.AOS)
    subscription_period_days: int | None = Field(default=None, ge=1, le=365)

    # Status
    status: ListingStatus = Field(default=ListingStatus.DRAFT)

    # Metadata
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    category: str | None = Field(default=None, max_length=50)
    tags: list[str] = Field(default_factory=list, max_length=20)

    # Stats
    view_count: int = Field(default=0)
    purchase_count: int = Field(default=0)
    revenue_total: Decimal = Field(default=Decimal("0"))
    rating_count: int = Field(default=0)
    rating_avg: float = Field(default=0.0)

    # Timestamps
    created_at: datetime = Field(default_factory=utc_now)
    published_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_free(self) -> bool:
        return self.pricing_model == PricingModel.FREE


class License(AgentOSModel):
    """
    A license granting the holder access to run an agent.
    """

    id: str = Field(default_factory=generate_id)
    purchase_id: str
    listing_id: str
    agent_id: str
    holder_id: str
    grantor_id: str

    pricing_model: PricingModel
    granted_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime | None = None
    revoked_at: datetime | None = None

    # Usage tracking
    uses_total: int | None = Field(default=None, description="Purchased uses, usage licenses only")
    uses_consumed: int = Field(default=0)
    last_used_at: datetime | None = None

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or utc_now()
        if self.revoked_at is not None:
            return False
        if self.expires_at is not None and now >= self.expires_at:
            return False
        if self.uses_total is not None and self.uses_consumed >= self.uses_total:
            return False
        return True

    @property
    def uses_remaining(self) -> int | None:
        if self.uses_total is None:
            return None
        return max(0, self.uses_total - self.uses_consumed)


class Purchase(AgentOSModel):
    """
    Record of a marketplace purchase.
    """

    id: str = Field(default_factory=generate_id)
    listing_id: str
    agent_id: str
    buyer_id: str
    seller_id: str

    # Transaction
    pricing_model: PricingModel
    units: int = Field(default=1, ge=1)
    amount: Decimal
    currency: Currency
    license_id: str

    status: PurchaseStatus = Field(default=PurchaseStatus.COMPLETED)

    # Revenue distribution
    seller_revenue: Decimal = Field(default=Decimal("0"))
    platform_fee: Decimal = Field(default=Decimal("0"))
    treasury_contribution: Decimal = Field(default=Decimal("0"))

    ledger_entry_id: str | None = None
    purchased_at: datetime = Field(default_factory=utc_now)
    refunded_at: datetime | None = None


class RevenueDistribution(AgentOSModel):
    """
    How revenue from a sale is distributed.
    """

    total_amount: Decimal
    currency: Currency
    seller_share: Decimal = Field(description="80% to seller")
    platform_share: Decimal = Field(description="15% to platform")
    treasury_share: Decimal = Field(description="5% to community treasury")


class Rating(AgentOSModel):
    """A buyer's rating of a listing."""

    listing_id: str
    buyer_id: str
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(default=None, max_length=1000)
    rated_at: datetime = Field(default_factory=utc_now)


class SearchResult(AgentOSModel):
    """A page of search results."""

    items: list[Listing]
    total: int
    limit: int
    offset: int
    has_more: bool


class MarketplaceStats(AgentOSModel):
    """
    Overall marketplace statistics.
    """

    total_listings: int = 0
    active_listings: int = 0
    total_sales: int = 0
    total_refunds: int = 0
    total_revenue: Decimal = Decimal("0")
    platform_revenue: Decimal = Decimal("0")
    treasury_balance: Decimal = Decimal("0")

    sales_by_pricing_model: dict[str, int] = Field(default_factory=dict)
    top_listings: list[dict[str, Any]] = Field(default_factory=list)
    trending_tags: list[str] = Field(default_factory=list)

    avg_price: Decimal = Decimal("0")
    calculated_at: datetime = Field(default_factory=utc_now)
