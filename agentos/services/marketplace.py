"""
AgentOS Marketplace Service

Agent listings, purchases, licenses and revenue distribution.

Publishing flow: create_listing (DRAFT) -> publish_listing (ACTIVE), or
publish() for both in one step. Sellers need the can_publish trust
capability on the listed agent's DSID; paid listings also need
can_sell_paid.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from typing import TYPE_CHECKING, Any

import structlog

from agentos.models.agent import AgentStatus
from agentos.models.base import utc_now
from agentos.models.events import EventType
from agentos.models.ledger import LedgerEntryType
from agentos.models.marketplace import (
    Currency,
    License,
    Listing,
    ListingStatus,
    MarketplaceStats,
    PricingModel,
    Purchase,
    PurchaseStatus,
    Rating,
    RevenueDistribution,
    SearchResult,
)
from agentos.models.trust import TrustEventType

if TYPE_CHECKING:
    from agentos.kernel.event_system import EventBus
    from agentos.services.agents import AgentRegistry
    from agentos.services.ledger import LedgerService
    from agentos.services.trust import TrustService

logger = structlog.get_logger(__name__)

SORT_OPTIONS = frozenset({"relevance", "newest", "price_asc", "price_desc", "popular", "rating"})
UPDATABLE_LISTING_FIELDS = frozenset({"price", "description", "tags", "category", "title"})

_CENT = Decimal("0.01")


class MarketplaceService:
    """
    Central service for marketplace operations.
    """

    # Revenue distribution percentages
    SELLER_SHARE = Decimal("0.80")
    PLATFORM_SHARE = Decimal("0.15")
    TREASURY_SHARE = Decimal("0.05")

    DEFAULT_SUBSCRIPTION_DAYS = 30
    RATING_TRUST_WEIGHT = 2

    def __init__(
        self,
        registry: AgentRegistry,
        trust: TrustService,
        ledger: LedgerService | None = None,
        event_bus: EventBus | None = None,
        refund_window_days: int = 7,
        currency: Currency = Currency.AOS,
    ) -> None:
        self._registry = registry
        self._trust = trust
        self._ledger = ledger
        self._event_bus = event_bus
        self._refund_window = timedelta(days=refund_window_days)
        self._currency = currency

        self._listings: dict[str, Listing] = {}
        self._purchases: dict[str, Purchase] = {}
        self._licenses: dict[str, License] = {}
        self._ratings: dict[tuple[str, str], Rating] = {}

        # Purchases, refunds and license use are serialized
        self._purchase_lock = asyncio.Lock()

    # =========================================================================
    # Listings
    # =========================================================================

    async def create_listing(
        self,
        seller_id: str,
        agent_id: str,
        title: str,
        pricing_model: PricingModel = PricingModel.FREE,
        price: Decimal | int | str = Decimal("0"),
        currency: Currency | None = None,
        description: str = "",
        category: str | None = None,
        tags: list[str] | None = None,
        subscription_period_days: int | None = None,
    ) -> Listing:
        """
        Create a draft listing for an agent.

        Raises:
            ValueError: Unknown agent, bad price, or the agent already has a live listing
            PermissionError: Seller does not own the agent
            InsufficientTrustError: Agent's tier cannot publish or sell paid
        """
        agent = await self._registry.get_agent(agent_id)
        if agent is None:
            raise ValueError("Agent not found")
        if agent.owner_id != seller_id:
            raise PermissionError("User does not own this agent")
        if agent.status == AgentStatus.ARCHIVED:
            raise ValueError("Archived agents cannot be listed")

        price = Decimal(str(price))
        self._check_price(pricing_model, price)

        await self._trust.require(agent.dsid, "can_publish")
        if pricing_model != PricingModel.FREE:
            await self._trust.require(agent.dsid, "can_sell_paid")

        if pricing_model == PricingModel.SUBSCRIPTION:
            subscription_period_days = subscription_period_days or self.DEFAULT_SUBSCRIPTION_DAYS
        else:
            subscription_period_days = None

        listing = Listing(
            agent_id=agent_id,
            seller_id=seller_id,
            seller_dsid=agent.dsid,
            pricing_model=pricing_model,
            price=price,
            currency=currency or self._currency,
            subscription_period_days=subscription_period_days,
            title=title,
            description=description,
            category=category,
            tags=self._normalize_tags(tags),
        )

        async with self._purchase_lock:
            live = [
                l for l in self._listings.values()
                if l.agent_id == agent_id and l.status != ListingStatus.DELISTED
            ]
            if live:
                raise ValueError("Agent already has a live listing")
            self._listings[listing.id] = listing

        logger.info(
            "listing_created",
            listing_id=listing.id,
            agent_id=agent_id,
            pricing_model=pricing_model.value,
        )
        return listing

    async def publish_listing(self, listing_id: str, seller_id: str) -> Listing:
        """Publish a listing to make it active."""
        listing = self._require_own_listing(listing_id, seller_id)
        if listing.status != ListingStatus.DRAFT:
            raise ValueError("Only draft listings can be published")

        await self._trust.require(listing.seller_dsid, "can_publish")
        if not listing.is_free:
            await self._trust.require(listing.seller_dsid, "can_sell_paid")

        listing.status = ListingStatus.ACTIVE
        listing.published_at = utc_now()
        listing.updated_at = listing.published_at

        logger.info("listing_published", listing_id=listing_id, agent_id=listing.agent_id)
        if self._ledger is not None:
            await self._ledger.append(
                LedgerEntryType.LISTING_PUBLISHED,
                actor=seller_id,
                payload={
                    "listing_id": listing.id,
                    "agent_id": listing.agent_id,
                    "pricing_model": listing.pricing_model.value,
                    "price": listing.price,
                },
            )
        await self._emit(
            EventType.LISTING_PUBLISHED,
            {"listing_id": listing.id, "agent_id": listing.agent_id, "seller_id": seller_id},
        )
        return listing

    async def publish(self, seller_id: str, agent_id: str, title: str, **kwargs: Any) -> Listing:
        """Create and publish a listing in one step."""
        listing = await self.create_listing(seller_id, agent_id, title, **kwargs)
        return await self.publish_listing(listing.id, seller_id)

    async def get_listing(self, listing_id: str, record_view: bool = False) -> Listing | None:
        listing = self._listings.get(listing_id)
        if listing is not None and record_view:
            listing.view_count += 1
        return listing

    async def update_listing(self, listing_id: str, seller_id: str, **updates: Any) -> Listing:
        """Update title, price, description, tags or category."""
        listing = self._require_own_listing(listing_id, seller_id)
        if listing.status == ListingStatus.DELISTED:
            raise ValueError("Delisted listings cannot be updated")

        invalid = set(updates) - UPDATABLE_LISTING_FIELDS
        if invalid:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(invalid))}")

        changes = {k: v for k, v in updates.items() if v is not None}
        if "price" in changes:
            changes["price"] = Decimal(str(changes["price"]))
            self._check_price(listing.pricing_model, changes["price"])
        if "tags" in changes:
            changes["tags"] = self._normalize_tags(changes["tags"])

        for key, value in changes.items():
            setattr(listing, key, value)
        if changes:
            listing.updated_at = utc_now()
            logger.info("listing_updated", listing_id=listing_id, fields=sorted(changes))
        return listing

    async def delist_listing(self, listing_id: str, seller_id: str) -> Listing:
        """Take a listing off the market. Existing licenses stay valid."""
        listing = self._require_own_listing(listing_id, seller_id)
        if listing.status == ListingStatus.DELISTED:
            raise ValueError("Listing is already delisted")

        listing.status = ListingStatus.DELISTED
        listing.updated_at = utc_now()
        logger.info("listing_delisted", listing_id=listing_id)
        await self._emit(
            EventType.LISTING_DELISTED,
            {"listing_id": listing.id, "agent_id": listing.agent_id},
        )
        return listing

    def _require_own_listing(self, listing_id: str, seller_id: str) -> Listing:
        listing = self._listings.get(listing_id)
        if listing is None:
            raise ValueError("Listing not found")
        if listing.seller_id != seller_id:
            raise PermissionError("Not authorized to modify this listing")
        return listing

    @staticmethod
    def _check_price(pricing_model: PricingModel, price: Decimal) -> None:
        if price < 0:
            raise ValueError("Price cannot be negative")
        if pricing_model == PricingModel.FREE and price != 0:
            raise ValueError("Free listings must have price 0")
        if pricing_model != PricingModel.FREE and price <= 0:
            raise ValueError("Paid listings must have a positive price")

    @staticmethod
    def _normalize_tags(tags: list[str] | None) -> list[str]:
        cleaned = (t.strip().lower() for t in tags or [])
        return list(dict.fromkeys(t for t in cleaned if t))

    # =========================================================================
    # Search
    # =========================================================================

    @staticmethod
    def _relevance(listing: Listing, tokens: list[str]) -> int:
        title = listing.title.lower()
        description = listing.description.lower()
        score = 0
        for token in tokens:
            if token in title:
                score += 3
            if any(token in tag for tag in listing.tags):
                score += 2
            if token in description:
                score += 1
        return score

    async def search(
        self,
        query: str | None = None,
        category: str | None = None,
        pricing_model: PricingModel | None = None,
        max_price: Decimal | None = None,
        min_rating: float | None = None,
        tags: list[str] | None = None,
        sort_by: str = "relevance",
        limit: int = 20,
        offset: int = 0,
    ) -> SearchResult:
        """Search active listings."""
        if sort_by not in SORT_OPTIONS:
            raise ValueError(f"Unknown sort option: {sort_by}")

        wanted_tags = set(self._normalize_tags(tags))
        tokens = [t for t in (query or "").lower().split() if t]

        scored: list[tuple[int, Listing]] = []
        for listing in self._listings.values():
            if listing.status != ListingStatus.ACTIVE:
                continue
            if category and listing.category != category:
                continue
            if pricing_model and listing.pricing_model != pricing_model:
                continue
            if max_price is not None and listing.price > max_price:
                continue
            if min_rating is not None and listing.rating_avg < min_rating:
                continue
            if wanted_tags and not wanted_tags.intersection(listing.tags):
                continue

            relevance = self._relevance(listing, tokens) if tokens else 0
            if tokens and relevance == 0:
                continue
            scored.append((relevance, listing))

        def newest(item: tuple[int, Listing]) -> datetime:
            return item[1].published_at or item[1].created_at

        scored.sort(key=newest, reverse=True)
        if sort_by == "relevance" and tokens:
            scored.sort(key=lambda item: item[0], reverse=True)
        elif sort_by == "price_asc":
            scored.sort(key=lambda item: item[1].price)
        elif sort_by == "price_desc":
            scored.sort(key=lambda item: item[1].price, reverse=True)
        elif sort_by == "popular":
            scored.sort(key=lambda item: item[1].purchase_count, reverse=True)
        elif sort_by == "rating":
            scored.sort(key=lambda item: item[1].rating_avg, reverse=True)

        items = [listing for _, listing in scored[offset:offset + limit]]
        return SearchResult(
            items=items,
            total=len(scored),
            limit=limit,
            offset=offset,
            has_more=offset + len(items) < len(scored),
        )

    # =========================================================================
    # Purchases
    # =========================================================================

    def calculate_revenue_distribution(
        self,
        amount: Decimal,
        currency: Currency | None = None,
    ) -> RevenueDistribution:
        """Split a sale. Platform and treasury round down; the seller gets the remainder."""
        platform = (amount * self.PLATFORM_SHARE).quantize(_CENT, rounding=ROUND_DOWN)
        treasury = (amount * self.TREASURY_SHARE).quantize(_CENT, rounding=ROUND_DOWN)
        return RevenueDistribution(
            total_amount=amount,
            currency=currency or self._currency,
            seller_share=amount - platform - treasury,
            platform_share=platform,
            treasury_share=treasury,
        )

    async def purchase(
        self,
        listing_id: str,
        buyer_id: str,
        units: int = 1,
    ) -> tuple[Purchase, License]:
        """
        Buy access to a listed agent.

        units is the number of uses for usage-priced listings and must be 1
        otherwise.
        """
        if units < 1:
            raise ValueError("units must be at least 1")

        async with self._purchase_lock:
            listing = self._listings.get(listing_id)
            if listing is None:
                raise ValueError("Listing not found")
            if listing.status != ListingStatus.ACTIVE:
                raise ValueError("Listing is not active")
            if listing.seller_id == buyer_id:
                raise ValueError("Cannot purchase your own listing")
            if listing.pricing_model != PricingModel.USAGE and units != 1:
                raise ValueError("units only applies to usage pricing")

            now = utc_now()
            if self._active_license(buyer_id, listing.agent_id, now) is not None:
                raise ValueError("Already holds an active license for this agent")

            amount = listing.price * units if listing.pricing_model == PricingModel.USAGE else listing.price
            distribution = self.calculate_revenue_distribution(amount, listing.currency)

            license_ = License(
                purchase_id="",
                listing_id=listing.id,
                agent_id=listing.agent_id,
                holder_id=buyer_id,
                grantor_id=listing.seller_id,
                pricing_model=listing.pricing_model,
                granted_at=now,
                expires_at=(
                    now + timedelta(days=listing.subscription_period_days)
                    if listing.pricing_model == PricingModel.SUBSCRIPTION
                    and listing.subscription_period_days
                    else None
                ),
                uses_total=units if listing.pricing_model == PricingModel.USAGE else None,
            )
            purchase = Purchase(
                listing_id=listing.id,
                agent_id=listing.agent_id,
                buyer_id=buyer_id,
                seller_id=listing.seller_id,
                pricing_model=listing.pricing_model,
                units=units,
                amount=amount,
                currency=listing.currency,
                license_id=license_.id,
                seller_revenue=distribution.seller_share,
                platform_fee=distribution.platform_share,
                treasury_contribution=distribution.treasury_share,
                purchased_at=now,
            )
            license_.purchase_id = purchase.id

            self._purchases[purchase.id] = purchase
            self._licenses[license_.id] = license_
            listing.purchase_count += 1
            listing.revenue_total += amount

        if self._ledger is not None:
            entry = await self._ledger.append(
                LedgerEntryType.PURCHASE,
                actor=buyer_id,
                payload={
                    "purchase_id": purchase.id,
                    "listing_id": listing.id,
                    "agent_id": listing.agent_id,
                    "seller_id": listing.seller_id,
                    "amount": amount,
                    "currency": listing.currency.value,
                    "seller_revenue": distribution.seller_share,
                    "platform_fee": distribution.platform_share,
                    "treasury_contribution": distribution.treasury_share,
                },
            )
            purchase.ledger_entry_id = entry.id

        logger.info(
            "purchase_completed",
            purchase_id=purchase.id,
            listing_id=listing.id,
            amount=str(amount),
            pricing_model=listing.pricing_model.value,
        )
        await self._emit(
            EventType.PURCHASE_COMPLETED,
            {
                "purchase_id": purchase.id,
                "listing_id": listing.id,
                "agent_id": listing.agent_id,
                "buyer_id": buyer_id,
                "amount": str(amount),
            },
        )
        return purchase, license_

    async def refund(self, purchase_id: str, buyer_id: str) -> Purchase:
        """Refund an unused paid purchase within the refund window."""
        async with self._purchase_lock:
            purchase = self._purchases.get(purchase_id)
            if purchase is None:
                raise ValueError("Purchase not found")
            if purchase.buyer_id != buyer_id:
                raise PermissionError("Not the buyer of this purchase")
            if purchase.status == PurchaseStatus.REFUNDED:
                raise ValueError("Purchase is already refunded")
            if purchase.pricing_model == PricingModel.FREE:
                raise ValueError("Free purchases cannot be refunded")

            now = utc_now()
            if now - purchase.purchased_at > self._refund_window:
                raise ValueError("Refund window has passed")
            license_ = self._licenses[purchase.license_id]
            if license_.uses_consumed > 0:
                raise ValueError("License has already been used")

            purchase.status = PurchaseStatus.REFUNDED
            purchase.refunded_at = now
            license_.revoked_at = now
            listing = self._listings.get(purchase.listing_id)
            if listing is not None:
                listing.revenue_total -= purchase.amount

        if self._ledger is not None:
            await self._ledger.append(
                LedgerEntryType.REFUND,
                actor=buyer_id,
                payload={"purchase_id": purchase.id, "amount": purchase.amount},
            )
        logger.info("purchase_refunded", purchase_id=purchase.id, amount=str(purchase.amount))
        await self._emit(
            EventType.PURCHASE_REFUNDED,
            {"purchase_id": purchase.id, "buyer_id": buyer_id, "amount": str(purchase.amount)},
        )
        return purchase

    async def get_purchases(self, buyer_id: str, limit: int = 50) -> list[Purchase]:
        """Get purchases made by a user."""
        purchases = [p for p in self._purchases.values() if p.buyer_id == buyer_id]
        purchases.sort(key=lambda p: p.purchased_at, reverse=True)
        return purchases[:limit]

    async def get_sales(self, seller_id: str, limit: int = 50) -> list[Purchase]:
        """Get sales made by a user."""
        sales = [p for p in self._purchases.values() if p.seller_id == seller_id]
        sales.sort(key=lambda p: p.purchased_at, reverse=True)
        return sales[:limit]

    # =========================================================================
    # Licensing
    # =========================================================================

    def _active_license(self, holder_id: str, agent_id: str, now: datetime) -> License | None:
        for license_ in self._licenses.values():
            if license_.holder_id == holder_id and license_.agent_id == agent_id and license_.is_active(now):
                return license_
        return None

    async def check_access(self, buyer_id: str, agent_id: str) -> License | None:
        """Active license the user holds for an agent, if any."""
        return self._active_license(buyer_id, agent_id, utc_now())

    async def consume_use(self, license_id: str) -> License:
        """Record one use of a license. Usage licenses run out."""
        async with self._purchase_lock:
            license_ = self._licenses.get(license_id)
            if license_ is None:
                raise ValueError("License not found")
            now = utc_now()
            if not license_.is_active(now):
                raise ValueError("License is not active")
            license_.uses_consumed += 1
            license_.last_used_at = now
        return license_

    async def get_license(self, license_id: str) -> License | None:
        return self._licenses.get(license_id)

    # =========================================================================
    # Ratings
    # =========================================================================

    async def rate_listing(
        self,
        listing_id: str,
        buyer_id: str,
        rating: int,
        comment: str | None = None,
    ) -> Rating:
        """
        Rate a purchased listing. Re-rating replaces the previous rating.

        The seller agent's trust moves by (rating - 3) * 2 on a first rating
        and by the difference * 2 on a re-rating.
        """
        listing = self._listings.get(listing_id)
        if listing is None:
            raise ValueError("Listing not found")
        bought = any(
            p.listing_id == listing_id
            and p.buyer_id == buyer_id
            and p.status == PurchaseStatus.COMPLETED
            for p in self._purchases.values()
        )
        if not bought:
            raise PermissionError("Only buyers can rate a listing")

        new_rating = Rating(listing_id=listing_id, buyer_id=buyer_id, rating=rating, comment=comment)
        previous = self._ratings.get((listing_id, buyer_id))
        self._ratings[(listing_id, buyer_id)] = new_rating

        ratings = [r.rating for (lid, _), r in self._ratings.items() if lid == listing_id]
        listing.rating_count = len(ratings)
        listing.rating_avg = round(sum(ratings) / len(ratings), 2)

        baseline = previous.rating if previous else 3
        delta = (rating - baseline) * self.RATING_TRUST_WEIGHT
        if delta:
            await self._trust.record_event(
                listing.seller_dsid,
                TrustEventType.LISTING_RATED,
                reason=f"listing {listing_id} rated {rating}",
                delta=delta,
            )

        logger.info("listing_rated", listing_id=listing_id, rating=rating, replaced=previous is not None)
        await self._emit(
            EventType.LISTING_RATED,
            {"listing_id": listing_id, "rating": rating, "rating_avg": listing.rating_avg},
        )
        return new_rating

    # =========================================================================
    # Statistics
    # =========================================================================

    async def get_stats(self) -> MarketplaceStats:
        """Get overall marketplace statistics."""
        all_listings = list(self._listings.values())
        active_listings = [l for l in all_listings if l.status == ListingStatus.ACTIVE]
        sales = [p for p in self._purchases.values() if p.status == PurchaseStatus.COMPLETED]
        refunds = len(self._purchases) - len(sales)

        by_model: dict[str, int] = {}
        for p in sales:
            by_model[p.pricing_model.value] = by_model.get(p.pricing_model.value, 0) + 1

        top = sorted(all_listings, key=lambda l: l.purchase_count, reverse=True)[:10]
        top_listings = [
            {"listing_id": l.id, "title": l.title, "sales": l.purchase_count}
            for l in top if l.purchase_count
        ]

        tag_counts: dict[str, int] = {}
        for listing in active_listings:
            for tag in listing.tags:
                tag_counts[tag] = tag_counts.get(tag, 0) + 1
        trending = sorted(tag_counts, key=lambda t: (-tag_counts[t], t))[:10]

        prices = [l.price for l in active_listings]
        avg_price = (sum(prices, Decimal("0")) / len(prices)).quantize(_CENT) if prices else Decimal("0")

        return MarketplaceStats(
            total_listings=len(all_listings),
            active_listings=len(active_listings),
            total_sales=len(sales),
            total_refunds=refunds,
            total_revenue=sum((p.amount for p in sales), Decimal("0")),
            platform_revenue=sum((p.platform_fee for p in sales), Decimal("0")),
            treasury_balance=sum((p.treasury_contribution for p in sales), Decimal("0")),
            sales_by_pricing_model=by_model,
            top_listings=top_listings,
            trending_tags=trending,
            avg_price=avg_price,
        )

    async def _emit(self, event_type: EventType, payload: dict[str, Any]) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(event_type, payload, source="service:marketplace")
