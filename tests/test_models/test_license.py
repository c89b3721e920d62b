"""
Tests for marketplace License and Listing models.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError

from agentos.models.base import utc_now
from agentos.models.marketplace import License, Listing, PricingModel


def _license(**overrides) -> License:
    fields = {
        "purchase_id": "p-1",
        "listing_id": "l-1",
        "agent_id": "a-1",
        "holder_id": "buyer",
        "grantor_id": "seller",
        "pricing_model": PricingModel.ONE_TIME,
    }
    fields.update(overrides)
    return License(**fields)


class TestLicense:
    """License activity rules."""

    def test_perpetual_license_is_active(self):
        license_ = _license()
        assert license_.is_active()
        assert license_.uses_remaining is None

    def test_revoked_license_is_inactive(self):
        assert not _license(revoked_at=utc_now()).is_active()

    def test_expired_subscription_is_inactive(self):
        license_ = _license(
            pricing_model=PricingModel.SUBSCRIPTION,
            expires_at=utc_now() + timedelta(days=30),
        )
        assert license_.is_active()
        assert not license_.is_active(now=utc_now() + timedelta(days=31))

    def test_usage_license_runs_out(self):
        license_ = _license(pricing_model=PricingModel.USAGE, uses_total=2)
        assert license_.uses_remaining == 2

        license_.uses_consumed = 2
        assert license_.uses_remaining == 0
        assert not license_.is_active()


class TestListing:
    """Listing field validation."""

    def test_defaults(self):
        listing = Listing(agent_id="a", seller_id="s", seller_dsid="dsid:x:y", title="Helper")
        assert listing.is_free
        assert listing.price == Decimal("0")

    def test_negative_price_rejected(self):
        with pytest.raises(ValidationError):
            Listing(agent_id="a", seller_id="s", seller_dsid="d", title="Helper", price=Decimal("-1"))

    def test_title_required(self):
        with pytest.raises(ValidationError):
            Listing(agent_id="a", seller_id="s", seller_dsid="d", title="")
