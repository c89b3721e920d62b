"""
Base Models and Common Types

Foundation classes for all AgentOS models including the trust tier enum,
common response models, and base model configuration.
"""

from datetime import UTC, datetime
from enum import IntEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(UTC)


class AgentOSModel(BaseModel):
    """Base model for all AgentOS entities with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        validate_assignment=True,
    )


class TrustTier(IntEnum):
    """
    Trust tiers gating platform capabilities.

    Higher values unlock more capabilities. T4 is never reached by score
    alone; it is granted by certification.
    """

    T0 = 0  # Unverified - sandboxed compute only
    T1 = 1  # Registered - active DSID
    T2 = 2  # Verified - DSID key ownership proven
    T3 = 3  # Trusted - track record of completed work
    T4 = 4  # Certified - governance grant

    @property
    def label(self) -> str:
        return _TIER_LABELS[self]

    @classmethod
    def parse(cls, value: "str | int | TrustTier") -> "TrustTier":
        """Accept 3, "3", "T3" or "t3"."""
        if isinstance(value, TrustTier):
            return value
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip().upper()
        if text.startswith("T"):
            text = text[1:]
        return cls(int(text))


_TIER_LABELS = {
    TrustTier.T0: "unverified",
    TrustTier.T1: "registered",
    TrustTier.T2: "verified",
    TrustTier.T3: "trusted",
    TrustTier.T4: "certified",
}


# ═══════════════════════════════════════════════════════════════
# COMMON RESPONSE MODELS
# ═══════════════════════════════════════════════════════════════


class PaginatedResponse(AgentOSModel):
    """Generic paginated response wrapper."""

    items: list[Any]
    total: int
    limit: int = 20
    offset: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


class ErrorResponse(AgentOSModel):
    """Standard error response."""

    error: str
    status_code: int
    path: str | None = None
    details: list[dict[str, Any]] | None = None


# ═══════════════════════════════════════════════════════════════
# ID GENERATION
# ═══════════════════════════════════════════════════════════════


def generate_id() -> str:
    """Generate a new UUID string."""
    return str(uuid4())
