"""
AgentOS Models

Pydantic models for all domain entities.
"""

from agentos.models.agent import (
    AgentDefinition,
    AgentStatus,
    ToolPermission,
    ToolSpec,
)
from agentos.models.base import (
    AgentOSModel,
    ErrorResponse,
    PaginatedResponse,
    TrustTier,
    generate_id,
    utc_now,
)
from agentos.models.events import Event, EventType
from agentos.models.identity import (
    DSIDDocument,
    IdentityRecord,
    IdentityStatus,
    KeyRotation,
    RegistrationResult,
    VerificationChallenge,
)
from agentos.models.ledger import (
    GENESIS_HASH,
    Block,
    InclusionProof,
    LedgerEntry,
    LedgerEntryType,
    MemoryAnchor,
    ProofStep,
)
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
from agentos.models.session import (
    MessageRole,
    Session,
    SessionMessage,
    SessionStatus,
    StreamChunk,
)
from agentos.models.team import (
    FailurePolicy,
    MemberResult,
    Team,
    TeamMode,
    TeamRun,
    TeamRunStatus,
)
from agentos.models.trust import (
    TIER_CAPABILITIES,
    TierCapabilities,
    TrustEvent,
    TrustEventType,
    TrustProfile,
)

__all__ = [
    # Base
    "AgentOSModel",
    "TrustTier",
    "PaginatedResponse",
    "ErrorResponse",
    "generate_id",
    "utc_now",
    # Identity
    "IdentityStatus",
    "DSIDDocument",
    "KeyRotation",
    "VerificationChallenge",
    "IdentityRecord",
    "RegistrationResult",
    # Trust
    "TrustEventType",
    "TrustEvent",
    "TrustProfile",
    "TierCapabilities",
    "TIER_CAPABILITIES",
    # Agent
    "AgentStatus",
    "AgentDefinition",
    "ToolPermission",
    "ToolSpec",
    # Session
    "SessionStatus",
    "MessageRole",
    "SessionMessage",
    "Session",
    "StreamChunk",
    # Team
    "TeamMode",
    "FailurePolicy",
    "Team",
    "TeamRunStatus",
    "MemberResult",
    "TeamRun",
    # Ledger
    "GENESIS_HASH",
    "LedgerEntryType",
    "LedgerEntry",
    "Block",
    "MemoryAnchor",
    "ProofStep",
    "InclusionProof",
    # Marketplace
    "PricingModel",
    "ListingStatus",
    "Currency",
    "PurchaseStatus",
    "Listing",
    "License",
    "Purchase",
    "RevenueDistribution",
    "Rating",
    "SearchResult",
    "MarketplaceStats",
    # Events
    "EventType",
    "Event",
]
