"""
Event Models

Event types and payload envelope for the in-process pub/sub bus.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from agentos.models.base import AgentOSModel, generate_id, utc_now


class EventType(str, Enum):
    """Types of events in AgentOS."""

    # System Events
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    SYSTEM_ERROR = "system.error"

    # Identity Events
    IDENTITY_REGISTERED = "identity.registered"
    IDENTITY_VERIFIED = "identity.verified"
    IDENTITY_KEY_ROTATED = "identity.key_rotated"
    IDENTITY_SUSPENDED = "identity.suspended"
    IDENTITY_REINSTATED = "identity.reinstated"
    IDENTITY_REVOKED = "identity.revoked"

    # Trust Events
    TRUST_SCORE_CHANGED = "trust.score_changed"
    TIER_CHANGED = "trust.tier_changed"

    # Agent / Session Events
    AGENT_CREATED = "agent.created"
    AGENT_UPDATED = "agent.updated"
    SESSION_STARTED = "session.started"
    SESSION_COMPLETED = "session.completed"
    SESSION_FAILED = "session.failed"
    SESSION_CANCELLED = "session.cancelled"
    TOOL_INVOKED = "session.tool_invoked"

    # Security Events
    SECURITY_VIOLATION = "security.violation"

    # Team Events
    TEAM_CREATED = "team.created"
    TEAM_RUN_STARTED = "team.run_started"
    TEAM_RUN_COMPLETED = "team.run_completed"

    # Ledger Events
    BLOCK_SEALED = "ledger.block_sealed"
    BLOCK_ANCHORED = "ledger.block_anchored"
    MEMORY_ANCHORED = "ledger.memory_anchored"

    # Marketplace Events
    LISTING_PUBLISHED = "marketplace.listing_published"
    LISTING_DELISTED = "marketplace.listing_delisted"
    PURCHASE_COMPLETED = "marketplace.purchase_completed"
    PURCHASE_REFUNDED = "marketplace.purchase_refunded"
    LISTING_RATED = "marketplace.listing_rated"


class Event(AgentOSModel):
    """Event envelope delivered to subscribers."""

    id: str = Field(default_factory=generate_id)
    type: EventType
    source: str = Field(description="Component that emitted the event")
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
    correlation_id: str | None = Field(
        default=None,
        description="For tracing related events",
    )
