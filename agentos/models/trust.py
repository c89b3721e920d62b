"""
Trust Models

Trust profiles, trust-affecting events and the per-tier capability table.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import Field

from agentos.models.agent import ToolPermission
from agentos.models.base import AgentOSModel, TrustTier, generate_id, utc_now


class TrustEventType(str, Enum):
    """Events that move a trust score."""
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    TOOL_VIOLATION = "tool_violation"
    TEAM_RUN_COMPLETED = "team_run_completed"
    IDENTITY_VERIFIED = "identity_verified"
    LISTING_RATED = "listing_rated"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    INACTIVITY_DECAY = "inactivity_decay"
    CERTIFIED = "certified"
    DECERTIFIED = "decertified"


class TrustEvent(AgentOSModel):
    """One recorded change to a trust profile."""

    id: str = Field(default_factory=generate_id)
    dsid: str
    event_type: TrustEventType
    delta: int = 0
    score_before: int
    score_after: int
    tier_before: TrustTier
    tier_after: TrustTier
    reason: str = ""
    timestamp: datetime = Field(default_factory=utc_now)


class TrustProfile(AgentOSModel):
    """Trust state of a DSID."""

    dsid: str
    score: int = Field(default=10, ge=0, le=100)
    tier: TrustTier = Field(default=TrustTier.T0)
    certified: bool = False
    certified_by: str | None = None

    completed_sessions: int = 0
    failed_sessions: int = 0
    violations: int = 0

    last_activity_at: datetime = Field(default_factory=utc_now)
    last_decay_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utc_now)


@dataclass(frozen=True)
class TierCapabilities:
    """What a tier is allowed to do."""
    tier: TrustTier
    max_concurrent_sessions: int
    tool_permissions: frozenset[ToolPermission]
    max_steps: int
    can_join_teams: bool
    can_lead_teams: bool
    can_publish: bool
    can_sell_paid: bool

    def to_dict(self) -> dict:
        return {
            "tier": f"T{int(self.tier)}",
            "label": self.tier.label,
            "max_concurrent_sessions": self.max_concurrent_sessions,
            "tool_permissions": sorted(p.value for p in self.tool_permissions),
            "max_steps": self.max_steps,
            "can_join_teams": self.can_join_teams,
            "can_lead_teams": self.can_lead_teams,
            "can_publish": self.can_publish,
            "can_sell_paid": self.can_sell_paid,
        }


_T0_TOOLS = frozenset({ToolPermission.COMPUTE})
_T1_TOOLS = _T0_TOOLS | {ToolPermission.MEMORY_READ}
_T2_TOOLS = _T1_TOOLS | {ToolPermission.MEMORY_WRITE, ToolPermission.NETWORK}
_T3_TOOLS = _T2_TOOLS | {ToolPermission.LEDGER_WRITE}

TIER_CAPABILITIES: dict[TrustTier, TierCapabilities] = {
    TrustTier.T0: TierCapabilities(TrustTier.T0, 1, _T0_TOOLS, 5, False, False, False, False),
    TrustTier.T1: TierCapabilities(TrustTier.T1, 2, _T1_TOOLS, 10, False, False, False, False),
    TrustTier.T2: TierCapabilities(TrustTier.T2, 5, _T2_TOOLS, 20, True, False, True, False),
    TrustTier.T3: TierCapabilities(TrustTier.T3, 10, _T3_TOOLS, 50, True, True, True, True),
    TrustTier.T4: TierCapabilities(
        TrustTier.T4, 50, frozenset(ToolPermission), 100, True, True, True, True
    ),
}
