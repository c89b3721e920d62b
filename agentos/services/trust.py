"""
AgentOS Trust Service

Trust scores and tiers for DSIDs. Tiers gate what an agent may do on the
platform: how many sessions it may run, which tool permissions it gets,
whether it can join or lead teams and whether it can sell in the
marketplace.

Trust Model:
- Initial score: 10
- Completed work slowly raises the score, failures and violations lower it
- Proving key ownership gives a one-time boost
- Inactivity decays the score weekly
- T4 is only reachable through certification

Tier Rules:
- Revoked or suspended identity: T0
- Certified: T4
- T1: active DSID
- T2: T1 + verified key ownership + score >= 40
- T3: T2 + score >= 70 + at least 10 completed sessions
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from agentos.models.base import TrustTier, utc_now
from agentos.models.events import EventType
from agentos.models.identity import DSIDDocument, IdentityStatus
from agentos.models.ledger import LedgerEntryType
from agentos.models.trust import (
    TIER_CAPABILITIES,
    TierCapabilities,
    TrustEvent,
    TrustEventType,
    TrustProfile,
)

if TYPE_CHECKING:
    from agentos.kernel.event_system import EventBus
    from agentos.services.identity import IdentityService
    from agentos.services.ledger import LedgerService

logger = structlog.get_logger(__name__)


class InsufficientTrustError(PermissionError):
    """Raised when a DSID's tier does not grant a capability."""

    def __init__(self, dsid: str, tier: TrustTier, requirement: str):
        self.dsid = dsid
        self.tier = tier
        self.requirement = requirement
        super().__init__(
            f"Trust tier T{int(tier)} ({tier.label}) does not allow: {requirement}"
        )


# Checks accepted by TrustService.require()
TRUST_PREDICATES = frozenset({"can_join_teams", "can_lead_teams", "can_publish", "can_sell_paid"})


class TrustService:
    """
    Manages trust profiles for DSIDs.

    Each profile is updated under its own lock; tier is recomputed after
    every change.
    """

    # Score adjustments
    SESSION_COMPLETED_BONUS = 1
    SESSION_FAILED_PENALTY = -2
    TOOL_VIOLATION_PENALTY = -10
    TEAM_RUN_BONUS = 2
    IDENTITY_VERIFIED_BONUS = 30
    INACTIVITY_DECAY_RATE = -1  # per full inactive week

    # Tier thresholds
    VERIFIED_THRESHOLD = 40
    TRUSTED_THRESHOLD = 70
    TRUSTED_MIN_SESSIONS = 10

    INITIAL_SCORE = 10
    MIN_SCORE = 0
    MAX_SCORE = 100

    MAX_HISTORY_EVENTS = 5000

    _DEFAULT_DELTAS = {
        TrustEventType.SESSION_COMPLETED: SESSION_COMPLETED_BONUS,
        TrustEventType.SESSION_FAILED: SESSION_FAILED_PENALTY,
        TrustEventType.TOOL_VIOLATION: TOOL_VIOLATION_PENALTY,
        TrustEventType.TEAM_RUN_COMPLETED: TEAM_RUN_BONUS,
        TrustEventType.IDENTITY_VERIFIED: IDENTITY_VERIFIED_BONUS,
        TrustEventType.INACTIVITY_DECAY: INACTIVITY_DECAY_RATE,
        TrustEventType.CERTIFIED: 0,
        TrustEventType.DECERTIFIED: 0,
    }

    _ACTIVITY_EVENTS = frozenset({
        TrustEventType.SESSION_COMPLETED,
        TrustEventType.SESSION_FAILED,
        TrustEventType.TOOL_VIOLATION,
        TrustEventType.TEAM_RUN_COMPLETED,
        TrustEventType.IDENTITY_VERIFIED,
    })

    def __init__(
        self,
        identity: IdentityService,
        ledger: LedgerService | None = None,
        event_bus: EventBus | None = None,
    ):
        self._identity = identity
        self._ledger = ledger
        self._event_bus = event_bus

        self._profiles: dict[str, TrustProfile] = {}
        self._history: deque[TrustEvent] = deque(maxlen=self.MAX_HISTORY_EVENTS)
        self._locks_guard = asyncio.Lock()
        self._dsid_locks: dict[str, asyncio.Lock] = {}

        identity.add_listener(self._on_identity_change)

    async def _get_lock(self, dsid: str) -> asyncio.Lock:
        async with self._locks_guard:
            if dsid not in self._dsid_locks:
                self._dsid_locks[dsid] = asyncio.Lock()
            return self._dsid_locks[dsid]

    # =========================================================================
    # Tier Computation
    # =========================================================================

    def compute_tier(self, profile: TrustProfile, document: DSIDDocument | None) -> TrustTier:
        if document is None or document.status != IdentityStatus.ACTIVE:
            return TrustTier.T0
        if profile.certified:
            return TrustTier.T4
        if not document.verified or profile.score < self.VERIFIED_THRESHOLD:
            return TrustTier.T1
        if (
            profile.score >= self.TRUSTED_THRESHOLD
            and profile.completed_sessions >= self.TRUSTED_MIN_SESSIONS
        ):
            return TrustTier.T3
        return TrustTier.T2

    # =========================================================================
    # Profiles
    # =========================================================================

    async def ensure_profile(self, dsid: str) -> TrustProfile:
        """Get the profile for a DSID, creating it at the initial score."""
        profile = self._profiles.get(dsid)
        if profile is not None:
            return profile

        document = await self._identity.resolve(dsid)
        if document is None:
            raise ValueError("Identity not found")

        lock = await self._get_lock(dsid)
        async with lock:
            profile = self._profiles.get(dsid)
            if profile is None:
                profile = TrustProfile(dsid=dsid, score=self.INITIAL_SCORE)
                profile.tier = self.compute_tier(profile, document)
                self._profiles[dsid] = profile
                logger.debug("trust_profile_created", dsid=dsid, tier=f"T{int(profile.tier)}")
        return profile

    async def get_profile(self, dsid: str) -> TrustProfile | None:
        if dsid in self._profiles:
            return self._profiles[dsid]
        if await self._identity.resolve(dsid) is None:
            return None
        return await self.ensure_profile(dsid)

    async def get_tier(self, dsid: str) -> TrustTier:
        """Tier of a DSID; unknown identities are T0."""
        profile = await self.get_profile(dsid)
        return profile.tier if profile else TrustTier.T0

    async def capabilities_for(self, dsid: str) -> TierCapabilities:
        return TIER_CAPABILITIES[await self.get_tier(dsid)]

    async def require(self, dsid: str, predicate: str) -> TierCapabilities:
        """
        Assert that a DSID's tier grants a capability.

        Args:
            dsid: Identity to check
            predicate: One of can_join_teams, can_lead_teams, can_publish,
                can_sell_paid

        Raises:
            InsufficientTrustError: If the tier does not grant it
        """
        if predicate not in TRUST_PREDICATES:
            raise ValueError(f"Unknown trust predicate: {predicate}")
        tier = await self.get_tier(dsid)
        capabilities = TIER_CAPABILITIES[tier]
        if not getattr(capabilities, predicate):
            raise InsufficientTrustError(dsid, tier, predicate)
        return capabilities

    # =========================================================================
    # Score Changes
    # =========================================================================

    async def record_event(
        self,
        dsid: str,
        event_type: TrustEventType,
        reason: str = "",
        delta: int | None = None,
    ) -> TrustEvent:
        """
        Apply a trust-affecting event.

        delta is required for listing_rated and manual_adjustment and
        overrides the default for every other type.
        """
        if delta is None:
            if event_type not in self._DEFAULT_DELTAS:
                raise ValueError(f"{event_type.value} requires an explicit delta")
            delta = self._DEFAULT_DELTAS[event_type]

        await self.ensure_profile(dsid)
        lock = await self._get_lock(dsid)
        async with lock:
            profile = self._profiles[dsid]
            document = await self._identity.resolve(dsid)
            now = utc_now()

            if event_type == TrustEventType.CERTIFIED:
                profile.certified = True
            elif event_type == TrustEventType.DECERTIFIED:
                profile.certified = False
                profile.certified_by = None
            elif event_type == TrustEventType.SESSION_COMPLETED:
                profile.completed_sessions += 1
            elif event_type == TrustEventType.SESSION_FAILED:
                profile.failed_sessions += 1
            elif event_type == TrustEventType.TOOL_VIOLATION:
                profile.violations += 1

            if event_type in self._ACTIVITY_EVENTS:
                profile.last_activity_at = now

            event = self._apply(profile, document, event_type, delta, reason, now)

        await self._publish_change(event)
        return event

    def _apply(
        self,
        profile: TrustProfile,
        document: DSIDDocument | None,
        event_type: TrustEventType,
        delta: int,
        reason: str,
        now: datetime,
    ) -> TrustEvent:
        score_before, tier_before = profile.score, profile.tier
        profile.score = max(self.MIN_SCORE, min(self.MAX_SCORE, profile.score + delta))
        profile.tier = self.compute_tier(profile, document)
        profile.updated_at = now

        event = TrustEvent(
            dsid=profile.dsid,
            event_type=event_type,
            delta=profile.score - score_before,
            score_before=score_before,
            score_after=profile.score,
            tier_before=tier_before,
            tier_after=profile.tier,
            reason=reason,
            timestamp=now,
        )
        self._history.append(event)
        return event

    async def _publish_change(self, event: TrustEvent) -> None:
        tier_changed = event.tier_before != event.tier_after
        if tier_changed:
            logger.info(
                "tier_changed",
                dsid=event.dsid,
                tier_before=f"T{int(event.tier_before)}",
                tier_after=f"T{int(event.tier_after)}",
                reason=event.reason or event.event_type.value,
            )
            if self._ledger is not None:
                await self._ledger.append(
                    LedgerEntryType.TRUST_CHANGED,
                    actor=event.dsid,
                    payload={
                        "event_type": event.event_type.value,
                        "score": event.score_after,
                        "tier_before": int(event.tier_before),
                        "tier_after": int(event.tier_after),
                    },
                )
        elif event.delta:
            logger.debug(
                "trust_score_changed",
                dsid=event.dsid,
                delta=event.delta,
                score=event.score_after,
            )

        if self._event_bus is None:
            return
        payload = {
            "dsid": event.dsid,
            "event_type": event.event_type.value,
            "delta": event.delta,
            "score": event.score_after,
            "tier": int(event.tier_after),
        }
        if event.delta:
            await self._event_bus.publish(EventType.TRUST_SCORE_CHANGED, payload, "service:trust")
        if tier_changed:
            await self._event_bus.publish(
                EventType.TIER_CHANGED,
                {**payload, "tier_before": int(event.tier_before)},
                "service:trust",
            )

    async def refresh_tier(self, dsid: str) -> TrustProfile:
        """Recompute the tier after an identity status change."""
        await self.ensure_profile(dsid)
        lock = await self._get_lock(dsid)
        async with lock:
            profile = self._profiles[dsid]
            document = await self._identity.resolve(dsid)
            event = None
            if self.compute_tier(profile, document) != profile.tier:
                event = self._apply(
                    profile, document, TrustEventType.MANUAL_ADJUSTMENT, 0,
                    "identity status changed", utc_now(),
                )
        if event is not None:
            await self._publish_change(event)
        return profile

    # =========================================================================
    # Governance
    # =========================================================================

    async def certify(self, dsid: str, certified_by: str) -> TrustProfile:
        """Grant T4. The identity must be active."""
        document = await self._identity.resolve(dsid)
        if document is None:
            raise ValueError("Identity not found")
        if document.status != IdentityStatus.ACTIVE:
            raise ValueError("Only active identities can be certified")

        await self.record_event(dsid, TrustEventType.CERTIFIED, reason=f"certified by {certified_by}")
        profile = self._profiles[dsid]
        profile.certified_by = certified_by
        return profile

    async def decertify(self, dsid: str, decertified_by: str) -> TrustProfile:
        profile = await self.ensure_profile(dsid)
        if not profile.certified:
            raise ValueError("Identity is not certified")
        await self.record_event(
            dsid, TrustEventType.DECERTIFIED, reason=f"decertified by {decertified_by}"
        )
        return profile

    async def apply_decay(self, now: datetime | None = None) -> int:
        """
        Decay every profile by one point per full week without activity.

        Weeks already decayed are not decayed again.

        Returns:
            Number of profiles that lost score
        """
        now = now or utc_now()
        decayed = 0
        for dsid in list(self._profiles):
            lock = await self._get_lock(dsid)
            async with lock:
                profile = self._profiles[dsid]
                since = max(profile.last_activity_at, profile.last_decay_at or profile.last_activity_at)
                weeks = (now - since) // timedelta(weeks=1)
                if weeks < 1:
                    continue
                profile.last_decay_at = since + timedelta(weeks=weeks)
                document = await self._identity.resolve(dsid)
                event = self._apply(
                    profile, document, TrustEventType.INACTIVITY_DECAY,
                    self.INACTIVITY_DECAY_RATE * weeks, f"{weeks} inactive week(s)", now,
                )
            if event.delta:
                decayed += 1
            await self._publish_change(event)

        if decayed:
            logger.info("trust_decay_applied", profiles=decayed)
        return decayed

    # =========================================================================
    # Queries
    # =========================================================================

    async def history(self, dsid: str, limit: int = 50) -> list[TrustEvent]:
        """Most recent events for a DSID, newest first."""
        events = [e for e in reversed(self._history) if e.dsid == dsid]
        return events[:limit]

    def get_stats(self) -> dict[str, Any]:
        by_tier = {f"T{int(t)}": 0 for t in TrustTier}
        for profile in self._profiles.values():
            by_tier[f"T{int(profile.tier)}"] += 1
        return {
            "profiles": len(self._profiles),
            "by_tier": by_tier,
            "history_events": len(self._history),
        }

    # =========================================================================
    # Identity Hooks
    # =========================================================================

    async def _on_identity_change(self, action: str, document: DSIDDocument) -> None:
        if action == "register":
            await self.ensure_profile(document.dsid)
        elif action == "verify":
            await self.record_event(
                document.dsid, TrustEventType.IDENTITY_VERIFIED, reason="key ownership proven"
            )
        elif action in ("suspend", "reinstate", "revoke"):
            await self.refresh_tier(document.dsid)
