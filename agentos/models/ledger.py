"""
Ledger Models

Entries and blocks of the internal operational chain, plus memory anchors
and Merkle inclusion proofs.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import Field

from agentos.models.base import AgentOSModel, generate_id, utc_now

GENESIS_HASH = "0" * 64


class LedgerEntryType(str, Enum):
    """Kinds of operations recorded on the ledger."""
    IDENTITY_EVENT = "identity_event"
    TRUST_CHANGED = "trust_changed"
    SESSION_STARTED = "session_started"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    TOOL_INVOKED = "tool_invoked"
    TEAM_RUN = "team_run"
    LISTING_PUBLISHED = "listing_published"
    PURCHASE = "purchase"
    REFUND = "refund"
    MEMORY_ANCHOR = "memory_anchor"


class LedgerEntry(AgentOSModel):
    """
    One hash-linked ledger entry.

    entry_hash covers every field below plus previous_hash, so altering any
    historical entry breaks the chain from that point on.
    """

    id: str = Field(default_factory=generate_id)
    sequence: int = Field(ge=0)
    entry_type: LedgerEntryType
    actor: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
    previous_hash: str
    entry_hash: str
    block_index: int | None = None


class Block(AgentOSModel):
    """A sealed batch of entries."""

    index: int = Field(ge=0)
    entry_ids: list[str]
    entry_hashes: list[str]
    merkle_root: str
    previous_block_hash: str
    block_hash: str
    sealed_at: datetime
    external_anchor_tx: str | None = None


class MemoryAnchor(AgentOSModel):
    """Proof that an agent held a piece of memory at a point in the ledger."""

    id: str = Field(default_factory=generate_id)
    agent_dsid: str
    label: str = ""
    content_hash: str
    entry_id: str
    created_at: datetime = Field(default_factory=utc_now)


class ProofStep(AgentOSModel):
    """One sibling on the path from a leaf to the Merkle root."""

    sibling_hash: str
    side: Literal["left", "right"]


class InclusionProof(AgentOSModel):
    """Merkle path proving an entry is part of a sealed block."""

    entry_id: str
    entry_hash: str
    block_index: int
    merkle_root: str
    steps: list[ProofStep] = Field(default_factory=list)
