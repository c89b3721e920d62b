"""
AgentOS Ledger Service

Internal operational chain. Every significant operation (identity changes,
tier changes, sessions, tool calls, team runs, purchases) is appended as a
hash-linked entry. Entries are sealed into Merkle blocks, and every N-th
block hash is anchored to the external identity chain.

Memory anchors let an agent prove later that it held a piece of memory at
a given point: only the content hash is stored.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from agentos.models.base import utc_now
from agentos.models.events import EventType
from agentos.models.identity import IdentityRecord
from agentos.models.ledger import (
    GENESIS_HASH,
    Block,
    InclusionProof,
    LedgerEntry,
    LedgerEntryType,
    MemoryAnchor,
    ProofStep,
)
from agentos.monitoring import log_duration
from agentos.security.integrity import (
    hash_payload,
    hashes_equal,
    merkle_path,
    merkle_root,
    sha256_hex,
    verify_merkle_path,
)

if TYPE_CHECKING:
    from agentos.kernel.event_system import EventBus
    from agentos.services.identity import IdentityChainClient

logger = structlog.get_logger(__name__)


def compute_entry_hash(entry: LedgerEntry) -> str:
    return hash_payload({
        "sequence": entry.sequence,
        "entry_type": entry.entry_type.value,
        "actor": entry.actor,
        "payload": entry.payload,
        "timestamp": entry.timestamp.isoformat(),
        "previous_hash": entry.previous_hash,
    })


def compute_block_hash(block: Block) -> str:
    return sha256_hex(
        f"{block.index}:{block.merkle_root}:{block.previous_block_hash}:{block.sealed_at.isoformat()}"
    )


class LedgerService:
    """
    Append-only hash chain with Merkle block sealing.

    Usage:
        ledger = LedgerService(chain=InMemoryIdentityChain(), block_size=32)
        entry = await ledger.append(LedgerEntryType.PURCHASE, "user-1", {...})
        ok, broken_at = await ledger.verify_chain()
    """

    def __init__(
        self,
        chain: IdentityChainClient | None = None,
        block_size: int = 32,
        anchor_every_blocks: int = 10,
        event_bus: EventBus | None = None,
    ):
        if block_size < 1:
            raise ValueError("block_size must be at least 1")
        self._chain = chain
        self._block_size = block_size
        self._anchor_every = anchor_every_blocks
        self._event_bus = event_bus

        self._entries: list[LedgerEntry] = []
        self._entry_index: dict[str, LedgerEntry] = {}
        self._pending: list[LedgerEntry] = []
        self._blocks: list[Block] = []
        self._anchors: dict[str, MemoryAnchor] = {}
        self._lock = asyncio.Lock()

    # =========================================================================
    # Appending & Sealing
    # =========================================================================

    async def append(
        self,
        entry_type: LedgerEntryType,
        actor: str,
        payload: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Append an entry, sealing a block when the pending set is full."""
        sealed: Block | None = None
        async with self._lock:
            previous_hash = self._entries[-1].entry_hash if self._entries else GENESIS_HASH
            entry = LedgerEntry(
                sequence=len(self._entries),
                entry_type=entry_type,
                actor=actor,
                payload=payload or {},
                timestamp=utc_now(),
                previous_hash=previous_hash,
                entry_hash="",
            )
            entry.entry_hash = compute_entry_hash(entry)

            self._entries.append(entry)
            self._entry_index[entry.id] = entry
            self._pending.append(entry)

            if len(self._pending) >= self._block_size:
                sealed = await self._seal_pending()

        if sealed is not None:
            await self._announce_block(sealed)
        return entry

    async def seal_block(self) -> Block | None:
        """Seal pending entries now. Returns None when nothing is pending."""
        async with self._lock:
            if not self._pending:
                return None
            block = await self._seal_pending()
        await self._announce_block(block)
        return block

    async def _seal_pending(self) -> Block:
        """Caller must hold the lock."""
        index = len(self._blocks)
        hashes = [e.entry_hash for e in self._pending]
        block = Block(
            index=index,
            entry_ids=[e.id for e in self._pending],
            entry_hashes=hashes,
            merkle_root=merkle_root(hashes),
            previous_block_hash=self._blocks[-1].block_hash if self._blocks else GENESIS_HASH,
            block_hash="",
            sealed_at=utc_now(),
        )
        block.block_hash = compute_block_hash(block)

        for entry in self._pending:
            entry.block_index = index
        self._pending = []
        self._blocks.append(block)

        if self._chain is not None and (index + 1) % self._anchor_every == 0:
            try:
                block.external_anchor_tx = await self._chain.publish(
                    IdentityRecord(
                        action="anchor",
                        dsid="ledger",
                        payload={"block_index": index, "block_hash": block.block_hash},
                    )
                )
            except (ValueError, httpx.HTTPError) as e:
                logger.warning("ledger_anchor_failed", block_index=index, error=str(e))

        logger.info(
            "block_sealed",
            block_index=index,
            entries=len(block.entry_ids),
            anchored=block.external_anchor_tx is not None,
        )
        return block

    async def _announce_block(self, block: Block) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            EventType.BLOCK_SEALED,
            {"block_index": block.index, "block_hash": block.block_hash, "entries": len(block.entry_ids)},
            source="service:ledger",
        )
        if block.external_anchor_tx:
            await self._event_bus.publish(
                EventType.BLOCK_ANCHORED,
                {"block_index": block.index, "tx": block.external_anchor_tx},
                source="service:ledger",
            )

    # =========================================================================
    # Verification
    # =========================================================================

    async def verify_chain(self) -> tuple[bool, str | None]:
        """
        Recompute every entry hash, link, block Merkle root and block link.

        Returns:
            (True, None) if intact, otherwise (False, id of the first entry
            found broken; for a broken block, its first entry)
        """
        async with self._lock:
            with log_duration(
                logger, "ledger_verify", level="debug",
                entries=len(self._entries), blocks=len(self._blocks),
            ):
                return self._check_chain()

    def _check_chain(self) -> tuple[bool, str | None]:
        previous_hash = GENESIS_HASH
        for position, entry in enumerate(self._entries):
            if entry.sequence != position or entry.previous_hash != previous_hash:
                return False, entry.id
            if not hashes_equal(compute_entry_hash(entry), entry.entry_hash):
                return False, entry.id
            previous_hash = entry.entry_hash

        previous_block_hash = GENESIS_HASH
        for block in self._blocks:
            entries = [self._entry_index.get(eid) for eid in block.entry_ids]
            first_id = block.entry_ids[0] if block.entry_ids else None
            if any(e is None for e in entries):
                return False, first_id
            hashes = [e.entry_hash for e in entries]
            if hashes != block.entry_hashes:
                return False, first_id
            if not hashes_equal(merkle_root(hashes), block.merkle_root):
                return False, first_id
            if block.previous_block_hash != previous_block_hash:
                return False, first_id
            if not hashes_equal(compute_block_hash(block), block.block_hash):
                return False, first_id
            previous_block_hash = block.block_hash

        return True, None

    async def get_inclusion_proof(self, entry_id: str) -> InclusionProof:
        entry = self._entry_index.get(entry_id)
        if entry is None:
            raise ValueError("Entry not found")
        if entry.block_index is None:
            raise ValueError("Entry is not sealed in a block yet")

        block = self._blocks[entry.block_index]
        position = block.entry_ids.index(entry_id)
        return InclusionProof(
            entry_id=entry_id,
            entry_hash=entry.entry_hash,
            block_index=block.index,
            merkle_root=block.merkle_root,
            steps=[
                ProofStep(sibling_hash=sibling, side=side)
                for sibling, side in merkle_path(block.entry_hashes, position)
            ],
        )

    @staticmethod
    def verify_inclusion(entry_hash: str, proof: InclusionProof) -> bool:
        """Check a proof without access to the ledger."""
        if not hashes_equal(entry_hash, proof.entry_hash):
            return False
        return verify_merkle_path(
            entry_hash,
            [(step.sibling_hash, step.side) for step in proof.steps],
            proof.merkle_root,
        )

    # =========================================================================
    # Memory Anchors
    # =========================================================================

    async def anchor_memory(self, agent_dsid: str, content: str, label: str = "") -> MemoryAnchor:
        """Record the hash of a piece of agent memory. The content itself is not kept."""
        content_hash = sha256_hex(content)
        entry = await self.append(
            LedgerEntryType.MEMORY_ANCHOR,
            actor=agent_dsid,
            payload={"content_hash": content_hash, "label": label},
        )
        anchor = MemoryAnchor(
            agent_dsid=agent_dsid,
            label=label,
            content_hash=content_hash,
            entry_id=entry.id,
        )
        self._anchors[anchor.id] = anchor

        logger.info("memory_anchored", anchor_id=anchor.id, dsid=agent_dsid)
        if self._event_bus is not None:
            await self._event_bus.publish(
                EventType.MEMORY_ANCHORED,
                {"anchor_id": anchor.id, "dsid": agent_dsid, "entry_id": entry.id},
                source="service:ledger",
            )
        return anchor

    async def verify_memory(self, anchor_id: str, content: str) -> bool:
        anchor = self._anchors.get(anchor_id)
        if anchor is None:
            raise ValueError("Memory anchor not found")
        return hashes_equal(sha256_hex(content), anchor.content_hash)

    async def get_anchor(self, anchor_id: str) -> MemoryAnchor | None:
        return self._anchors.get(anchor_id)

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_entries(
        self,
        actor: str | None = None,
        entry_type: LedgerEntryType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[LedgerEntry], int]:
        """Filtered entries, newest first, with the total match count."""
        matches = [
            e for e in reversed(self._entries)
            if (actor is None or e.actor == actor)
            and (entry_type is None or e.entry_type == entry_type)
        ]
        return matches[offset:offset + limit], len(matches)

    async def get_entry(self, entry_id: str) -> LedgerEntry | None:
        return self._entry_index.get(entry_id)

    async def get_block(self, index: int) -> Block | None:
        if 0 <= index < len(self._blocks):
            return self._blocks[index]
        return None

    async def list_blocks(self, limit: int = 20, offset: int = 0) -> list[Block]:
        return list(reversed(self._blocks))[offset:offset + limit]

    def stats(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "pending_entries": len(self._pending),
            "blocks": len(self._blocks),
            "anchored_blocks": sum(1 for b in self._blocks if b.external_anchor_tx),
            "memory_anchors": len(self._anchors),
            "head_hash": self._entries[-1].entry_hash if self._entries else GENESIS_HASH,
            "block_size": self._block_size,
        }
