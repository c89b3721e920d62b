"""
AgentOS Identity Service

Decentralized identities (DSIDs) for agents. Each DSID is derived from an
Ed25519 public key and every lifecycle change is published to an external
identity chain so third parties can resolve and audit it.

DSID format: dsid:<network>:<base58(sha256(raw_public_key)[:20])>
"""

from __future__ import annotations

import asyncio
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

import httpx
import structlog

from agentos.models.base import utc_now
from agentos.models.events import EventType
from agentos.models.identity import (
    DSIDDocument,
    IdentityRecord,
    IdentityStatus,
    KeyRotation,
    RegistrationResult,
    VerificationChallenge,
)
from agentos.models.ledger import LedgerEntryType
from agentos.security.integrity import (
    InvalidKeyError,
    canonical_json,
    generate_keypair,
    key_fingerprint,
    sha256_hex,
    verify_signature,
)

if TYPE_CHECKING:
    from agentos.config import Settings
    from agentos.kernel.event_system import EventBus
    from agentos.services.ledger import LedgerService

logger = structlog.get_logger(__name__)


class IdentityError(ValueError):
    """Raised for invalid identity operations."""
    pass


class RevokedIdentityError(IdentityError):
    """Raised when an operation targets a revoked identity."""
    pass


IdentityListener = Callable[[str, DSIDDocument], Awaitable[None]]


# =============================================================================
# Identity Chain Clients
# =============================================================================


class IdentityChainClient(Protocol):
    """External chain that stores identity records."""

    async def publish(self, record: IdentityRecord) -> str:
        """Publish a record and return its transaction id."""
        ...

    async def get(self, tx_id: str) -> IdentityRecord | None:
        ...

    async def close(self) -> None:
        ...


class InMemoryIdentityChain:
    """
    Append-only in-process identity chain.

    Transaction ids are the SHA-256 of the record's canonical JSON and the
    chain height, so identical records published twice get distinct ids.
    """

    def __init__(self) -> None:
        self._records: dict[str, IdentityRecord] = {}
        self._order: list[str] = []
        self._lock = asyncio.Lock()

    @property
    def height(self) -> int:
        return len(self._order)

    async def publish(self, record: IdentityRecord) -> str:
        async with self._lock:
            tx_id = sha256_hex(f"{canonical_json(record.model_dump(mode='json'))}:{self.height}")
            self._records[tx_id] = record
            self._order.append(tx_id)
        return tx_id

    async def get(self, tx_id: str) -> IdentityRecord | None:
        return self._records.get(tx_id)

    def records(self) -> list[IdentityRecord]:
        return [self._records[tx] for tx in self._order]

    async def close(self) -> None:
        return None


class RpcIdentityChain:
    """
    JSON-RPC 2.0 client for an identity chain node.

    Methods used: dsid_publish(record) -> tx_id, dsid_getRecord(tx_id) -> record
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url
        self._timeout = timeout
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self._request_id = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._http_client

    async def _call(self, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        body = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            response = await self._get_client().post(self._url, json=body)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("identity_chain_rpc_failed", method=method, error=str(e))
            raise IdentityError(f"Identity chain unavailable: {e}") from e

        if data.get("error"):
            error = data["error"]
            raise IdentityError(
                f"Identity chain error {error.get('code')}: {error.get('message', 'unknown')}"
            )
        return data.get("result")

    async def publish(self, record: IdentityRecord) -> str:
        result = await self._call("dsid_publish", [record.model_dump(mode="json")])
        if not isinstance(result, str) or not result:
            raise IdentityError("Identity chain returned no transaction id")
        return result

    async def get(self, tx_id: str) -> IdentityRecord | None:
        result = await self._call("dsid_getRecord", [tx_id])
        if result is None:
            return None
        return IdentityRecord.model_validate(result)

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


def create_identity_chain(settings: Settings) -> IdentityChainClient:
    """Build the identity chain client selected by configuration."""
    if settings.identity_chain_backend == "rpc":
        if not settings.identity_chain_rpc_url:
            raise ValueError("IDENTITY_CHAIN_RPC_URL is required for the rpc backend")
        return RpcIdentityChain(
            settings.identity_chain_rpc_url,
            timeout=settings.identity_chain_timeout_seconds,
        )
    return InMemoryIdentityChain()


# =============================================================================
# Identity Service
# =============================================================================


class IdentityService:
    """
    Registration, verification and lifecycle of DSIDs.

    Listeners registered with add_listener() are awaited after every state
    change with (action, document). Actions: register, verify, rotate,
    suspend, reinstate, revoke.
    """

    def __init__(
        self,
        chain: IdentityChainClient,
        network: str = "agentos",
        challenge_ttl_seconds: int = 300,
        event_bus: EventBus | None = None,
        ledger: LedgerService | None = None,
    ):
        self._chain = chain
        self._network = network
        self._challenge_ttl = timedelta(seconds=challenge_ttl_seconds)
        self._event_bus = event_bus
        self._ledger = ledger

        self._documents: dict[str, DSIDDocument] = {}
        self._key_index: dict[str, str] = {}  # public key -> dsid, includes rotated-out keys
        self._challenges: dict[str, VerificationChallenge] = {}
        self._listeners: list[IdentityListener] = []
        self._lock = asyncio.Lock()

    @property
    def chain(self) -> IdentityChainClient:
        return self._chain

    def add_listener(self, listener: IdentityListener) -> None:
        self._listeners.append(listener)

    def make_dsid(self, public_key_b64: str) -> str:
        return f"dsid:{self._network}:{key_fingerprint(public_key_b64)}"

    # =========================================================================
    # Registration & Resolution
    # =========================================================================

    async def register(
        self,
        owner_id: str,
        agent_name: str,
        public_key_b64: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RegistrationResult:
        """
        Register a new DSID.

        When no public key is supplied a keypair is generated and the private
        key is returned in the result. It is not stored anywhere.
        """
        private_key_b64 = None
        if public_key_b64 is None:
            private_key_b64, public_key_b64 = generate_keypair()

        try:
            dsid = self.make_dsid(public_key_b64)
        except InvalidKeyError as e:
            raise IdentityError(str(e)) from e

        async with self._lock:
            if public_key_b64 in self._key_index:
                raise IdentityError("Public key is already registered")

            document = DSIDDocument(
                dsid=dsid,
                owner_id=owner_id,
                agent_name=agent_name,
                public_key=public_key_b64,
                metadata=metadata or {},
            )
            document.chain_tx = await self._chain.publish(
                IdentityRecord(action="register", dsid=dsid, public_key=public_key_b64)
            )
            self._documents[dsid] = document
            self._key_index[public_key_b64] = dsid

        logger.info("identity_registered", dsid=dsid, owner_id=owner_id, generated_key=private_key_b64 is not None)
        await self._after_change("register", document, EventType.IDENTITY_REGISTERED)
        return RegistrationResult(document=document, private_key=private_key_b64)

    async def resolve(self, dsid: str) -> DSIDDocument | None:
        return self._documents.get(dsid)

    async def list_by_owner(self, owner_id: str) -> list[DSIDDocument]:
        return [d for d in self._documents.values() if d.owner_id == owner_id]

    def _require(self, dsid: str) -> DSIDDocument:
        document = self._documents.get(dsid)
        if document is None:
            raise IdentityError("Identity not found")
        return document

    @staticmethod
    def _check_owner(document: DSIDDocument, actor_id: str | None) -> None:
        if actor_id is not None and document.owner_id != actor_id:
            raise PermissionError("Not the owner of this identity")

    # =========================================================================
    # Proof of Key Ownership
    # =========================================================================

    async def issue_challenge(self, dsid: str, actor_id: str | None = None) -> VerificationChallenge:
        """Issue a fresh nonce; any earlier pending challenge is replaced."""
        document = self._require(dsid)
        self._check_owner(document, actor_id)
        if document.is_revoked:
            raise RevokedIdentityError("Identity is revoked")

        now = utc_now()
        challenge = VerificationChallenge(
            dsid=dsid,
            nonce=secrets.token_hex(32),
            issued_at=now,
            expires_at=now + self._challenge_ttl,
        )
        self._challenges[dsid] = challenge
        logger.debug("identity_challenge_issued", dsid=dsid, challenge_id=challenge.id)
        return challenge

    async def complete_challenge(
        self, dsid: str, signature_b64: str, actor_id: str | None = None
    ) -> DSIDDocument:
        """
        Verify a signature over the pending nonce.

        The challenge is consumed whether or not the signature is valid.
        """
        document = self._require(dsid)
        self._check_owner(document, actor_id)
        if document.is_revoked:
            raise RevokedIdentityError("Identity is revoked")

        challenge = self._challenges.pop(dsid, None)
        if challenge is None:
            raise IdentityError("No pending challenge for this identity")
        if challenge.is_expired():
            raise IdentityError("Challenge expired")
        if not verify_signature(challenge.nonce, signature_b64, document.public_key):
            logger.warning("identity_challenge_failed", dsid=dsid)
            raise IdentityError("Invalid challenge signature")

        first_time = not document.verified
        document.verified = True
        document.verified_at = utc_now()
        document.updated_at = document.verified_at

        logger.info("identity_verified", dsid=dsid, first_time=first_time)
        if first_time:
            await self._after_change("verify", document, EventType.IDENTITY_VERIFIED)
        return document

    async def verify_signature(self, dsid: str, message: str, signature_b64: str) -> bool:
        """Check a signature against the current key. Revoked or unknown DSIDs never verify."""
        document = self._documents.get(dsid)
        if document is None or document.is_revoked:
            return False
        return verify_signature(message, signature_b64, document.public_key)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def rotate_key(
        self,
        dsid: str,
        new_public_key_b64: str,
        proof_signature_b64: str,
        actor_id: str | None = None,
    ) -> DSIDDocument:
        """
        Replace the signing key. The proof is the current key's signature
        over the new public key string. The DSID itself does not change.
        """
        document = self._require(dsid)
        self._check_owner(document, actor_id)
        if document.is_revoked:
            raise RevokedIdentityError("Identity is revoked")

        try:
            key_fingerprint(new_public_key_b64)
        except InvalidKeyError as e:
            raise IdentityError(str(e)) from e

        if not verify_signature(new_public_key_b64, proof_signature_b64, document.public_key):
            raise IdentityError("Invalid rotation proof")

        async with self._lock:
            if new_public_key_b64 in self._key_index:
                raise IdentityError("Public key is already registered")

            tx = await self._chain.publish(
                IdentityRecord(
                    action="rotate",
                    dsid=dsid,
                    public_key=new_public_key_b64,
                    payload={"previous_public_key": document.public_key},
                )
            )
            document.key_history.append(
                KeyRotation(
                    previous_public_key=document.public_key,
                    new_public_key=new_public_key_b64,
                    chain_tx=tx,
                )
            )
            document.public_key = new_public_key_b64
            document.updated_at = utc_now()
            self._key_index[new_public_key_b64] = dsid
            self._challenges.pop(dsid, None)

        logger.info("identity_key_rotated", dsid=dsid, rotations=len(document.key_history))
        await self._after_change("rotate", document, EventType.IDENTITY_KEY_ROTATED)
        return document

    async def suspend(self, dsid: str, reason: str, actor_id: str | None = None) -> DSIDDocument:
        document = self._require(dsid)
        self._check_owner(document, actor_id)
        if document.is_revoked:
            raise RevokedIdentityError("Identity is revoked")
        if document.status != IdentityStatus.ACTIVE:
            raise IdentityError("Only active identities can be suspended")
        return await self._set_status(document, IdentityStatus.SUSPENDED, reason, "suspend")

    async def reinstate(self, dsid: str, actor_id: str | None = None) -> DSIDDocument:
        document = self._require(dsid)
        self._check_owner(document, actor_id)
        if document.is_revoked:
            raise RevokedIdentityError("Revoked identities cannot be reinstated")
        if document.status != IdentityStatus.SUSPENDED:
            raise IdentityError("Only suspended identities can be reinstated")
        return await self._set_status(document, IdentityStatus.ACTIVE, None, "reinstate")

    async def revoke(self, dsid: str, reason: str, actor_id: str | None = None) -> DSIDDocument:
        """Permanently revoke an identity."""
        document = self._require(dsid)
        self._check_owner(document, actor_id)
        if document.is_revoked:
            raise RevokedIdentityError("Identity is already revoked")
        self._challenges.pop(dsid, None)
        return await self._set_status(document, IdentityStatus.REVOKED, reason, "revoke")

    async def _set_status(
        self,
        document: DSIDDocument,
        status: IdentityStatus,
        reason: str | None,
        action: str,
    ) -> DSIDDocument:
        await self._chain.publish(
            IdentityRecord(action=action, dsid=document.dsid, payload={"reason": reason})
        )
        document.status = status
        document.status_reason = reason
        document.updated_at = utc_now()

        logger.info("identity_status_changed", dsid=document.dsid, status=status.value, reason=reason)
        event_type = {
            "suspend": EventType.IDENTITY_SUSPENDED,
            "reinstate": EventType.IDENTITY_REINSTATED,
            "revoke": EventType.IDENTITY_REVOKED,
        }[action]
        await self._after_change(action, document, event_type)
        return document

    async def _after_change(self, action: str, document: DSIDDocument, event_type: EventType) -> None:
        if self._ledger is not None:
            await self._ledger.append(
                LedgerEntryType.IDENTITY_EVENT,
                actor=document.owner_id,
                payload={"action": action, "dsid": document.dsid, "status": document.status.value},
            )
        for listener in self._listeners:
            await listener(action, document)
        if self._event_bus is not None:
            await self._event_bus.publish(
                event_type,
                {"dsid": document.dsid, "owner_id": document.owner_id, "action": action},
                source="service:identity",
            )

    def get_stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for document in self._documents.values():
            by_status[document.status.value] = by_status.get(document.status.value, 0) + 1
        return {
            "identities": len(self._documents),
            "verified": sum(1 for d in self._documents.values() if d.verified),
            "by_status": by_status,
            "pending_challenges": len(self._challenges),
        }
