"""
AgentOS - Test Fixtures

Shared pytest fixtures for all test modules.
"""

from __future__ import annotations

import os

import pytest

# =============================================================================
# TEST ENVIRONMENT SETUP
# =============================================================================
# TEST-ONLY credentials. APP_ENV="testing" keeps them out of production.

_current_env = os.environ.get("APP_ENV", "")
if _current_env == "production":
    raise RuntimeError(
        "SECURITY ERROR: Test fixtures cannot be loaded in production environment. "
        "Do not import conftest.py in production code."
    )

os.environ["APP_ENV"] = "testing"
os.environ.setdefault(
    "JWT_SECRET_KEY", "test-secret-key-at-least-32-characters-long-for-testing"
)  # TEST ONLY
os.environ.setdefault("LLM_PROVIDER", "mock")
os.environ.setdefault("SENTRY_DSN", "")

from fastapi.testclient import TestClient  # noqa: E402

from agentos.api.app import AgentOSApp, create_app  # noqa: E402
from agentos.kernel.event_system import EventBus  # noqa: E402
from agentos.kernel.sandbox import ToolSandbox  # noqa: E402
from agentos.models.agent import AgentDefinition  # noqa: E402
from agentos.models.base import TrustTier  # noqa: E402
from agentos.models.identity import DSIDDocument  # noqa: E402
from agentos.models.trust import TrustEventType  # noqa: E402
from agentos.security.integrity import sign_message  # noqa: E402
from agentos.services.agents import AgentRegistry  # noqa: E402
from agentos.services.identity import IdentityService, InMemoryIdentityChain  # noqa: E402
from agentos.services.ledger import LedgerService  # noqa: E402
from agentos.services.llm import LLMConfig, LLMService, MockLLMProvider  # noqa: E402
from agentos.services.marketplace import MarketplaceService  # noqa: E402
from agentos.services.runtime import RuntimeService  # noqa: E402
from agentos.services.teams import TeamService  # noqa: E402
from agentos.services.tools import MemoryStore, build_default_tools  # noqa: E402
from agentos.services.trust import TrustService  # noqa: E402


# =============================================================================
# Service Platform
# =============================================================================


class Platform:
    """Every service wired together the same way AgentOSApp wires them."""

    def __init__(self, llm_provider: MockLLMProvider, block_size: int = 32):
        self.event_bus = EventBus(retry_delay_seconds=0)
        self.chain = InMemoryIdentityChain()
        self.ledger = LedgerService(chain=self.chain, block_size=block_size, event_bus=self.event_bus)
        self.identity = IdentityService(self.chain, event_bus=self.event_bus, ledger=self.ledger)
        self.trust = TrustService(self.identity, ledger=self.ledger, event_bus=self.event_bus)
        self.memory = MemoryStore()
        self.sandbox = ToolSandbox(build_default_tools(self.ledger, self.memory))
        self.registry = AgentRegistry(self.identity, self.sandbox, event_bus=self.event_bus)
        self.marketplace = MarketplaceService(
            self.registry, self.trust, ledger=self.ledger, event_bus=self.event_bus
        )
        self.llm_provider = llm_provider
        self.llm = LLMService(LLMConfig(max_retries=1, retry_backoff_seconds=0), provider=llm_provider)
        self.runtime = RuntimeService(
            self.registry,
            self.identity,
            self.trust,
            self.sandbox,
            self.llm,
            ledger=self.ledger,
            event_bus=self.event_bus,
            marketplace=self.marketplace,
        )
        self.teams = TeamService(
            self.registry,
            self.runtime,
            self.trust,
            ledger=self.ledger,
            event_bus=self.event_bus,
            marketplace=self.marketplace,
        )

    async def identity_at(
        self,
        owner_id: str,
        tier: TrustTier = TrustTier.T1,
        name: str = "agent",
    ) -> tuple[DSIDDocument, str]:
        """Register a DSID and raise it to the requested tier. Returns (document, private key)."""
        result = await self.identity.register(owner_id, name)
        dsid = result.document.dsid

        if tier >= TrustTier.T2:
            challenge = await self.identity.issue_challenge(dsid)
            await self.identity.complete_challenge(
                dsid, sign_message(challenge.nonce, result.private_key)
            )
        if tier >= TrustTier.T3:
            for _ in range(TrustService.TRUSTED_MIN_SESSIONS):
                await self.trust.record_event(dsid, TrustEventType.SESSION_COMPLETED)
            await self.trust.record_event(dsid, TrustEventType.MANUAL_ADJUSTMENT, delta=20)
        if tier == TrustTier.T4:
            await self.trust.certify(dsid, "governor")
        if tier == TrustTier.T0:
            await self.identity.suspend(dsid, "held for review")

        assert await self.trust.get_tier(dsid) == tier
        return result.document, result.private_key

    async def agent_at(
        self,
        owner_id: str,
        tier: TrustTier = TrustTier.T1,
        name: str = "agent",
        tools: list[str] | None = None,
        **kwargs,
    ) -> AgentDefinition:
        """Create an agent whose DSID sits at the requested tier."""
        document, _ = await self.identity_at(owner_id, tier, name=name)
        return await self.registry.create_agent(owner_id, document.dsid, name, tools=tools, **kwargs)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def llm_provider():
    """Scripted LLM; echoes the input unless responses are queued."""
    return MockLLMProvider()


@pytest.fixture
def platform(llm_provider):
    return Platform(llm_provider)


@pytest.fixture
def make_platform():
    """Factory for platforms around a custom LLM provider."""
    return Platform


# =============================================================================
# API
# =============================================================================


class Api:
    """Thin helper over the TestClient for common setup calls."""

    def __init__(self, client: TestClient):
        self.client = client

    def headers(self, principal: str, *roles: str) -> dict[str, str]:
        response = self.client.post(
            "/api/v1/auth/token", json={"principal_id": principal, "roles": list(roles)}
        )
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['access_token']}"}

    def identity(self, principal: str, name: str = "agent", verified: bool = True) -> dict:
        """Register a DSID; verified identities reach T2."""
        headers = self.headers(principal)
        response = self.client.post(
            "/api/v1/identity/register", json={"agent_name": name}, headers=headers
        )
        assert response.status_code == 201, response.text
        result = response.json()
        document = result["document"]
        if verified:
            dsid = document["dsid"]
            challenge = self.client.post(f"/api/v1/identity/{dsid}/challenge", headers=headers).json()
            response = self.client.post(
                f"/api/v1/identity/{dsid}/verify",
                json={"signature": sign_message(challenge["nonce"], result["private_key"])},
                headers=headers,
            )
            assert response.status_code == 200, response.text
            document = response.json()
        return document

    def agent(self, principal: str, name: str = "agent", verified: bool = True, **fields) -> dict:
        document = self.identity(principal, name=name, verified=verified)
        response = self.client.post(
            "/api/v1/agents",
            json={"dsid": document["dsid"], "name": name, **fields},
            headers=self.headers(principal),
        )
        assert response.status_code == 201, response.text
        return response.json()


@pytest.fixture
def api_app(llm_provider):
    return create_app(AgentOSApp(llm_provider=llm_provider))


@pytest.fixture
def client(api_app):
    with TestClient(api_app) as test_client:
        yield test_client


@pytest.fixture
def api(client):
    return Api(client)
