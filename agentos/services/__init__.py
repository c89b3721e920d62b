"""
AgentOS Services

Identity, trust, ledger, agents, runtime, teams and marketplace.
"""

from agentos.services.agents import AgentRegistry
from agentos.services.identity import (
    IdentityError,
    IdentityService,
    InMemoryIdentityChain,
    RevokedIdentityError,
    RpcIdentityChain,
    create_identity_chain,
)
from agentos.services.ledger import LedgerService
from agentos.services.llm import (
    LLMConfig,
    LLMConfigurationError,
    LLMMessage,
    LLMResponse,
    LLMService,
    MockLLMProvider,
)
from agentos.services.marketplace import MarketplaceService
from agentos.services.runtime import RuntimeService
from agentos.services.teams import TeamService
from agentos.services.tools import MemoryStore, build_default_tools
from agentos.services.trust import InsufficientTrustError, TrustService

__all__ = [
    "AgentRegistry",
    "IdentityError",
    "IdentityService",
    "InMemoryIdentityChain",
    "RevokedIdentityError",
    "RpcIdentityChain",
    "create_identity_chain",
    "LedgerService",
    "LLMConfig",
    "LLMConfigurationError",
    "LLMMessage",
    "LLMResponse",
    "LLMService",
    "MockLLMProvider",
    "MarketplaceService",
    "RuntimeService",
    "TeamService",
    "MemoryStore",
    "build_default_tools",
    "InsufficientTrustError",
    "TrustService",
]
