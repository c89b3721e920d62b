"""
AgentOS Agent Registry

Agent definitions bound to DSIDs.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import structlog

from agentos.models.agent import AgentDefinition, AgentStatus
from agentos.models.base import utc_now
from agentos.models.events import EventType

if TYPE_CHECKING:
    from agentos.kernel.event_system import EventBus
    from agentos.kernel.sandbox import ToolSandbox
    from agentos.services.identity import IdentityService

logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = frozenset({"name", "description", "system_prompt", "tools", "max_steps", "metadata"})


class AgentRegistry:
    """
    Stores agent definitions.

    An agent acts under exactly one DSID owned by the same principal.
    """

    def __init__(
        self,
        identity: IdentityService,
        sandbox: ToolSandbox,
        event_bus: EventBus | None = None,
    ):
        self._identity = identity
        self._sandbox = sandbox
        self._event_bus = event_bus
        self._agents: dict[str, AgentDefinition] = {}
        self._lock = asyncio.Lock()

    def _check_tools(self, tools: list[str]) -> list[str]:
        unknown = [t for t in tools if not self._sandbox.has_tool(t)]
        if unknown:
            raise ValueError(f"Unknown tools: {', '.join(sorted(unknown))}")
        return list(dict.fromkeys(tools))

    async def create_agent(
        self,
        owner_id: str,
        dsid: str,
        name: str,
        system_prompt: str | None = None,
        tools: list[str] | None = None,
        description: str = "",
        max_steps: int = 10,
        metadata: dict[str, Any] | None = None,
    ) -> AgentDefinition:
        document = await self._identity.resolve(dsid)
        if document is None:
            raise ValueError("Identity not found")
        if document.owner_id != owner_id:
            raise PermissionError("Identity is owned by another principal")
        if document.is_revoked:
            raise ValueError("Identity is revoked")

        agent = AgentDefinition(
            dsid=dsid,
            owner_id=owner_id,
            name=name,
            description=description,
            tools=self._check_tools(tools or []),
            max_steps=max_steps,
            metadata=metadata or {},
            **({"system_prompt": system_prompt} if system_prompt else {}),
        )
        async with self._lock:
            self._agents[agent.id] = agent

        logger.info("agent_created", agent_id=agent.id, dsid=dsid, owner_id=owner_id)
        if self._event_bus is not None:
            await self._event_bus.publish(
                EventType.AGENT_CREATED,
                {"agent_id": agent.id, "dsid": dsid, "owner_id": owner_id},
                source="service:agents",
            )
        return agent

    async def get_agent(self, agent_id: str) -> AgentDefinition | None:
        return self._agents.get(agent_id)

    async def list_agents(
        self,
        owner_id: str | None = None,
        status: AgentStatus | None = None,
        dsid: str | None = None,
    ) -> list[AgentDefinition]:
        return [
            a for a in self._agents.values()
            if (owner_id is None or a.owner_id == owner_id)
            and (status is None or a.status == status)
            and (dsid is None or a.dsid == dsid)
        ]

    def _require_owned(self, agent_id: str, owner_id: str) -> AgentDefinition:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise ValueError("Agent not found")
        if agent.owner_id != owner_id:
            raise PermissionError("Not the owner of this agent")
        return agent

    async def update_agent(self, agent_id: str, owner_id: str, **updates: Any) -> AgentDefinition:
        """Update definition fields; the version is bumped on every change."""
        agent = self._require_owned(agent_id, owner_id)
        if agent.status == AgentStatus.ARCHIVED:
            raise ValueError("Archived agents cannot be updated")

        invalid = set(updates) - UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(invalid))}")

        changes = {k: v for k, v in updates.items() if v is not None}
        if "tools" in changes:
            changes["tools"] = self._check_tools(changes["tools"])
        if not changes:
            return agent

        for field_name, value in changes.items():
            setattr(agent, field_name, value)
        agent.version += 1
        agent.updated_at = utc_now()

        logger.info("agent_updated", agent_id=agent_id, fields=sorted(changes), version=agent.version)
        if self._event_bus is not None:
            await self._event_bus.publish(
                EventType.AGENT_UPDATED,
                {"agent_id": agent_id, "fields": sorted(changes), "version": agent.version},
                source="service:agents",
            )
        return agent

    async def set_status(self, agent_id: str, owner_id: str, status: AgentStatus) -> AgentDefinition:
        """Pause, activate or archive an agent. Archiving is final."""
        agent = self._require_owned(agent_id, owner_id)
        if agent.status == AgentStatus.ARCHIVED and status != AgentStatus.ARCHIVED:
            raise ValueError("Archived agents cannot be reactivated")
        if status == AgentStatus.ACTIVE:
            document = await self._identity.resolve(agent.dsid)
            if document is None or document.is_revoked:
                raise ValueError("Identity is revoked")

        agent.status = status
        agent.updated_at = utc_now()
        logger.info("agent_status_changed", agent_id=agent_id, status=status.value)
        return agent

    def count(self) -> int:
        return len(self._agents)
