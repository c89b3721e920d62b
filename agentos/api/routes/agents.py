"""
Agent API Routes

Agent definitions and the tool catalog.
"""

from typing import Any

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from agentos.api.dependencies import (
    AppDep,
    PrincipalDep,
    RegistryDep,
    not_found,
    service_errors,
)
from agentos.models.agent import AgentDefinition, AgentStatus, ToolSpec

router = APIRouter()


# ============================================================================
# Request Models
# ============================================================================

class CreateAgentRequest(BaseModel):
    dsid: str
    name: str = Field(min_length=1, max_length=120)
    system_prompt: str | None = Field(default=None, max_length=20000)
    tools: list[str] = Field(default_factory=list)
    description: str = Field(default="", max_length=2000)
    max_steps: int = Field(default=10, ge=1, le=100)
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateAgentRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    system_prompt: str | None = Field(default=None, max_length=20000)
    tools: list[str] | None = None
    description: str | None = Field(default=None, max_length=2000)
    max_steps: int | None = Field(default=None, ge=1, le=100)
    metadata: dict[str, Any] | None = None


class AgentStatusRequest(BaseModel):
    status: AgentStatus


# ============================================================================
# Endpoints
# ============================================================================

@router.post("", response_model=AgentDefinition, status_code=status.HTTP_201_CREATED)
async def create_agent(
    request: CreateAgentRequest,
    principal: PrincipalDep,
    registry: RegistryDep,
) -> AgentDefinition:
    with service_errors():
        return await registry.create_agent(
            owner_id=principal,
            dsid=request.dsid,
            name=request.name,
            system_prompt=request.system_prompt,
            tools=request.tools,
            description=request.description,
            max_steps=request.max_steps,
            metadata=request.metadata,
        )


@router.get("", response_model=list[AgentDefinition])
async def list_my_agents(
    principal: PrincipalDep,
    registry: RegistryDep,
    status_filter: AgentStatus | None = Query(default=None, alias="status"),
) -> list[AgentDefinition]:
    return await registry.list_agents(owner_id=principal, status=status_filter)


@router.get("/tools", response_model=list[ToolSpec])
async def list_tools(app: AppDep) -> list[ToolSpec]:
    """Tools that agents may enable."""
    return app.sandbox.list_specs()


@router.get("/{agent_id}", response_model=AgentDefinition)
async def get_agent(agent_id: str, principal: PrincipalDep, registry: RegistryDep) -> AgentDefinition:
    agent = await registry.get_agent(agent_id)
    if agent is None:
        raise not_found("Agent")
    return agent


@router.patch("/{agent_id}", response_model=AgentDefinition)
async def update_agent(
    agent_id: str,
    request: UpdateAgentRequest,
    principal: PrincipalDep,
    registry: RegistryDep,
) -> AgentDefinition:
    updates = request.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    with service_errors():
        return await registry.update_agent(agent_id, principal, **updates)


@router.post("/{agent_id}/status", response_model=AgentDefinition)
async def set_agent_status(
    agent_id: str,
    request: AgentStatusRequest,
    principal: PrincipalDep,
    registry: RegistryDep,
) -> AgentDefinition:
    """Pause, activate or archive an agent."""
    with service_errors():
        return await registry.set_status(agent_id, principal, request.status)
