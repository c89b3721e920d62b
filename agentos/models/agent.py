"""
Agent Models

Agent definitions and the tool specifications they may call.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from agentos.models.base import AgentOSModel, generate_id, utc_now


class ToolPermission(str, Enum):
    """
    Permission a tool requires.

    Agents only get the permissions their DSID's trust tier allows.
    """
    COMPUTE = "compute"              # Pure computation
    MEMORY_READ = "memory_read"      # Read the agent's memory store
    MEMORY_WRITE = "memory_write"    # Write the agent's memory store
    NETWORK = "network"              # Outbound HTTP
    LEDGER_WRITE = "ledger_write"    # Write to the operational ledger


class ToolSpec(AgentOSModel):
    """Description of a tool as shown to the model."""

    name: str = Field(pattern=r"^[a-z][a-z0-9_]{0,63}$")
    description: str
    permission: ToolPermission
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        description="Argument name -> short description",
    )


class AgentStatus(str, Enum):
    """Lifecycle of an agent definition."""
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class AgentDefinition(AgentOSModel):
    """
    A runnable agent bound to a DSID.
    """

    id: str = Field(default_factory=generate_id)
    dsid: str = Field(description="Identity the agent acts under")
    owner_id: str

    name: str = Field(min_length=1, max_length=120)
    description: str = ""
    system_prompt: str = Field(default="You are a helpful agent.", max_length=20000)
    tools: list[str] = Field(default_factory=list)
    max_steps: int = Field(default=10, ge=1, le=100)

    status: AgentStatus = Field(default=AgentStatus.ACTIVE)
    version: int = Field(default=1, ge=1)

    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
