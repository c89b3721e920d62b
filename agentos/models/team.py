"""
Team Models

Multi-agent teams and the record of each team run.
"""

from datetime import datetime
from enum import Enum

from pydantic import Field, model_validator

from agentos.models.base import AgentOSModel, generate_id, utc_now


class TeamMode(str, Enum):
    """How members coordinate."""
    HIERARCHICAL = "hierarchical"    # Leader plans, workers execute, leader synthesizes
    SEQUENTIAL = "sequential"        # Output of one member is input to the next
    PARALLEL = "parallel"            # All members work on the input concurrently
    COLLABORATIVE = "collaborative"  # Round-robin discussion on a shared transcript


class FailurePolicy(str, Enum):
    """What a run does when a member fails."""
    FAIL_FAST = "fail_fast"
    CONTINUE = "continue"


class Team(AgentOSModel):
    """A named group of agents working under one coordination mode."""

    id: str = Field(default_factory=generate_id)
    name: str = Field(min_length=1, max_length=120)
    owner_id: str
    mode: TeamMode
    member_agent_ids: list[str] = Field(min_length=1, max_length=32)
    leader_agent_id: str | None = None
    failure_policy: FailurePolicy = Field(default=FailurePolicy.CONTINUE)
    max_rounds: int = Field(default=3, ge=1, le=20)
    max_parallel: int = Field(default=4, ge=1, le=64)
    description: str = ""
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_members(self) -> "Team":
        if len(set(self.member_agent_ids)) != len(self.member_agent_ids):
            raise ValueError("Duplicate team members")
        if self.mode == TeamMode.HIERARCHICAL:
            if not self.leader_agent_id:
                raise ValueError("Hierarchical teams require a leader")
            if self.leader_agent_id in self.member_agent_ids:
                raise ValueError("Leader must not also be a worker")
        elif self.leader_agent_id is not None:
            raise ValueError("Only hierarchical teams have a leader")
        return self


class TeamRunStatus(str, Enum):
    """Outcome of a team run."""
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class MemberResult(AgentOSModel):
    """What one member did during a run."""

    agent_id: str
    role: str = Field(default="member", description="member, leader:plan or leader:synthesis")
    session_id: str | None = None
    task: str = ""
    succeeded: bool
    output: str | None = None
    error: str | None = None
    round: int | None = None


class TeamRun(AgentOSModel):
    """A single execution of a team."""

    id: str = Field(default_factory=generate_id)
    team_id: str
    caller_id: str
    mode: TeamMode
    input: str
    status: TeamRunStatus = Field(default=TeamRunStatus.RUNNING)
    member_results: list[MemberResult] = Field(default_factory=list)
    output: str | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
