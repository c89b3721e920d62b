"""
Team API Routes

Multi-agent teams and team runs.
"""

from fastapi import APIRouter, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from agentos.api.dependencies import PrincipalDep, TeamsDep, not_found, service_errors
from agentos.models.team import FailurePolicy, Team, TeamMode, TeamRun

router = APIRouter()


class CreateTeamRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    mode: TeamMode
    member_agent_ids: list[str] = Field(min_length=1, max_length=32)
    leader_agent_id: str | None = None
    failure_policy: FailurePolicy = FailurePolicy.CONTINUE
    max_rounds: int = Field(default=3, ge=1, le=20)
    max_parallel: int = Field(default=4, ge=1, le=64)
    description: str = Field(default="", max_length=2000)


class RunTeamRequest(BaseModel):
    input: str = Field(min_length=1, max_length=20000)


async def _own_team(team_id: str, principal: str, teams: TeamsDep) -> Team:
    team = await teams.get_team(team_id)
    if team is None:
        raise not_found("Team")
    if team.owner_id != principal:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not the owner of this team")
    return team


@router.post("", response_model=Team, status_code=status.HTTP_201_CREATED)
async def create_team(request: CreateTeamRequest, principal: PrincipalDep, teams: TeamsDep) -> Team:
    with service_errors():
        return await teams.create_team(owner_id=principal, **request.model_dump())


@router.get("", response_model=list[Team])
async def list_my_teams(principal: PrincipalDep, teams: TeamsDep) -> list[Team]:
    return await teams.list_teams(owner_id=principal)


@router.get("/{team_id}", response_model=Team)
async def get_team(team_id: str, principal: PrincipalDep, teams: TeamsDep) -> Team:
    return await _own_team(team_id, principal, teams)


@router.delete("/{team_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_team(team_id: str, principal: PrincipalDep, teams: TeamsDep) -> Response:
    with service_errors():
        await teams.delete_team(team_id, principal)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{team_id}/run", response_model=TeamRun)
async def run_team(
    team_id: str,
    request: RunTeamRequest,
    principal: PrincipalDep,
    teams: TeamsDep,
) -> TeamRun:
    """Run the team on an input and return the finished run."""
    with service_errors():
        return await teams.run_team(team_id, principal, request.input)


@router.get("/{team_id}/runs", response_model=list[TeamRun])
async def list_team_runs(
    team_id: str,
    principal: PrincipalDep,
    teams: TeamsDep,
    limit: int = Query(default=50, ge=1, le=200),
) -> list[TeamRun]:
    await _own_team(team_id, principal, teams)
    return await teams.list_runs(team_id, limit=limit)
