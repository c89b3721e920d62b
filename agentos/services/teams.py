"""
AgentOS Team Orchestrator

Runs a group of agents under one of four coordination modes:

- Sequential: each member works on the previous member's output
- Parallel: every member works on the input at once
- Hierarchical: a leader plans, workers execute, the leader synthesizes
- Collaborative: members take turns on a shared transcript until one
  declares the final answer or the round limit is reached

Each member step is an ordinary runtime session, so trust tiers, sandbox
permissions and licenses apply to team work exactly as to single runs.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import structlog

from agentos.models.agent import AgentDefinition, AgentStatus
from agentos.models.base import utc_now
from agentos.models.events import EventType
from agentos.models.ledger import LedgerEntryType
from agentos.models.session import SessionStatus
from agentos.models.team import (
    FailurePolicy,
    MemberResult,
    Team,
    TeamMode,
    TeamRun,
    TeamRunStatus,
)
from agentos.models.trust import TrustEventType
from agentos.monitoring import log_duration

if TYPE_CHECKING:
    from agentos.kernel.event_system import EventBus
    from agentos.services.agents import AgentRegistry
    from agentos.services.ledger import LedgerService
    from agentos.services.marketplace import MarketplaceService
    from agentos.services.runtime import RuntimeService
    from agentos.services.trust import TrustService

logger = structlog.get_logger(__name__)

FINAL_MARKER = "FINAL:"


def parse_plan(text: str, worker_ids: list[str]) -> list[tuple[str, str]]:
    """
    Read a leader's plan: {"assignments": [{"agent_id": ..., "task": ...}]}.

    Unknown agent ids are ignored and each worker keeps only its first
    assignment. Returns an empty list when nothing usable was found.
    """
    content = text.strip()
    if content.startswith("```"):
        lines = content.split("\n")
        end = -1 if lines[-1].strip().startswith("```") else len(lines)
        content = "\n".join(lines[1:end]).strip()
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return []
    if not isinstance(data, dict) or not isinstance(data.get("assignments"), list):
        return []

    plan: dict[str, str] = {}
    for item in data["assignments"]:
        if not isinstance(item, dict):
            continue
        agent_id, task = item.get("agent_id"), item.get("task")
        if agent_id in worker_ids and isinstance(task, str) and task.strip() and agent_id not in plan:
            plan[agent_id] = task.strip()
    return list(plan.items())


class TeamService:
    """
    Creates teams and executes team runs.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        runtime: RuntimeService,
        trust: TrustService,
        ledger: LedgerService | None = None,
        event_bus: EventBus | None = None,
        marketplace: MarketplaceService | None = None,
        max_parallel_limit: int = 8,
        max_rounds_limit: int = 5,
    ):
        self._registry = registry
        self._runtime = runtime
        self._trust = trust
        self._ledger = ledger
        self._event_bus = event_bus
        self._marketplace = marketplace
        self._max_parallel_limit = max_parallel_limit
        self._max_rounds_limit = max_rounds_limit

        self._teams: dict[str, Team] = {}
        self._runs: dict[str, TeamRun] = {}
        self._lock = asyncio.Lock()

    # =========================================================================
    # Teams
    # =========================================================================

    async def create_team(
        self,
        owner_id: str,
        name: str,
        mode: TeamMode,
        member_agent_ids: list[str],
        leader_agent_id: str | None = None,
        failure_policy: FailurePolicy = FailurePolicy.CONTINUE,
        max_rounds: int = 3,
        max_parallel: int = 4,
        description: str = "",
    ) -> Team:
        """
        Create a team after checking every agent.

        Raises:
            ValueError: Invalid composition, unknown or inactive agent
            PermissionError: Agent neither owned by nor licensed to the owner
            InsufficientTrustError: Member cannot join or leader cannot lead
        """
        team = Team(
            name=name,
            owner_id=owner_id,
            mode=mode,
            member_agent_ids=member_agent_ids,
            leader_agent_id=leader_agent_id,
            failure_policy=failure_policy,
            max_rounds=min(max_rounds, self._max_rounds_limit),
            max_parallel=min(max_parallel, self._max_parallel_limit),
            description=description,
        )

        for agent_id in team.member_agent_ids:
            agent = await self._check_agent(agent_id, owner_id)
            await self._trust.require(agent.dsid, "can_join_teams")
        if team.leader_agent_id:
            leader = await self._check_agent(team.leader_agent_id, owner_id)
            await self._trust.require(leader.dsid, "can_lead_teams")

        async with self._lock:
            self._teams[team.id] = team

        logger.info(
            "team_created",
            team_id=team.id,
            mode=team.mode.value,
            members=len(team.member_agent_ids),
        )
        if self._event_bus is not None:
            await self._event_bus.publish(
                EventType.TEAM_CREATED,
                {"team_id": team.id, "owner_id": owner_id, "mode": team.mode.value},
                source="service:teams",
            )
        return team

    async def _check_agent(self, agent_id: str, owner_id: str) -> AgentDefinition:
        agent = await self._registry.get_agent(agent_id)
        if agent is None:
            raise ValueError(f"Agent not found: {agent_id}")
        if agent.status != AgentStatus.ACTIVE:
            raise ValueError(f"Agent is not active: {agent_id}")
        if agent.owner_id != owner_id:
            licensed = (
                self._marketplace is not None
                and await self._marketplace.check_access(owner_id, agent_id) is not None
            )
            if not licensed:
                raise PermissionError(f"No access to agent: {agent_id}")
        return agent

    async def get_team(self, team_id: str) -> Team | None:
        return self._teams.get(team_id)

    async def list_teams(self, owner_id: str | None = None) -> list[Team]:
        return [t for t in self._teams.values() if owner_id is None or t.owner_id == owner_id]

    async def delete_team(self, team_id: str, owner_id: str) -> None:
        team = self._teams.get(team_id)
        if team is None:
            raise ValueError("Team not found")
        if team.owner_id != owner_id:
            raise PermissionError("Not the owner of this team")
        async with self._lock:
            del self._teams[team_id]
        logger.info("team_deleted", team_id=team_id)

    async def get_run(self, run_id: str) -> TeamRun | None:
        return self._runs.get(run_id)

    async def list_runs(self, team_id: str, limit: int = 50) -> list[TeamRun]:
        runs = [r for r in reversed(self._runs.values()) if r.team_id == team_id]
        return runs[:limit]

    # =========================================================================
    # Runs
    # =========================================================================

    async def run_team(self, team_id: str, caller_id: str, input_text: str) -> TeamRun:
        """Execute a team on an input and return the finished run."""
        team = self._teams.get(team_id)
        if team is None:
            raise ValueError("Team not found")
        if team.owner_id != caller_id:
            raise PermissionError("Only the team owner can run it")
        if not input_text or not input_text.strip():
            raise ValueError("Input is required")

        run = TeamRun(team_id=team.id, caller_id=caller_id, mode=team.mode, input=input_text)
        self._runs[run.id] = run

        logger.info("team_run_started", team_id=team.id, run_id=run.id, mode=team.mode.value)
        if self._event_bus is not None:
            await self._event_bus.publish(
                EventType.TEAM_RUN_STARTED,
                {"team_id": team.id, "run_id": run.id, "mode": team.mode.value},
                source="service:teams",
            )

        handlers = {
            TeamMode.SEQUENTIAL: self._run_sequential,
            TeamMode.PARALLEL: self._run_parallel,
            TeamMode.HIERARCHICAL: self._run_hierarchical,
            TeamMode.COLLABORATIVE: self._run_collaborative,
        }
        try:
            with log_duration(logger, "team_run_handler", run_id=run.id, mode=team.mode.value):
                await handlers[team.mode](team, run)
        except Exception as e:
            run.status = TeamRunStatus.FAILED
            run.error = f"team run aborted: {e}"
            run.completed_at = utc_now()
            logger.exception("team_run_aborted", team_id=team.id, run_id=run.id)
            raise

        if run.status == TeamRunStatus.RUNNING:
            run.status = self._overall_status(team, run)
        run.completed_at = utc_now()

        await self._finish(team, run)
        return run

    async def _run_member(
        self,
        run: TeamRun,
        agent_id: str,
        task: str,
        role: str = "member",
        round_number: int | None = None,
        record: bool = True,
    ) -> MemberResult:
        try:
            session = await self._runtime.execute(agent_id, run.caller_id, task)
        except (ValueError, PermissionError) as e:
            result = MemberResult(
                agent_id=agent_id, role=role, task=task, succeeded=False,
                error=str(e), round=round_number,
            )
        else:
            succeeded = session.status == SessionStatus.COMPLETED
            result = MemberResult(
                agent_id=agent_id,
                role=role,
                session_id=session.id,
                task=task,
                succeeded=succeeded,
                output=session.output if succeeded else None,
                error=None if succeeded else (session.error or session.status.value),
                round=round_number,
            )
        if record:
            run.member_results.append(result)
        logger.debug(
            "team_member_finished",
            run_id=run.id,
            agent_id=agent_id,
            role=role,
            succeeded=result.succeeded,
        )
        return result

    async def _run_batch(
        self,
        team: Team,
        run: TeamRun,
        assignments: list[tuple[str, str]],
    ) -> list[MemberResult]:
        """Run (agent_id, task) pairs concurrently, bounded by max_parallel."""
        semaphore = asyncio.Semaphore(team.max_parallel)

        async def bounded(agent_id: str, task: str) -> MemberResult:
            async with semaphore:
                return await self._run_member(run, agent_id, task, record=False)

        results = list(await asyncio.gather(*(bounded(a, t) for a, t in assignments)))
        run.member_results.extend(results)
        return results

    async def _run_sequential(self, team: Team, run: TeamRun) -> None:
        current = run.input
        output: str | None = None
        for agent_id in team.member_agent_ids:
            result = await self._run_member(run, agent_id, current)
            if result.succeeded:
                current = output = result.output
            elif team.failure_policy == FailurePolicy.FAIL_FAST:
                run.status = TeamRunStatus.FAILED
                run.error = f"member {agent_id} failed: {result.error}"
                break
        run.output = output

    async def _run_parallel(self, team: Team, run: TeamRun) -> None:
        results = await self._run_batch(
            team, run, [(agent_id, run.input) for agent_id in team.member_agent_ids]
        )
        run.output = await self._join_outputs(results)
        failed = [r for r in results if not r.succeeded]
        if failed and team.failure_policy == FailurePolicy.FAIL_FAST:
            run.status = TeamRunStatus.FAILED
            run.error = f"member {failed[0].agent_id} failed: {failed[0].error}"

    async def _run_hierarchical(self, team: Team, run: TeamRun) -> None:
        workers = team.member_agent_ids
        plan_result = await self._run_member(
            run, team.leader_agent_id, await self._plan_prompt(team, run.input), role="leader:plan"
        )
        if not plan_result.succeeded:
            run.status = TeamRunStatus.FAILED
            run.error = f"leader failed to plan: {plan_result.error}"
            return

        assignments = parse_plan(plan_result.output or "", workers)
        if not assignments:
            assignments = [(agent_id, run.input) for agent_id in workers]

        results = await self._run_batch(team, run, assignments)
        succeeded = [r for r in results if r.succeeded]
        if not succeeded or (len(succeeded) < len(results) and team.failure_policy == FailurePolicy.FAIL_FAST):
            failed = next(r for r in results if not r.succeeded)
            run.status = TeamRunStatus.FAILED
            run.error = f"member {failed.agent_id} failed: {failed.error}"
            return

        synthesis_prompt = (
            f"Original task:\n{run.input}\n\n"
            f"Results from your team:\n\n{await self._join_outputs(results)}\n\n"
            "Combine these results into the final answer."
        )
        synthesis = await self._run_member(
            run, team.leader_agent_id, synthesis_prompt, role="leader:synthesis"
        )
        if not synthesis.succeeded:
            run.status = TeamRunStatus.FAILED
            run.error = f"leader failed to synthesize: {synthesis.error}"
            return
        run.output = synthesis.output

    async def _plan_prompt(self, team: Team, task: str) -> str:
        lines = []
        for agent_id in team.member_agent_ids:
            agent = await self._registry.get_agent(agent_id)
            summary = f"{agent.name}: {agent.description}" if agent and agent.description else (
                agent.name if agent else agent_id
            )
            lines.append(f"- {agent_id}: {summary}")
        workers = "\n".join(lines)
        return (
            f"You lead a team of agents.\nWorkers:\n{workers}\n\n"
            f"Task:\n{task}\n\n"
            'Reply with only a JSON object: {"assignments": [{"agent_id": "<worker id>", "task": "<subtask>"}]}'
        )

    async def _run_collaborative(self, team: Team, run: TeamRun) -> None:
        transcript: list[str] = []
        last_contribution: str | None = None

        for round_number in range(1, team.max_rounds + 1):
            for agent_id in team.member_agent_ids:
                discussion = "\n\n".join(transcript) if transcript else "(no contributions yet)"
                prompt = (
                    f"Task:\n{run.input}\n\n"
                    f"Discussion so far:\n{discussion}\n\n"
                    f"Add your contribution. If the team has reached the answer, "
                    f"start your reply with {FINAL_MARKER} followed by the final answer."
                )
                result = await self._run_member(run, agent_id, prompt, round_number=round_number)
                if not result.succeeded:
                    if team.failure_policy == FailurePolicy.FAIL_FAST:
                        run.status = TeamRunStatus.FAILED
                        run.error = f"member {agent_id} failed: {result.error}"
                        run.output = last_contribution
                        return
                    continue

                text = (result.output or "").strip()
                if text.startswith(FINAL_MARKER):
                    run.output = text[len(FINAL_MARKER):].strip()
                    return
                last_contribution = text
                transcript.append(f"[{await self._agent_name(agent_id)}] {text}")

        run.output = last_contribution

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _agent_name(self, agent_id: str) -> str:
        agent = await self._registry.get_agent(agent_id)
        return agent.name if agent else agent_id

    async def _join_outputs(self, results: list[MemberResult]) -> str | None:
        parts = [
            f"[{await self._agent_name(r.agent_id)}] {r.output}"
            for r in results if r.succeeded
        ]
        return "\n\n".join(parts) if parts else None

    @staticmethod
    def _overall_status(team: Team, run: TeamRun) -> TeamRunStatus:
        results = run.member_results
        succeeded = sum(1 for r in results if r.succeeded)
        if succeeded == 0:
            return TeamRunStatus.FAILED
        if succeeded == len(results):
            return TeamRunStatus.COMPLETED
        return TeamRunStatus.PARTIAL

    async def _finish(self, team: Team, run: TeamRun) -> None:
        if run.status != TeamRunStatus.FAILED:
            credited: set[str] = set()
            for result in run.member_results:
                if not result.succeeded or result.agent_id in credited:
                    continue
                credited.add(result.agent_id)
                agent = await self._registry.get_agent(result.agent_id)
                if agent is not None:
                    await self._trust.record_event(
                        agent.dsid,
                        TrustEventType.TEAM_RUN_COMPLETED,
                        reason=f"team run {run.id}",
                    )

        payload: dict[str, Any] = {
            "team_id": team.id,
            "run_id": run.id,
            "mode": team.mode.value,
            "status": run.status.value,
            "members": len({r.agent_id for r in run.member_results}),
            "succeeded": sum(1 for r in run.member_results if r.succeeded),
        }
        if self._ledger is not None:
            await self._ledger.append(LedgerEntryType.TEAM_RUN, actor=team.owner_id, payload=payload)

        logger.info("team_run_completed", **payload)
        if self._event_bus is not None:
            await self._event_bus.publish(
                EventType.TEAM_RUN_COMPLETED, payload, source="service:teams"
            )
