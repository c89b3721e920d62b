"""
Tests for the Team Orchestrator

Tests cover:
- Team creation checks (trust tiers, ownership, licenses)
- Sequential, parallel, hierarchical and collaborative runs
- Failure policies
- Trust credit and ledger records
- Plan parsing
"""

import asyncio
import json
import re

import pytest
from pydantic import ValidationError

from agentos.models.agent import AgentStatus
from agentos.models.base import TrustTier
from agentos.models.ledger import LedgerEntryType
from agentos.models.team import FailurePolicy, TeamMode, TeamRunStatus
from agentos.services.llm import MockLLMProvider
from agentos.services.teams import parse_plan
from agentos.services.trust import InsufficientTrustError


def _scripted(messages):
    """Behaviour keyed on the first word of the agent's system prompt."""
    system, task = messages[0].content, messages[1].content
    role = system.split()[0]
    if role == "UPPER":
        return task.upper()
    if role == "REVERSE":
        return task[::-1]
    if role == "TALKER":
        return "idea"
    if role == "FINALIZER":
        return "FINAL: done" if "[talker] idea" in task else "thinking"
    if role == "PLANNER":
        if task.startswith("You lead a team of agents."):
            workers = re.findall(r"^- (\S+): ", task, re.MULTILINE)
            tasks = ["alpha", "beta"]
            return json.dumps({
                "assignments": [
                    {"agent_id": agent_id, "task": tasks[i % 2]} for i, agent_id in enumerate(workers)
                ]
            })
        return task
    if role == "CONFUSED":
        return "no plan, sorry" if task.startswith("You lead") else task
    return task


@pytest.fixture
def platform(make_platform):
    return make_platform(MockLLMProvider(responder=_scripted))


class _TrackingProvider(MockLLMProvider):
    """Records how many completions are in flight at once."""

    def __init__(self):
        super().__init__(responder=_scripted)
        self.active = 0
        self.peak = 0

    async def complete(self, messages, max_tokens=None, temperature=None):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.01)
            return await super().complete(messages, max_tokens, temperature)
        finally:
            self.active -= 1


async def _member(platform, role: str, name: str, owner: str = "alice", tier: TrustTier = TrustTier.T2):
    return await platform.agent_at(owner, tier, name=name, system_prompt=f"{role} agent")


# =============================================================================
# Creation
# =============================================================================


class TestCreateTeam:
    """Composition and trust checks."""

    @pytest.mark.asyncio
    async def test_create(self, platform):
        a = await _member(platform, "UPPER", "upper")
        b = await _member(platform, "REVERSE", "reverse")

        team = await platform.teams.create_team("alice", "pipeline", TeamMode.SEQUENTIAL, [a.id, b.id])

        assert team.member_agent_ids == [a.id, b.id]
        assert await platform.teams.get_team(team.id) == team
        assert await platform.teams.list_teams(owner_id="alice") == [team]

    @pytest.mark.asyncio
    async def test_limits_are_clamped(self, platform):
        a = await _member(platform, "TALKER", "talker")
        team = await platform.teams.create_team(
            "alice", "chat", TeamMode.COLLABORATIVE, [a.id], max_rounds=20, max_parallel=64
        )
        assert team.max_rounds == 5
        assert team.max_parallel == 8

    @pytest.mark.asyncio
    async def test_member_needs_team_tier(self, platform):
        a = await _member(platform, "UPPER", "upper", tier=TrustTier.T1)
        with pytest.raises(InsufficientTrustError):
            await platform.teams.create_team("alice", "t", TeamMode.PARALLEL, [a.id])

    @pytest.mark.asyncio
    async def test_leader_needs_lead_tier(self, platform):
        leader = await _member(platform, "PLANNER", "lead", tier=TrustTier.T2)
        worker = await _member(platform, "UPPER", "upper")
        with pytest.raises(InsufficientTrustError):
            await platform.teams.create_team(
                "alice", "t", TeamMode.HIERARCHICAL, [worker.id], leader_agent_id=leader.id
            )

    @pytest.mark.asyncio
    async def test_foreign_agent_needs_license(self, platform):
        theirs = await _member(platform, "UPPER", "upper", owner="bob")
        with pytest.raises(PermissionError):
            await platform.teams.create_team("alice", "t", TeamMode.PARALLEL, [theirs.id])

        listing = await platform.marketplace.publish("bob", theirs.id, "Upper")
        await platform.marketplace.purchase(listing.id, "alice")
        team = await platform.teams.create_team("alice", "t", TeamMode.PARALLEL, [theirs.id])
        run = await platform.teams.run_team(team.id, "alice", "abc")

        assert run.output == "[upper] ABC"

    @pytest.mark.asyncio
    async def test_unknown_agent(self, platform):
        with pytest.raises(ValueError, match="Agent not found"):
            await platform.teams.create_team("alice", "t", TeamMode.PARALLEL, ["missing"])

    @pytest.mark.asyncio
    async def test_invalid_composition(self, platform):
        a = await _member(platform, "UPPER", "upper")
        with pytest.raises(ValidationError):
            await platform.teams.create_team("alice", "t", TeamMode.HIERARCHICAL, [a.id])
        with pytest.raises(ValidationError):
            await platform.teams.create_team("alice", "t", TeamMode.PARALLEL, [a.id, a.id])

    @pytest.mark.asyncio
    async def test_delete(self, platform):
        a = await _member(platform, "UPPER", "upper")
        team = await platform.teams.create_team("alice", "t", TeamMode.PARALLEL, [a.id])

        with pytest.raises(PermissionError):
            await platform.teams.delete_team(team.id, "bob")
        await platform.teams.delete_team(team.id, "alice")
        assert await platform.teams.get_team(team.id) is None


# =============================================================================
# Sequential
# =============================================================================


class TestSequential:
    """Each member works on the previous output."""

    @pytest.mark.asyncio
    async def test_pipeline(self, platform):
        a = await _member(platform, "UPPER", "upper")
        b = await _member(platform, "REVERSE", "reverse")
        team = await platform.teams.create_team("alice", "t", TeamMode.SEQUENTIAL, [a.id, b.id])

        run = await platform.teams.run_team(team.id, "alice", "abc")

        assert run.status == TeamRunStatus.COMPLETED
        assert run.output == "CBA"
        assert [r.task for r in run.member_results] == ["abc", "ABC"]
        assert run.completed_at is not None

    @pytest.mark.asyncio
    async def test_continue_skips_failed_member(self, platform):
        a = await _member(platform, "UPPER", "upper")
        b = await _member(platform, "REVERSE", "broken")
        c = await _member(platform, "REVERSE", "reverse")
        team = await platform.teams.create_team("alice", "t", TeamMode.SEQUENTIAL, [a.id, b.id, c.id])
        await platform.registry.set_status(b.id, "alice", AgentStatus.PAUSED)

        run = await platform.teams.run_team(team.id, "alice", "abc")

        assert run.status == TeamRunStatus.PARTIAL
        assert run.output == "CBA"
        assert run.member_results[1].error == "Agent is not active"

    @pytest.mark.asyncio
    async def test_fail_fast_stops(self, platform):
        a = await _member(platform, "UPPER", "upper")
        b = await _member(platform, "REVERSE", "broken")
        c = await _member(platform, "REVERSE", "reverse")
        team = await platform.teams.create_team(
            "alice", "t", TeamMode.SEQUENTIAL, [a.id, b.id, c.id], failure_policy=FailurePolicy.FAIL_FAST
        )
        await platform.registry.set_status(b.id, "alice", AgentStatus.PAUSED)

        run = await platform.teams.run_team(team.id, "alice", "abc")

        assert run.status == TeamRunStatus.FAILED
        assert run.error == f"member {b.id} failed: Agent is not active"
        assert len(run.member_results) == 2
        assert run.output == "ABC"


# =============================================================================
# Parallel
# =============================================================================


class TestParallel:
    """Every member works on the input at once."""

    @pytest.mark.asyncio
    async def test_outputs_joined_in_member_order(self, platform):
        a = await _member(platform, "UPPER", "upper")
        b = await _member(platform, "REVERSE", "reverse")
        team = await platform.teams.create_team("alice", "t", TeamMode.PARALLEL, [a.id, b.id], max_parallel=1)

        run = await platform.teams.run_team(team.id, "alice", "abc")

        assert run.status == TeamRunStatus.COMPLETED
        assert run.output == "[upper] ABC\n\n[reverse] cba"

    @pytest.mark.asyncio
    async def test_continue_keeps_successes(self, platform):
        a = await _member(platform, "UPPER", "upper")
        b = await _member(platform, "REVERSE", "reverse")
        team = await platform.teams.create_team("alice", "t", TeamMode.PARALLEL, [a.id, b.id])
        await platform.registry.set_status(b.id, "alice", AgentStatus.PAUSED)

        run = await platform.teams.run_team(team.id, "alice", "abc")

        assert run.status == TeamRunStatus.PARTIAL
        assert run.output == "[upper] ABC"

    @pytest.mark.asyncio
    async def test_fail_fast(self, platform):
        a = await _member(platform, "UPPER", "upper")
        b = await _member(platform, "REVERSE", "reverse")
        team = await platform.teams.create_team(
            "alice", "t", TeamMode.PARALLEL, [a.id, b.id], failure_policy=FailurePolicy.FAIL_FAST
        )
        await platform.registry.set_status(b.id, "alice", AgentStatus.PAUSED)

        run = await platform.teams.run_team(team.id, "alice", "abc")

        assert run.status == TeamRunStatus.FAILED
        assert run.error.startswith(f"member {b.id} failed")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_parallel", [1, 2, 4])
    async def test_max_parallel_bounds_concurrency(self, make_platform, max_parallel):
        provider = _TrackingProvider()
        platform = make_platform(provider)
        members = [await _member(platform, "UPPER", f"upper-{i}") for i in range(4)]
        team = await platform.teams.create_team(
            "alice", "t", TeamMode.PARALLEL, [m.id for m in members], max_parallel=max_parallel
        )

        run = await platform.teams.run_team(team.id, "alice", "abc")

        assert run.status == TeamRunStatus.COMPLETED
        assert len(run.member_results) == 4
        assert provider.peak == max_parallel


# =============================================================================
# Hierarchical
# =============================================================================


class TestHierarchical:
    """Leader plans, workers execute, leader synthesizes."""

    @pytest.mark.asyncio
    async def test_plan_execute_synthesize(self, platform):
        leader = await _member(platform, "PLANNER", "lead", tier=TrustTier.T3)
        a = await _member(platform, "UPPER", "upper")
        b = await _member(platform, "REVERSE", "reverse")
        team = await platform.teams.create_team(
            "alice", "t", TeamMode.HIERARCHICAL, [a.id, b.id], leader_agent_id=leader.id
        )

        run = await platform.teams.run_team(team.id, "alice", "do the thing")

        assert run.status == TeamRunStatus.COMPLETED
        assert [r.role for r in run.member_results] == ["leader:plan", "member", "member", "leader:synthesis"]
        assert [r.task for r in run.member_results[1:3]] == ["alpha", "beta"]
        assert run.output.startswith("Original task:\ndo the thing")
        assert "[upper] ALPHA\n\n[reverse] ateb" in run.output

    @pytest.mark.asyncio
    async def test_unusable_plan_sends_input_to_every_worker(self, platform):
        leader = await _member(platform, "CONFUSED", "lead", tier=TrustTier.T3)
        a = await _member(platform, "UPPER", "upper")
        b = await _member(platform, "REVERSE", "reverse")
        team = await platform.teams.create_team(
            "alice", "t", TeamMode.HIERARCHICAL, [a.id, b.id], leader_agent_id=leader.id
        )

        run = await platform.teams.run_team(team.id, "alice", "abc")

        assert [r.task for r in run.member_results[1:3]] == ["abc", "abc"]
        assert "[upper] ABC\n\n[reverse] cba" in run.output

    @pytest.mark.asyncio
    async def test_leader_failure(self, platform):
        leader = await _member(platform, "PLANNER", "lead", tier=TrustTier.T3)
        a = await _member(platform, "UPPER", "upper")
        team = await platform.teams.create_team(
            "alice", "t", TeamMode.HIERARCHICAL, [a.id], leader_agent_id=leader.id
        )
        await platform.registry.set_status(leader.id, "alice", AgentStatus.PAUSED)

        run = await platform.teams.run_team(team.id, "alice", "abc")

        assert run.status == TeamRunStatus.FAILED
        assert run.error.startswith("leader failed to plan")
        assert run.output is None

    @pytest.mark.asyncio
    async def test_worker_failure_continue_is_partial(self, platform):
        leader = await _member(platform, "PLANNER", "lead", tier=TrustTier.T3)
        a = await _member(platform, "UPPER", "upper")
        b = await _member(platform, "REVERSE", "reverse")
        team = await platform.teams.create_team(
            "alice", "t", TeamMode.HIERARCHICAL, [a.id, b.id], leader_agent_id=leader.id
        )
        await platform.registry.set_status(b.id, "alice", AgentStatus.PAUSED)

        run = await platform.teams.run_team(team.id, "alice", "do the thing")

        assert run.status == TeamRunStatus.PARTIAL
        assert [r.role for r in run.member_results] == ["leader:plan", "member", "member", "leader:synthesis"]
        assert run.member_results[2].error == "Agent is not active"
        assert "[upper] ALPHA" in run.output
        assert "[reverse]" not in run.output

    @pytest.mark.asyncio
    async def test_worker_failure_fail_fast_skips_synthesis(self, platform):
        leader = await _member(platform, "PLANNER", "lead", tier=TrustTier.T3)
        a = await _member(platform, "UPPER", "upper")
        b = await _member(platform, "REVERSE", "reverse")
        team = await platform.teams.create_team(
            "alice",
            "t",
            TeamMode.HIERARCHICAL,
            [a.id, b.id],
            leader_agent_id=leader.id,
            failure_policy=FailurePolicy.FAIL_FAST,
        )
        await platform.registry.set_status(b.id, "alice", AgentStatus.PAUSED)

        run = await platform.teams.run_team(team.id, "alice", "do the thing")

        assert run.status == TeamRunStatus.FAILED
        assert run.error == f"member {b.id} failed: Agent is not active"
        assert [r.role for r in run.member_results] == ["leader:plan", "member", "member"]
        assert run.output is None

    @pytest.mark.asyncio
    async def test_all_workers_failing_fails_run(self, platform):
        leader = await _member(platform, "PLANNER", "lead", tier=TrustTier.T3)
        a = await _member(platform, "UPPER", "upper")
        team = await platform.teams.create_team(
            "alice", "t", TeamMode.HIERARCHICAL, [a.id], leader_agent_id=leader.id
        )
        await platform.registry.set_status(a.id, "alice", AgentStatus.PAUSED)

        run = await platform.teams.run_team(team.id, "alice", "abc")

        assert run.status == TeamRunStatus.FAILED
        assert len(run.member_results) == 2


# =============================================================================
# Collaborative
# =============================================================================


class TestCollaborative:
    """Round-robin discussion."""

    @pytest.mark.asyncio
    async def test_final_marker_ends_run(self, platform):
        talker = await _member(platform, "TALKER", "talker")
        finalizer = await _member(platform, "FINALIZER", "finalizer")
        team = await platform.teams.create_team(
            "alice", "t", TeamMode.COLLABORATIVE, [talker.id, finalizer.id]
        )

        run = await platform.teams.run_team(team.id, "alice", "decide")

        assert run.status == TeamRunStatus.COMPLETED
        assert run.output == "done"
        assert [r.round for r in run.member_results] == [1, 1]

    @pytest.mark.asyncio
    async def test_round_limit(self, platform):
        first = await _member(platform, "TALKER", "one")
        second = await _member(platform, "TALKER", "two")
        team = await platform.teams.create_team(
            "alice", "t", TeamMode.COLLABORATIVE, [first.id, second.id], max_rounds=2
        )

        run = await platform.teams.run_team(team.id, "alice", "discuss")

        assert len(run.member_results) == 4
        assert [r.round for r in run.member_results] == [1, 1, 2, 2]
        assert run.output == "idea"
        assert "[one] idea" in run.member_results[1].task

    @pytest.mark.asyncio
    async def test_continue_skips_failed_member(self, platform):
        talker = await _member(platform, "TALKER", "talker")
        broken = await _member(platform, "TALKER", "broken")
        finalizer = await _member(platform, "FINALIZER", "finalizer")
        team = await platform.teams.create_team(
            "alice", "t", TeamMode.COLLABORATIVE, [talker.id, broken.id, finalizer.id]
        )
        await platform.registry.set_status(broken.id, "alice", AgentStatus.PAUSED)

        run = await platform.teams.run_team(team.id, "alice", "decide")

        assert run.status == TeamRunStatus.PARTIAL
        assert run.output == "done"
        assert [r.succeeded for r in run.member_results] == [True, False, True]
        assert "[broken]" not in run.member_results[2].task

    @pytest.mark.asyncio
    async def test_fail_fast_stops_discussion(self, platform):
        talker = await _member(platform, "TALKER", "talker")
        broken = await _member(platform, "TALKER", "broken")
        finalizer = await _member(platform, "FINALIZER", "finalizer")
        team = await platform.teams.create_team(
            "alice",
            "t",
            TeamMode.COLLABORATIVE,
            [talker.id, broken.id, finalizer.id],
            failure_policy=FailurePolicy.FAIL_FAST,
        )
        await platform.registry.set_status(broken.id, "alice", AgentStatus.PAUSED)

        run = await platform.teams.run_team(team.id, "alice", "decide")

        assert run.status == TeamRunStatus.FAILED
        assert run.error == f"member {broken.id} failed: Agent is not active"
        assert len(run.member_results) == 2
        assert run.output == "idea"


# =============================================================================
# Run Bookkeeping
# =============================================================================


class TestRunRecords:
    """Access, trust credit and ledger records."""

    @pytest.mark.asyncio
    async def test_only_owner_runs(self, platform):
        a = await _member(platform, "UPPER", "upper")
        team = await platform.teams.create_team("alice", "t", TeamMode.PARALLEL, [a.id])

        with pytest.raises(PermissionError):
            await platform.teams.run_team(team.id, "bob", "abc")
        with pytest.raises(ValueError, match="Input"):
            await platform.teams.run_team(team.id, "alice", " ")
        with pytest.raises(ValueError, match="Team not found"):
            await platform.teams.run_team("missing", "alice", "abc")

    @pytest.mark.asyncio
    async def test_successful_members_earn_trust(self, platform):
        a = await _member(platform, "UPPER", "upper")
        b = await _member(platform, "REVERSE", "reverse")
        team = await platform.teams.create_team("alice", "t", TeamMode.PARALLEL, [a.id, b.id])
        await platform.registry.set_status(b.id, "alice", AgentStatus.PAUSED)

        await platform.teams.run_team(team.id, "alice", "abc")

        # verified 40, +1 session, +2 team run
        assert (await platform.trust.get_profile(a.dsid)).score == 43
        assert (await platform.trust.get_profile(b.dsid)).score == 40

    @pytest.mark.asyncio
    async def test_failed_run_earns_nothing(self, platform):
        a = await _member(platform, "UPPER", "upper")
        b = await _member(platform, "REVERSE", "reverse")
        team = await platform.teams.create_team(
            "alice", "t", TeamMode.SEQUENTIAL, [b.id, a.id], failure_policy=FailurePolicy.FAIL_FAST
        )
        await platform.registry.set_status(b.id, "alice", AgentStatus.PAUSED)

        await platform.teams.run_team(team.id, "alice", "abc")

        assert (await platform.trust.get_profile(a.dsid)).score == 40

    @pytest.mark.asyncio
    async def test_run_recorded(self, platform):
        a = await _member(platform, "UPPER", "upper")
        team = await platform.teams.create_team("alice", "t", TeamMode.PARALLEL, [a.id])

        run = await platform.teams.run_team(team.id, "alice", "abc")

        entries, _ = await platform.ledger.get_entries(actor="alice", entry_type=LedgerEntryType.TEAM_RUN)
        assert entries[0].payload["run_id"] == run.id
        assert entries[0].payload["status"] == "completed"
        assert await platform.teams.get_run(run.id) == run
        assert await platform.teams.list_runs(team.id) == [run]


# =============================================================================
# Plan Parsing
# =============================================================================


class TestParsePlan:
    """Reading a leader's assignments."""

    def test_valid_plan(self):
        text = json.dumps({"assignments": [{"agent_id": "a", "task": "x"}, {"agent_id": "b", "task": "y"}]})
        assert parse_plan(text, ["a", "b"]) == [("a", "x"), ("b", "y")]

    def test_fenced_plan(self):
        text = '```json\n{"assignments": [{"agent_id": "a", "task": "x"}]}\n```'
        assert parse_plan(text, ["a"]) == [("a", "x")]

    def test_first_assignment_per_worker_wins(self):
        text = json.dumps({"assignments": [{"agent_id": "a", "task": "x"}, {"agent_id": "a", "task": "y"}]})
        assert parse_plan(text, ["a"]) == [("a", "x")]

    def test_unknown_workers_and_blank_tasks_ignored(self):
        text = json.dumps({
            "assignments": [
                {"agent_id": "ghost", "task": "x"},
                {"agent_id": "a", "task": "  "},
                "not a dict",
                {"agent_id": "b", "task": "y"},
            ]
        })
        assert parse_plan(text, ["a", "b"]) == [("b", "y")]

    @pytest.mark.parametrize("text", ["no plan", "[]", '{"assignments": "x"}', "{"])
    def test_unusable(self, text):
        assert parse_plan(text, ["a"]) == []
