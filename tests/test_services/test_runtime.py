"""
Tests for the Runtime Executor

Tests cover:
- The step loop: final answers, tool calls, tool errors
- Failure paths: step limit, LLM errors, closed streams
- Stream chunk sequence
- Access checks, concurrency limits and cancellation
- Marketplace licenses
"""

import json
from datetime import timedelta

import pytest

from agentos.models.base import TrustTier
from agentos.models.events import EventType
from agentos.models.ledger import LedgerEntryType
from agentos.models.marketplace import PricingModel
from agentos.models.session import MessageRole, SessionStatus
from agentos.services.identity import RevokedIdentityError
from agentos.services.llm import MockLLMProvider
from agentos.services.runtime import parse_tool_call
from agentos.services.trust import InsufficientTrustError, TrustService


def _tool_call(name: str, **arguments) -> str:
    return json.dumps({"tool": name, "arguments": arguments})


# =============================================================================
# Tool Call Parsing
# =============================================================================


class TestParseToolCall:
    """Recognizing tool calls in model replies."""

    def test_plain_json(self):
        assert parse_tool_call('{"tool": "calculator", "arguments": {"expression": "1+1"}}') == (
            "calculator",
            {"expression": "1+1"},
        )

    def test_fenced_json(self):
        text = '```json\n{"tool": "current_time"}\n```'
        assert parse_tool_call(text) == ("current_time", {})

    @pytest.mark.parametrize(
        "text",
        [
            "The answer is 4.",
            '{"answer": 4}',
            '{"tool": 7}',
            "{not json",
            '["tool"]',
        ],
    )
    def test_not_a_tool_call(self, text):
        assert parse_tool_call(text) is None


# =============================================================================
# Step Loop
# =============================================================================


class TestExecution:
    """Running sessions to completion."""

    @pytest.mark.asyncio
    async def test_final_answer(self, platform):
        agent = await platform.agent_at("alice")
        session = await platform.runtime.execute(agent.id, "alice", "hello there")

        assert session.status == SessionStatus.COMPLETED
        assert session.output == "hello there"
        assert session.steps == 1
        assert [m.role for m in session.messages] == [
            MessageRole.SYSTEM,
            MessageRole.USER,
            MessageRole.ASSISTANT,
        ]

        profile = await platform.trust.get_profile(agent.dsid)
        assert profile.completed_sessions == 1
        assert profile.score == TrustService.INITIAL_SCORE + 1

    @pytest.mark.asyncio
    async def test_system_prompt_lists_enabled_tools(self, platform, llm_provider):
        agent = await platform.agent_at("alice", tools=["calculator"], system_prompt="Be exact.")
        await platform.runtime.execute(agent.id, "alice", "hi")

        system = llm_provider.calls[0][0]
        assert system.role == "system"
        assert system.content.startswith("Be exact.")
        assert "- calculator (compute)" in system.content
        assert "memory_recall" not in system.content

    @pytest.mark.asyncio
    async def test_tool_call_then_answer(self, platform, llm_provider):
        agent = await platform.agent_at("alice", tools=["calculator"])
        llm_provider.queue_response(_tool_call("calculator", expression="2 + 3"), "The answer is 5")

        session = await platform.runtime.execute(agent.id, "alice", "what is 2 + 3?")

        assert session.status == SessionStatus.COMPLETED
        assert session.output == "The answer is 5"
        assert session.steps == 2
        assert session.tool_calls == 1

        tool_message = llm_provider.calls[1][-1]
        assert tool_message.role == "user"
        assert tool_message.content == "Tool result (calculator): 5"

    @pytest.mark.asyncio
    async def test_tool_not_enabled_is_reported_to_model(self, platform, llm_provider):
        agent = await platform.agent_at("alice")
        llm_provider.queue_response(_tool_call("calculator", expression="1"), "giving up")

        session = await platform.runtime.execute(agent.id, "alice", "compute")

        assert session.status == SessionStatus.COMPLETED
        assert "not enabled" in llm_provider.calls[1][-1].content
        assert session.messages[-2].role == MessageRole.TOOL

    @pytest.mark.asyncio
    async def test_tool_failure_is_reported_to_model(self, platform, llm_provider):
        agent = await platform.agent_at("alice", tools=["calculator"])
        llm_provider.queue_response(_tool_call("calculator", expression="1/0"), "cannot divide")

        session = await platform.runtime.execute(agent.id, "alice", "compute")

        assert session.status == SessionStatus.COMPLETED
        assert llm_provider.calls[1][-1].content.startswith("Tool error (calculator):")

    @pytest.mark.asyncio
    async def test_permission_violation_costs_trust(self, platform, llm_provider):
        agent = await platform.agent_at("alice", tools=["http_get"])
        llm_provider.queue_response(_tool_call("http_get", url="https://example.com"), "ok")

        session = await platform.runtime.execute(agent.id, "alice", "fetch it")

        assert session.status == SessionStatus.COMPLETED
        profile = await platform.trust.get_profile(agent.dsid)
        assert profile.violations == 1
        violations = platform.event_bus.recent_events(event_type=EventType.SECURITY_VIOLATION)
        assert violations[0].payload["tool"] == "http_get"

    @pytest.mark.asyncio
    async def test_tool_calls_are_recorded_on_ledger(self, platform, llm_provider):
        agent = await platform.agent_at("alice", tools=["calculator"])
        llm_provider.queue_response(_tool_call("calculator", expression="3"), "3")

        await platform.runtime.execute(agent.id, "alice", "three")

        entries, _ = await platform.ledger.get_entries(actor=agent.dsid)
        types = [e.entry_type for e in reversed(entries)]
        assert types[-3:] == [
            LedgerEntryType.SESSION_STARTED,
            LedgerEntryType.TOOL_INVOKED,
            LedgerEntryType.SESSION_COMPLETED,
        ]


# =============================================================================
# Failure Paths
# =============================================================================


class TestFailures:
    """Sessions that do not produce an answer."""

    @pytest.mark.asyncio
    async def test_step_limit(self, make_platform):
        platform = make_platform(MockLLMProvider(responder=lambda messages: _tool_call("current_time")))
        agent = await platform.agent_at("alice", tools=["current_time"], max_steps=3)

        session = await platform.runtime.execute(agent.id, "alice", "loop forever")

        assert session.status == SessionStatus.FAILED
        assert session.error == "step limit exceeded"
        assert session.steps == 3
        assert (await platform.trust.get_profile(agent.dsid)).failed_sessions == 1

    @pytest.mark.asyncio
    async def test_tier_caps_steps(self, make_platform):
        platform = make_platform(MockLLMProvider(responder=lambda messages: _tool_call("current_time")))
        agent = await platform.agent_at("alice", tools=["current_time"], max_steps=50)

        session = await platform.runtime.execute(agent.id, "alice", "loop forever")
        assert session.steps == 10

    @pytest.mark.asyncio
    async def test_llm_error(self, make_platform):
        def broken(messages):
            raise ValueError("model unavailable")

        platform = make_platform(MockLLMProvider(responder=broken))
        agent = await platform.agent_at("alice")

        session = await platform.runtime.execute(agent.id, "alice", "hello")

        assert session.status == SessionStatus.FAILED
        assert session.error == "LLM error: model unavailable"

    @pytest.mark.asyncio
    async def test_closing_the_stream_fails_the_session(self, platform):
        agent = await platform.agent_at("alice")
        session = await platform.runtime.start_session(agent.id, "alice", "hello")

        stream = platform.runtime.stream_session(session.id)
        first = await stream.__anext__()
        await stream.aclose()

        assert first.content_type == "status"
        assert session.status == SessionStatus.FAILED
        assert session.error == "stream closed before completion"


# =============================================================================
# Streaming
# =============================================================================


class TestStreaming:
    """Chunk sequence of a streamed session."""

    @pytest.mark.asyncio
    async def test_chunk_sequence(self, platform, llm_provider):
        agent = await platform.agent_at("alice", tools=["calculator"])
        llm_provider.queue_response(_tool_call("calculator", expression="6*7"), "42")
        session = await platform.runtime.start_session(agent.id, "alice", "6 times 7")

        chunks = [c async for c in platform.runtime.stream_session(session.id)]

        assert [c.content_type for c in chunks] == ["status", "tool_call", "tool_result", "message", "done"]
        assert [c.chunk_id for c in chunks] == list(range(5))
        assert chunks[1].content == {"tool": "calculator", "arguments": {"expression": "6*7"}, "step": 1}
        assert chunks[2].content["output"] == "42"
        assert chunks[-1].is_final
        assert chunks[-1].content["status"] == "completed"
        assert not any(c.is_final for c in chunks[:-1])

    @pytest.mark.asyncio
    async def test_failed_stream_ends_with_error_then_done(self, make_platform):
        platform = make_platform(MockLLMProvider(responder=lambda messages: _tool_call("current_time")))
        agent = await platform.agent_at("alice", tools=["current_time"], max_steps=1)
        session = await platform.runtime.start_session(agent.id, "alice", "go")

        chunks = [c async for c in platform.runtime.stream_session(session.id)]

        assert [c.content_type for c in chunks[-2:]] == ["error", "done"]
        assert chunks[-2].content == "step limit exceeded"
        assert chunks[-1].content["status"] == "failed"

    @pytest.mark.asyncio
    async def test_session_runs_only_once(self, platform):
        agent = await platform.agent_at("alice")
        session = await platform.runtime.execute(agent.id, "alice", "hello")

        with pytest.raises(ValueError, match="already been started"):
            await platform.runtime.run_session(session.id)


# =============================================================================
# Starting Sessions
# =============================================================================


class TestStartSession:
    """Checks made before a session exists."""

    @pytest.mark.asyncio
    async def test_input_required(self, platform):
        agent = await platform.agent_at("alice")
        with pytest.raises(ValueError, match="Input"):
            await platform.runtime.start_session(agent.id, "alice", "   ")

    @pytest.mark.asyncio
    async def test_unknown_agent(self, platform):
        with pytest.raises(ValueError, match="Agent not found"):
            await platform.runtime.start_session("missing", "alice", "hi")

    @pytest.mark.asyncio
    async def test_paused_agent(self, platform):
        from agentos.models.agent import AgentStatus

        agent = await platform.agent_at("alice")
        await platform.registry.set_status(agent.id, "alice", AgentStatus.PAUSED)

        with pytest.raises(ValueError, match="not active"):
            await platform.runtime.start_session(agent.id, "alice", "hi")

    @pytest.mark.asyncio
    async def test_revoked_identity(self, platform):
        agent = await platform.agent_at("alice")
        await platform.identity.revoke(agent.dsid, "compromised")

        with pytest.raises(RevokedIdentityError):
            await platform.runtime.start_session(agent.id, "alice", "hi")

    @pytest.mark.asyncio
    async def test_stranger_without_license(self, platform):
        agent = await platform.agent_at("alice")
        with pytest.raises(PermissionError, match="No access"):
            await platform.runtime.start_session(agent.id, "mallory", "hi")

    @pytest.mark.asyncio
    async def test_concurrency_limit_by_tier(self, platform):
        agent = await platform.agent_at("alice")
        await platform.runtime.start_session(agent.id, "alice", "one")
        await platform.runtime.start_session(agent.id, "alice", "two")

        with pytest.raises(InsufficientTrustError):
            await platform.runtime.start_session(agent.id, "alice", "three")

    @pytest.mark.asyncio
    async def test_finished_sessions_free_capacity(self, platform):
        agent = await platform.agent_at("alice", TrustTier.T0)

        first = await platform.runtime.start_session(agent.id, "alice", "one")
        await platform.runtime.run_session(first.id)
        second = await platform.runtime.start_session(agent.id, "alice", "two")
        assert second.status == SessionStatus.PENDING

    @pytest.mark.asyncio
    async def test_unstarted_sessions_expire(self, platform):
        agent = await platform.agent_at("alice", TrustTier.T0)
        abandoned = await platform.runtime.start_session(agent.id, "alice", "one")
        with pytest.raises(InsufficientTrustError):
            await platform.runtime.start_session(agent.id, "alice", "two")

        abandoned.created_at -= timedelta(seconds=61)
        second = await platform.runtime.start_session(agent.id, "alice", "two")

        assert second.status == SessionStatus.PENDING
        assert abandoned.status == SessionStatus.CANCELLED
        assert abandoned.error == "Session was never started"
        with pytest.raises(ValueError, match="already been started"):
            await platform.runtime.run_session(abandoned.id)


# =============================================================================
# Cancellation & Queries
# =============================================================================


class TestCancellation:
    """Cancelling sessions."""

    @pytest.mark.asyncio
    async def test_cancel_pending(self, platform):
        agent = await platform.agent_at("alice")
        session = await platform.runtime.start_session(agent.id, "alice", "hi")

        cancelled = await platform.runtime.cancel_session(session.id, "alice")
        assert cancelled.status == SessionStatus.CANCELLED

        with pytest.raises(ValueError, match="already finished"):
            await platform.runtime.cancel_session(session.id, "alice")
        with pytest.raises(ValueError, match="already been started"):
            await platform.runtime.run_session(session.id)

    @pytest.mark.asyncio
    async def test_only_caller_or_owner_may_cancel(self, platform):
        agent = await platform.agent_at("alice")
        session = await platform.runtime.start_session(agent.id, "alice", "hi")

        with pytest.raises(PermissionError):
            await platform.runtime.cancel_session(session.id, "mallory")

    @pytest.mark.asyncio
    async def test_unknown_session(self, platform):
        with pytest.raises(ValueError, match="Session not found"):
            await platform.runtime.cancel_session("missing", "alice")

    @pytest.mark.asyncio
    async def test_list_sessions(self, platform):
        agent = await platform.agent_at("alice")
        done = await platform.runtime.execute(agent.id, "alice", "one")
        pending = await platform.runtime.start_session(agent.id, "alice", "two")

        sessions = await platform.runtime.list_sessions(caller_id="alice")
        assert [s.id for s in sessions] == [pending.id, done.id]
        completed = await platform.runtime.list_sessions(status=SessionStatus.COMPLETED)
        assert [s.id for s in completed] == [done.id]
        assert platform.runtime.get_stats()["by_status"] == {"completed": 1, "pending": 1}


# =============================================================================
# Licensed Access
# =============================================================================


class TestLicensedAccess:
    """Buyers running agents they hold licenses for."""

    @pytest.mark.asyncio
    async def test_free_license_grants_access(self, platform):
        agent = await platform.agent_at("alice", TrustTier.T2)
        listing = await platform.marketplace.publish("alice", agent.id, "Echo agent")
        _, license_ = await platform.marketplace.purchase(listing.id, "bob")

        session = await platform.runtime.execute(agent.id, "bob", "hello")

        assert session.status == SessionStatus.COMPLETED
        assert session.license_id == license_.id
        assert session.caller_id == "bob"

    @pytest.mark.asyncio
    async def test_usage_license_runs_out(self, platform):
        agent = await platform.agent_at("alice", TrustTier.T3)
        listing = await platform.marketplace.publish(
            "alice", agent.id, "Metered agent", pricing_model=PricingModel.USAGE, price="0.50"
        )
        _, license_ = await platform.marketplace.purchase(listing.id, "bob", units=1)

        await platform.runtime.execute(agent.id, "bob", "first")
        assert license_.uses_remaining == 0

        with pytest.raises(PermissionError):
            await platform.runtime.start_session(agent.id, "bob", "second")
