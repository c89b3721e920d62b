"""
AgentOS Runtime Executor

Runs agent sessions: a step loop over the LLM in which the model either
calls a tool (through the sandbox) or returns its final answer. Sessions
can be streamed chunk by chunk or run to completion.

Tool-call protocol: a reply that is a JSON object with a "tool" key, e.g.
{"tool": "calculator", "arguments": {"expression": "2+2"}}, is a tool call.
Any other reply is the final answer.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from datetime import timedelta
from typing import TYPE_CHECKING, Any, AsyncIterator

import httpx
import structlog

from agentos.kernel.sandbox import (
    ExecutionBudget,
    SandboxContext,
    SandboxError,
    ToolPermissionError,
)
from agentos.models.agent import AgentDefinition, AgentStatus
from agentos.models.base import utc_now
from agentos.models.events import EventType
from agentos.models.ledger import LedgerEntryType
from agentos.models.session import (
    MessageRole,
    Session,
    SessionMessage,
    SessionStatus,
    StreamChunk,
)
from agentos.models.trust import TrustEventType
from agentos.services.identity import RevokedIdentityError
from agentos.services.llm import LLMConfigurationError, LLMMessage
from agentos.services.trust import InsufficientTrustError

if TYPE_CHECKING:
    from agentos.kernel.event_system import EventBus
    from agentos.kernel.sandbox import ToolSandbox
    from agentos.services.agents import AgentRegistry
    from agentos.services.identity import IdentityService
    from agentos.services.ledger import LedgerService
    from agentos.services.llm import LLMService
    from agentos.services.marketplace import MarketplaceService
    from agentos.services.trust import TrustService

logger = structlog.get_logger(__name__)

MAX_INPUT_CHARS = 20000

TOOL_PROTOCOL = (
    'To call a tool, reply with only a JSON object: {"tool": "<name>", "arguments": {...}}. '
    "The tool result will be sent back to you. Any other reply is treated as your final answer."
)


def parse_tool_call(text: str) -> tuple[str, Any] | None:
    """Return (tool_name, arguments) if the reply is a tool call, else None."""
    content = text.strip()
    if content.startswith("```"):
        lines = content.split("\n")
        end = -1 if lines[-1].strip().startswith("```") else len(lines)
        content = "\n".join(lines[1:end]).strip()
    if not content.startswith("{"):
        return None
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not isinstance(data.get("tool"), str):
        return None
    arguments = data.get("arguments")
    return data["tool"], {} if arguments is None else arguments


class RuntimeService:
    """
    Executes agent sessions.

    Usage:
        session = await runtime.start_session(agent_id, caller_id, "question")
        async for chunk in runtime.stream_session(session.id):
            ...
    """

    def __init__(
        self,
        registry: AgentRegistry,
        identity: IdentityService,
        trust: TrustService,
        sandbox: ToolSandbox,
        llm: LLMService,
        ledger: LedgerService | None = None,
        event_bus: EventBus | None = None,
        marketplace: MarketplaceService | None = None,
        tool_timeout_seconds: float = 10.0,
        max_tool_calls: int = 25,
        max_tool_output_chars: int = 4000,
        pending_ttl_seconds: float = 60.0,
    ):
        self._registry = registry
        self._identity = identity
        self._trust = trust
        self._sandbox = sandbox
        self._llm = llm
        self._ledger = ledger
        self._event_bus = event_bus
        self._marketplace = marketplace
        self._tool_timeout = tool_timeout_seconds
        self._max_tool_calls = max_tool_calls
        self._max_tool_output = max_tool_output_chars
        self._pending_ttl = timedelta(seconds=pending_ttl_seconds)

        self._sessions: dict[str, Session] = {}
        self._session_lock = asyncio.Lock()

    # =========================================================================
    # Session Lifecycle
    # =========================================================================

    async def start_session(self, agent_id: str, caller_id: str, input_text: str) -> Session:
        """
        Create a pending session after access and trust checks.

        Raises:
            ValueError: Unknown or inactive agent, or bad input
            PermissionError: Caller is neither owner nor licensed
            RevokedIdentityError: Agent's identity is revoked
            InsufficientTrustError: Tier's concurrent session limit reached
        """
        if not input_text or not input_text.strip():
            raise ValueError("Input is required")
        if len(input_text) > MAX_INPUT_CHARS:
            raise ValueError(f"Input exceeds {MAX_INPUT_CHARS} characters")

        agent = await self._registry.get_agent(agent_id)
        if agent is None:
            raise ValueError("Agent not found")
        if agent.status != AgentStatus.ACTIVE:
            raise ValueError("Agent is not active")

        document = await self._identity.resolve(agent.dsid)
        if document is None or document.is_revoked:
            raise RevokedIdentityError("Agent identity is revoked")

        license_ = None
        if caller_id != agent.owner_id:
            if self._marketplace is not None:
                license_ = await self._marketplace.check_access(caller_id, agent.id)
            if license_ is None:
                raise PermissionError("No access to this agent")

        capabilities = await self._trust.capabilities_for(agent.dsid)
        async with self._session_lock:
            self._expire_pending()
            active = sum(
                1 for s in self._sessions.values()
                if s.dsid == agent.dsid and s.status in (SessionStatus.PENDING, SessionStatus.RUNNING)
            )
            if active >= capabilities.max_concurrent_sessions:
                raise InsufficientTrustError(
                    agent.dsid,
                    capabilities.tier,
                    f"more than {capabilities.max_concurrent_sessions} concurrent session(s)",
                )

            if license_ is not None:
                license_ = await self._marketplace.consume_use(license_.id)

            session = Session(
                agent_id=agent.id,
                dsid=agent.dsid,
                caller_id=caller_id,
                license_id=license_.id if license_ else None,
                input=input_text,
            )
            self._sessions[session.id] = session

        logger.info(
            "session_created",
            session_id=session.id,
            agent_id=agent.id,
            licensed=license_ is not None,
        )
        return session

    def _expire_pending(self) -> None:
        """Cancel sessions that were created but never started within the TTL."""
        cutoff = utc_now() - self._pending_ttl
        for session in self._sessions.values():
            if session.status == SessionStatus.PENDING and session.created_at < cutoff:
                session.status = SessionStatus.CANCELLED
                session.error = "Session was never started"
                session.completed_at = utc_now()
                logger.info("session_expired", session_id=session.id, agent_id=session.agent_id)

    async def run_session(self, session_id: str) -> Session:
        """Run a pending session to completion and return it."""
        async for _ in self.stream_session(session_id):
            pass
        return self._sessions[session_id]

    async def execute(self, agent_id: str, caller_id: str, input_text: str) -> Session:
        """Start and run a session in one call."""
        session = await self.start_session(agent_id, caller_id, input_text)
        return await self.run_session(session.id)

    async def cancel_session(self, session_id: str, caller_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise ValueError("Session not found")
        agent = await self._registry.get_agent(session.agent_id)
        if caller_id != session.caller_id and (agent is None or caller_id != agent.owner_id):
            raise PermissionError("Not allowed to cancel this session")
        if session.status.is_terminal:
            raise ValueError("Session has already finished")

        session.status = SessionStatus.CANCELLED
        session.completed_at = utc_now()
        logger.info("session_cancelled", session_id=session_id)
        await self._emit(EventType.SESSION_CANCELLED, session)
        return session

    async def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def list_sessions(
        self,
        caller_id: str | None = None,
        agent_id: str | None = None,
        status: SessionStatus | None = None,
        limit: int = 50,
    ) -> list[Session]:
        sessions = [
            s for s in reversed(self._sessions.values())
            if (caller_id is None or s.caller_id == caller_id)
            and (agent_id is None or s.agent_id == agent_id)
            and (status is None or s.status == status)
        ]
        return sessions[:limit]

    # =========================================================================
    # Execution Loop
    # =========================================================================

    async def stream_session(self, session_id: str) -> AsyncIterator[StreamChunk]:
        """
        Execute a pending session, yielding chunks as it progresses.

        Chunk types: status, message, tool_call, tool_result, error, done.
        The last chunk is always "done" with is_final=True.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise ValueError("Session not found")
        if session.status != SessionStatus.PENDING:
            raise ValueError("Session has already been started")
        agent = await self._registry.get_agent(session.agent_id)
        if agent is None:
            raise ValueError("Agent not found")

        counter = itertools.count()

        def chunk(content_type: str, content: Any, is_final: bool = False) -> StreamChunk:
            return StreamChunk(
                chunk_id=next(counter),
                session_id=session.id,
                content_type=content_type,
                content=content,
                is_final=is_final,
            )

        session.status = SessionStatus.RUNNING
        session.started_at = utc_now()
        try:
            yield chunk("status", {"status": "running", "agent_id": agent.id})
            await self._record(LedgerEntryType.SESSION_STARTED, session)
            await self._emit(EventType.SESSION_STARTED, session)

            capabilities = await self._trust.capabilities_for(agent.dsid)
            max_steps = min(agent.max_steps, capabilities.max_steps)
            context = SandboxContext(
                session_id=session.id,
                agent_id=agent.id,
                dsid=agent.dsid,
                permissions=capabilities.tool_permissions,
                budget=ExecutionBudget(
                    max_tool_calls=self._max_tool_calls,
                    timeout_seconds=self._tool_timeout,
                    max_output_chars=self._max_tool_output,
                ),
            )
            llm_messages = self._initial_messages(agent, session)

            final: str | None = None
            error: str | None = None
            for step in range(1, max_steps + 1):
                if session.status == SessionStatus.CANCELLED:
                    break
                try:
                    response = await self._llm.complete(llm_messages)
                except (httpx.HTTPError, ValueError, RuntimeError, LLMConfigurationError) as e:
                    logger.warning("session_llm_error", session_id=session.id, error=str(e))
                    error = f"LLM error: {e}"
                    break
                if session.status == SessionStatus.CANCELLED:
                    break

                session.steps = step
                session.tokens_used += response.tokens_used

                call = parse_tool_call(response.content)
                if call is None:
                    final = response.content.strip()
                    self._add_message(session, MessageRole.ASSISTANT, final)
                    yield chunk("message", final)
                    break

                name, arguments = call
                self._add_message(session, MessageRole.ASSISTANT, response.content)
                llm_messages.append(LLMMessage(role="assistant", content=response.content))
                yield chunk("tool_call", {"tool": name, "arguments": arguments, "step": step})

                tool_message, result = await self._run_tool(session, agent, context, name, arguments)
                llm_messages.append(LLMMessage(role="user", content=tool_message))
                yield chunk("tool_result", result)
            else:
                error = "step limit exceeded"

            if session.status == SessionStatus.CANCELLED:
                yield chunk("done", self._summary(session), is_final=True)
            elif final is not None:
                await self._complete(session, final)
                yield chunk("done", self._summary(session), is_final=True)
            else:
                await self._fail(session, error or "step limit exceeded")
                yield chunk("error", session.error)
                yield chunk("done", self._summary(session), is_final=True)
        finally:
            if session.status == SessionStatus.RUNNING:
                session.status = SessionStatus.FAILED
                session.error = "stream closed before completion"
                session.completed_at = utc_now()

    def _initial_messages(self, agent: AgentDefinition, session: Session) -> list[LLMMessage]:
        specs = self._sandbox.list_specs(agent.tools)
        if specs:
            catalog = "\n".join(
                f"- {s.name} ({s.permission.value}): {s.description}"
                + (f" Arguments: {json.dumps(s.parameters)}" if s.parameters else "")
                for s in specs
            )
            tools_section = f"Available tools:\n{catalog}\n\n{TOOL_PROTOCOL}"
        else:
            tools_section = "No tools are available. Reply with your final answer."

        system_prompt = f"{agent.system_prompt}\n\n{tools_section}"
        self._add_message(session, MessageRole.SYSTEM, system_prompt)
        self._add_message(session, MessageRole.USER, session.input)
        return [
            LLMMessage(role="system", content=system_prompt),
            LLMMessage(role="user", content=session.input),
        ]

    async def _run_tool(
        self,
        session: Session,
        agent: AgentDefinition,
        context: SandboxContext,
        name: str,
        arguments: Any,
    ) -> tuple[str, dict[str, Any]]:
        """Invoke a tool; errors are returned as text for the model, never raised."""
        error: str | None = None
        output = ""
        truncated = False

        if name not in agent.tools:
            error = f"Tool '{name}' is not enabled for this agent"
        else:
            try:
                result = await self._sandbox.invoke(name, arguments, context)
                output, truncated = result.output, result.truncated
            except ToolPermissionError as e:
                error = str(e)
                await self._trust.record_event(
                    agent.dsid, TrustEventType.TOOL_VIOLATION, reason=f"{name}: {e.permission.value}"
                )
                if self._event_bus is not None:
                    await self._event_bus.publish(
                        EventType.SECURITY_VIOLATION,
                        {"session_id": session.id, "dsid": agent.dsid, "tool": name},
                        source="service:runtime",
                    )
            except SandboxError as e:
                error = str(e)

        session.tool_calls += 1
        await self._record(
            LedgerEntryType.TOOL_INVOKED,
            session,
            {"tool": name, "ok": error is None},
        )
        if self._event_bus is not None:
            await self._event_bus.publish(
                EventType.TOOL_INVOKED,
                {"session_id": session.id, "tool": name, "ok": error is None},
                source="service:runtime",
            )

        if error is not None:
            message = f"Tool error ({name}): {error}"
            self._add_message(session, MessageRole.TOOL, message, tool_name=name)
            return message, {"tool": name, "ok": False, "error": error}

        message = f"Tool result ({name}): {output}"
        self._add_message(session, MessageRole.TOOL, message, tool_name=name)
        return message, {"tool": name, "ok": True, "output": output, "truncated": truncated}

    # =========================================================================
    # Completion
    # =========================================================================

    async def _complete(self, session: Session, output: str) -> None:
        session.status = SessionStatus.COMPLETED
        session.output = output
        session.completed_at = utc_now()

        logger.info(
            "session_completed",
            session_id=session.id,
            steps=session.steps,
            tool_calls=session.tool_calls,
            duration_ms=round(session.duration_ms or 0, 2),
        )
        await self._trust.record_event(
            session.dsid, TrustEventType.SESSION_COMPLETED, reason=f"session {session.id}"
        )
        await self._record(LedgerEntryType.SESSION_COMPLETED, session)
        await self._emit(EventType.SESSION_COMPLETED, session)

    async def _fail(self, session: Session, error: str) -> None:
        session.status = SessionStatus.FAILED
        session.error = error
        session.completed_at = utc_now()

        logger.info("session_failed", session_id=session.id, error=error, steps=session.steps)
        await self._trust.record_event(
            session.dsid, TrustEventType.SESSION_FAILED, reason=error
        )
        await self._record(LedgerEntryType.SESSION_FAILED, session, {"error": error})
        await self._emit(EventType.SESSION_FAILED, session)

    @staticmethod
    def _summary(session: Session) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "status": session.status.value,
            "steps": session.steps,
            "tool_calls": session.tool_calls,
            "tokens_used": session.tokens_used,
        }
        if session.output is not None:
            summary["output"] = session.output
        if session.error is not None:
            summary["error"] = session.error
        return summary

    @staticmethod
    def _add_message(
        session: Session,
        role: MessageRole,
        content: str,
        tool_name: str | None = None,
    ) -> None:
        session.messages.append(SessionMessage(role=role, content=content, tool_name=tool_name))

    async def _record(
        self,
        entry_type: LedgerEntryType,
        session: Session,
        extra: dict[str, Any] | None = None,
    ) -> None:
        if self._ledger is None:
            return
        await self._ledger.append(
            entry_type,
            actor=session.dsid,
            payload={
                "session_id": session.id,
                "agent_id": session.agent_id,
                "steps": session.steps,
                **(extra or {}),
            },
        )

    async def _emit(self, event_type: EventType, session: Session) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            event_type,
            {
                "session_id": session.id,
                "agent_id": session.agent_id,
                "dsid": session.dsid,
                "status": session.status.value,
            },
            source="service:runtime",
        )

    def get_stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for session in self._sessions.values():
            by_status[session.status.value] = by_status.get(session.status.value, 0) + 1
        return {
            "sessions": len(self._sessions),
            "by_status": by_status,
            "sandbox": self._sandbox.get_metrics(),
        }
