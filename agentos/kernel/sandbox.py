"""
AgentOS Tool Sandbox

Capability-gated execution environment for agent tool calls:
- Permission checks against the caller's trust tier
- Per-session call budgets
- Timeouts and output size limits
- Per-tool execution metrics

Tools are plain async Python callables. Isolation comes from the permission
model and the narrow interface each tool exposes, not from process
boundaries.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog

from agentos.models.agent import ToolPermission, ToolSpec

logger = structlog.get_logger(__name__)


class SandboxError(Exception):
    """Raised when a tool call cannot be executed."""
    pass


class ToolPermissionError(SandboxError, PermissionError):
    """Raised when the caller lacks the permission a tool requires."""

    def __init__(self, tool: str, permission: ToolPermission):
        self.tool = tool
        self.permission = permission
        super().__init__(f"Tool '{tool}' requires permission '{permission.value}'")


class ToolBudgetExceededError(SandboxError):
    """Raised when a session has used up its tool call budget."""
    pass


class ToolTimeoutError(SandboxError):
    """Raised when a tool exceeds its time limit."""
    pass


class ToolExecutionError(SandboxError):
    """Raised when a tool handler fails."""
    pass


ToolHandler = Callable[[dict[str, Any], "SandboxContext"], Awaitable[Any]]


@dataclass
class Tool:
    """A tool specification bound to its async handler."""
    spec: ToolSpec
    handler: ToolHandler

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def permission(self) -> ToolPermission:
        return self.spec.permission


@dataclass
class ExecutionBudget:
    """
    Resource budget for one session's tool calls.

    Each invocation consumes one call; invocation is refused once the
    budget is exhausted.
    """
    max_tool_calls: int = 25
    timeout_seconds: float = 10.0
    max_output_chars: int = 4000
    calls_used: int = 0

    @property
    def remaining_calls(self) -> int:
        return max(0, self.max_tool_calls - self.calls_used)

    def consume(self) -> bool:
        """Consume one call. Returns False if the budget is exhausted."""
        if self.remaining_calls <= 0:
            return False
        self.calls_used += 1
        return True

    def is_exhausted(self) -> bool:
        return self.remaining_calls <= 0


@dataclass
class SandboxContext:
    """Everything a tool may know about the session invoking it."""
    session_id: str
    agent_id: str
    dsid: str
    permissions: frozenset[ToolPermission]
    budget: ExecutionBudget = field(default_factory=ExecutionBudget)
    metadata: dict[str, Any] = field(default_factory=dict)

    def allows(self, permission: ToolPermission) -> bool:
        return permission in self.permissions


@dataclass
class ToolResult:
    """Output of a successful tool call."""
    tool: str
    output: str
    truncated: bool
    duration_ms: float


@dataclass
class ExecutionMetrics:
    """Metrics collected across tool invocations."""
    invocations: int = 0
    errors: int = 0
    denied: int = 0
    total_execution_time_ms: float = 0.0
    last_invocation: Optional[datetime] = None
    tool_metrics: dict[str, dict[str, Any]] = field(default_factory=dict)

    def record_invocation(self, tool: str, execution_time_ms: float, success: bool) -> None:
        self.invocations += 1
        self.total_execution_time_ms += execution_time_ms
        self.last_invocation = datetime.now(UTC)
        if not success:
            self.errors += 1

        stats = self.tool_metrics.setdefault(
            tool, {"invocations": 0, "errors": 0, "total_time_ms": 0.0}
        )
        stats["invocations"] += 1
        stats["total_time_ms"] += execution_time_ms
        if not success:
            stats["errors"] += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "invocations": self.invocations,
            "errors": self.errors,
            "denied": self.denied,
            "error_rate": self.errors / self.invocations if self.invocations > 0 else 0,
            "avg_time_per_invocation_ms": (
                self.total_execution_time_ms / self.invocations if self.invocations > 0 else 0
            ),
            "last_invocation": self.last_invocation.isoformat() if self.last_invocation else None,
            "tool_metrics": self.tool_metrics,
        }


def _stringify(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, default=str)
    except (TypeError, ValueError):
        return str(result)


class ToolSandbox:
    """
    Registry and executor for agent tools.

    Usage:
        sandbox = ToolSandbox(build_default_tools(...))
        result = await sandbox.invoke("calculator", {"expression": "2+2"}, context)
    """

    def __init__(self, tools: Iterable[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        self._metrics = ExecutionMetrics()
        for tool in tools or ():
            self.register(tool)

    # =========================================================================
    # Registry
    # =========================================================================

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        logger.debug("tool_registered", tool=tool.name, permission=tool.permission.value)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get_tool(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_specs(self, names: Iterable[str] | None = None) -> list[ToolSpec]:
        if names is None:
            return [tool.spec for tool in self._tools.values()]
        return [self._tools[n].spec for n in names if n in self._tools]

    # =========================================================================
    # Execution
    # =========================================================================

    async def invoke(
        self,
        name: str,
        arguments: dict[str, Any],
        context: SandboxContext,
    ) -> ToolResult:
        """
        Execute a tool on behalf of a session.

        Raises:
            SandboxError: Unknown tool or malformed arguments
            ToolPermissionError: Context lacks the tool's permission
            ToolBudgetExceededError: No tool calls left in the budget
            ToolTimeoutError: Handler exceeded the budget timeout
            ToolExecutionError: Handler raised
        """
        tool = self._tools.get(name)
        if tool is None:
            raise SandboxError(f"Unknown tool '{name}'")
        if not isinstance(arguments, dict):
            raise SandboxError("Tool arguments must be an object")

        if not context.allows(tool.permission):
            self._metrics.denied += 1
            logger.warning(
                "tool_permission_denied",
                tool=name,
                permission=tool.permission.value,
                session_id=context.session_id,
                dsid=context.dsid,
            )
            raise ToolPermissionError(name, tool.permission)

        if not context.budget.consume():
            raise ToolBudgetExceededError(
                f"Tool call budget of {context.budget.max_tool_calls} exhausted"
            )

        start = time.monotonic()
        success = False
        try:
            raw = await asyncio.wait_for(
                tool.handler(arguments, context),
                timeout=context.budget.timeout_seconds,
            )
            success = True
        except asyncio.TimeoutError:
            raise ToolTimeoutError(
                f"Tool '{name}' timed out after {context.budget.timeout_seconds}s"
            )
        except SandboxError:
            raise
        except Exception as e:
            logger.info("tool_execution_failed", tool=name, error=str(e))
            raise ToolExecutionError(f"Tool '{name}' failed: {e}") from e
        finally:
            duration_ms = (time.monotonic() - start) * 1000
            self._metrics.record_invocation(name, duration_ms, success)

        output = _stringify(raw)
        truncated = len(output) > context.budget.max_output_chars
        if truncated:
            output = output[: context.budget.max_output_chars]

        logger.debug(
            "tool_invoked",
            tool=name,
            session_id=context.session_id,
            duration_ms=round(duration_ms, 2),
            truncated=truncated,
        )
        return ToolResult(tool=name, output=output, truncated=truncated, duration_ms=duration_ms)

    def get_metrics(self) -> dict[str, Any]:
        return {"registered_tools": sorted(self._tools), **self._metrics.to_dict()}
