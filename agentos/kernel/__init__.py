"""
AgentOS Kernel

Event bus and tool sandbox.
"""

from agentos.kernel.event_system import EventBus
from agentos.kernel.sandbox import (
    ExecutionBudget,
    SandboxContext,
    SandboxError,
    Tool,
    ToolBudgetExceededError,
    ToolExecutionError,
    ToolPermissionError,
    ToolResult,
    ToolSandbox,
    ToolTimeoutError,
)

__all__ = [
    "EventBus",
    "ExecutionBudget",
    "SandboxContext",
    "SandboxError",
    "Tool",
    "ToolBudgetExceededError",
    "ToolExecutionError",
    "ToolPermissionError",
    "ToolResult",
    "ToolSandbox",
    "ToolTimeoutError",
]
