"""
Session Models

Agent execution sessions and the chunks streamed while they run.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from agentos.models.base import AgentOSModel, generate_id, utc_now


class SessionStatus(str, Enum):
    """Status of an execution session."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED)


class MessageRole(str, Enum):
    """Author of a transcript message."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class SessionMessage(AgentOSModel):
    """One message in a session transcript."""

    role: MessageRole
    content: str
    tool_name: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class Session(AgentOSModel):
    """
    A single run of an agent on one input.
    """

    id: str = Field(default_factory=generate_id)
    agent_id: str
    dsid: str
    caller_id: str
    license_id: str | None = Field(
        default=None,
        description="Marketplace license used when the caller is not the owner",
    )

    input: str
    status: SessionStatus = Field(default=SessionStatus.PENDING)
    messages: list[SessionMessage] = Field(default_factory=list)
    output: str | None = None
    error: str | None = None

    steps: int = 0
    tool_calls: int = 0
    tokens_used: int = 0

    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_ms(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000


class StreamChunk(AgentOSModel):
    """
    A chunk of a streamed session.

    content_type is one of: status, message, tool_call, tool_result,
    error, done.
    """

    chunk_id: int
    session_id: str
    content_type: str
    content: str | dict[str, Any]
    is_final: bool = False
    timestamp: datetime = Field(default_factory=utc_now)
