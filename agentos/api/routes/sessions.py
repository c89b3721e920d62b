"""
Session API Routes

Run agents, either to completion or streamed as Server-Sent Events.
"""

import json
from collections.abc import AsyncIterator

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from agentos.api.dependencies import (
    PrincipalDep,
    RegistryDep,
    RuntimeDep,
    not_found,
    service_errors,
)
from agentos.models.session import Session, SessionStatus
from agentos.monitoring import get_logger

logger = get_logger(__name__)

router = APIRouter()


class RunSessionRequest(BaseModel):
    agent_id: str
    input: str = Field(min_length=1, max_length=20000)


@router.post("", response_model=Session)
async def run_session(
    request: RunSessionRequest,
    principal: PrincipalDep,
    runtime: RuntimeDep,
) -> Session:
    """Run an agent to completion and return the finished session."""
    with service_errors():
        return await runtime.execute(request.agent_id, principal, request.input)


@router.post("/stream")
async def stream_session(
    request: RunSessionRequest,
    principal: PrincipalDep,
    runtime: RuntimeDep,
) -> StreamingResponse:
    """
    Run an agent and stream its progress.

    Each event is `data: <StreamChunk JSON>`; the last one has is_final=true.
    """
    with service_errors():
        session = await runtime.start_session(request.agent_id, principal, request.input)

    async def event_generator() -> AsyncIterator[str]:
        try:
            async for chunk in runtime.stream_session(session.id):
                yield f"data: {chunk.model_dump_json()}\n\n"
        except ValueError as e:
            logger.warning("session_stream_error", session_id=session.id, error=str(e))
            yield f"data: {json.dumps({'error': str(e)})}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Session-ID": session.id,
        },
    )


@router.get("", response_model=list[Session])
async def list_my_sessions(
    principal: PrincipalDep,
    runtime: RuntimeDep,
    agent_id: str | None = None,
    status_filter: SessionStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[Session]:
    return await runtime.list_sessions(
        caller_id=principal, agent_id=agent_id, status=status_filter, limit=limit
    )


@router.get("/{session_id}", response_model=Session)
async def get_session(
    session_id: str,
    principal: PrincipalDep,
    runtime: RuntimeDep,
    registry: RegistryDep,
) -> Session:
    """Visible to the caller who ran it and to the agent's owner."""
    session = await runtime.get_session(session_id)
    if session is None:
        raise not_found("Session")
    if session.caller_id != principal:
        agent = await registry.get_agent(session.agent_id)
        if agent is None or agent.owner_id != principal:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to view this session")
    return session


@router.post("/{session_id}/cancel", response_model=Session)
async def cancel_session(
    session_id: str,
    principal: PrincipalDep,
    runtime: RuntimeDep,
) -> Session:
    with service_errors():
        return await runtime.cancel_session(session_id, principal)
