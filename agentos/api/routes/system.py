"""
System API Routes

Platform status and recent events.
"""

from typing import Any

from fastapi import APIRouter, Query

from agentos.api.dependencies import AppDep, EventBusDep, GovernanceDep
from agentos.models.events import Event, EventType

router = APIRouter()


@router.get("/status")
async def system_status(app: AppDep) -> dict[str, Any]:
    """Uptime and per-service statistics."""
    status = app.get_status()
    status["marketplace"] = (await app.marketplace.get_stats()).model_dump(mode="json")
    return status


@router.get("/events", response_model=list[Event])
async def recent_events(
    governor: GovernanceDep,
    event_bus: EventBusDep,
    event_type: EventType | None = None,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[Event]:
    return event_bus.recent_events(limit=limit, event_type=event_type)


@router.get("/dead-letters")
async def dead_letters(
    governor: GovernanceDep,
    event_bus: EventBusDep,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[dict[str, Any]]:
    """Events whose delivery failed after all retries."""
    return [
        {"event": event.model_dump(mode="json"), "error": error}
        for event, error in event_bus.get_dead_letters(limit)
    ]
