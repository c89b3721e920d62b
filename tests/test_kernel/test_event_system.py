"""
Tests for the EventBus.

Tests cover:
- Subscription management (subscribe, unsubscribe, filtering)
- Inline and queued delivery
- Retries and the dead letter list
- History and metrics
"""

import asyncio

import pytest

from agentos.kernel.event_system import EventBus
from agentos.models.events import Event, EventType


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def event_bus() -> EventBus:
    """Create a fresh EventBus instance for testing."""
    return EventBus(
        max_queue_size=100,
        max_retries=2,
        retry_delay_seconds=0,
        handler_timeout_seconds=1.0,
    )


class _Recorder:
    def __init__(self):
        self.events: list[Event] = []

    async def __call__(self, event: Event) -> None:
        self.events.append(event)


# =============================================================================
# Subscriptions
# =============================================================================


class TestSubscriptions:
    """Subscribing, filtering and unsubscribing."""

    @pytest.mark.asyncio
    async def test_inline_delivery_before_start(self, event_bus):
        recorder = _Recorder()
        event_bus.subscribe(recorder, {EventType.AGENT_CREATED})

        event = await event_bus.publish(EventType.AGENT_CREATED, {"agent_id": "a"}, source="test")

        assert recorder.events == [event]
        assert event.source == "test"

    @pytest.mark.asyncio
    async def test_only_subscribed_types_delivered(self, event_bus):
        recorder = _Recorder()
        event_bus.subscribe(recorder, {EventType.AGENT_CREATED})

        await event_bus.publish(EventType.TEAM_CREATED, {}, source="test")

        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_filter_function(self, event_bus):
        recorder = _Recorder()
        event_bus.subscribe(
            recorder,
            {EventType.SESSION_COMPLETED},
            filter_func=lambda e: e.payload.get("agent_id") == "wanted",
        )

        await event_bus.publish(EventType.SESSION_COMPLETED, {"agent_id": "other"}, source="test")
        await event_bus.publish(EventType.SESSION_COMPLETED, {"agent_id": "wanted"}, source="test")

        assert [e.payload["agent_id"] for e in recorder.events] == ["wanted"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, event_bus):
        recorder = _Recorder()
        sub_id = event_bus.subscribe(recorder, {EventType.AGENT_CREATED})

        assert event_bus.unsubscribe(sub_id) is True
        assert event_bus.unsubscribe(sub_id) is False

        await event_bus.publish(EventType.AGENT_CREATED, {}, source="test")
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_subscribe_all(self, event_bus):
        recorder = _Recorder()
        event_bus.subscribe_all(recorder)

        await event_bus.publish(EventType.BLOCK_SEALED, {}, source="test")
        await event_bus.publish(EventType.LISTING_RATED, {}, source="test")

        assert len(recorder.events) == 2


# =============================================================================
# Failures
# =============================================================================


class TestDeliveryFailures:
    """Retries and dead letters."""

    @pytest.mark.asyncio
    async def test_failing_handler_is_retried_then_dead_lettered(self, event_bus):
        attempts = []

        async def broken(event: Event) -> None:
            attempts.append(event.id)
            raise RuntimeError("boom")

        event_bus.subscribe(broken, {EventType.SYSTEM_ERROR})
        event = await event_bus.publish(EventType.SYSTEM_ERROR, {}, source="test")

        assert len(attempts) == 2
        dead = event_bus.get_dead_letters()
        assert dead == [(event, "boom")]
        assert event_bus.get_metrics()["events_failed"] == 1

    @pytest.mark.asyncio
    async def test_handler_recovers_on_retry(self, event_bus):
        attempts = []

        async def flaky(event: Event) -> None:
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("transient")

        event_bus.subscribe(flaky, {EventType.SYSTEM_ERROR})
        await event_bus.publish(EventType.SYSTEM_ERROR, {}, source="test")

        assert len(attempts) == 2
        assert event_bus.get_dead_letters() == []
        assert event_bus.get_metrics()["events_delivered"] == 1

    @pytest.mark.asyncio
    async def test_one_failing_subscriber_does_not_block_others(self, event_bus):
        recorder = _Recorder()

        async def broken(event: Event) -> None:
            raise RuntimeError("boom")

        event_bus.subscribe(broken, {EventType.TEAM_CREATED})
        event_bus.subscribe(recorder, {EventType.TEAM_CREATED})
        await event_bus.publish(EventType.TEAM_CREATED, {}, source="test")

        assert len(recorder.events) == 1


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Background worker and history."""

    @pytest.mark.asyncio
    async def test_queued_delivery_after_start(self, event_bus):
        recorder = _Recorder()
        event_bus.subscribe(recorder, {EventType.AGENT_CREATED})

        await event_bus.start()
        assert event_bus.is_running
        await event_bus.publish(EventType.AGENT_CREATED, {}, source="test")
        await event_bus.stop(timeout=2.0)

        assert not event_bus.is_running
        assert len(recorder.events) == 1

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, event_bus):
        await event_bus.start()
        await event_bus.start()
        await event_bus.stop()
        await asyncio.sleep(0)
        assert not event_bus.is_running

    @pytest.mark.asyncio
    async def test_recent_events_filter(self, event_bus):
        await event_bus.publish(EventType.AGENT_CREATED, {}, source="test")
        await event_bus.publish(EventType.TEAM_CREATED, {}, source="test")
        await event_bus.publish(EventType.AGENT_CREATED, {}, source="test")

        assert len(event_bus.recent_events()) == 3
        assert len(event_bus.recent_events(event_type=EventType.AGENT_CREATED)) == 2
        assert event_bus.recent_events(limit=1)[0].type == EventType.AGENT_CREATED

    @pytest.mark.asyncio
    async def test_metrics(self, event_bus):
        event_bus.subscribe(_Recorder(), {EventType.AGENT_CREATED})
        await event_bus.publish(EventType.AGENT_CREATED, {}, source="test")

        metrics = event_bus.get_metrics()
        assert metrics["events_published"] == 1
        assert metrics["events_delivered"] == 1
        assert metrics["active_subscriptions"] == 1
        assert metrics["running"] is False
