"""
Event System for AgentOS

Async pub/sub event bus connecting identity, trust, runtime, teams,
ledger and marketplace without direct imports between them.
"""

import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Optional, Set
from uuid import uuid4

import structlog

from agentos.models.events import Event, EventType

logger = structlog.get_logger(__name__)


# Type alias for event handlers
EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


@dataclass
class Subscription:
    """Represents an event subscription."""
    id: str
    handler: EventHandler
    event_types: Set[EventType]
    filter_func: Optional[Callable[[Event], bool]] = None

    def matches(self, event: Event) -> bool:
        if event.type not in self.event_types:
            return False
        if self.filter_func and not self.filter_func(event):
            return False
        return True


@dataclass
class EventMetrics:
    """Metrics for event bus monitoring."""
    events_published: int = 0
    events_delivered: int = 0
    events_failed: int = 0
    avg_delivery_time_ms: float = 0.0
    delivery_times: deque = field(default_factory=lambda: deque(maxlen=1000))

    def record_delivery(self, duration_ms: float) -> None:
        self.delivery_times.append(duration_ms)
        self.avg_delivery_time_ms = sum(self.delivery_times) / len(self.delivery_times)


class EventBus:
    """
    Async event bus for pub/sub messaging.

    Until start() is called, events are delivered inline by publish(). Once
    started, they are queued and delivered by a background worker.

    Features:
    - Event type index for subscriber lookup
    - Per-handler retries with a dead letter list
    - Bounded history of recent events
    - Metrics collection
    """

    def __init__(
        self,
        max_queue_size: int = 10000,
        max_retries: int = 3,
        retry_delay_seconds: float = 0.5,
        handler_timeout_seconds: float = 30.0,
        history_size: int = 500,
    ):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue_size)
        self._dead_letters: deque[tuple[Event, str]] = deque(maxlen=1000)
        self._history: deque[Event] = deque(maxlen=history_size)
        self._metrics = EventMetrics()
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._handler_timeout = handler_timeout_seconds
        self._running = False
        self._worker_task: Optional[asyncio.Task] = None

        self._type_index: dict[EventType, Set[str]] = defaultdict(set)

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Subscription Management
    # =========================================================================

    def subscribe(
        self,
        handler: EventHandler,
        event_types: Set[EventType],
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            handler: Async function to handle events
            event_types: Set of event types to subscribe to
            filter_func: Optional additional filter

        Returns:
            Subscription ID for unsubscribing
        """
        sub_id = str(uuid4())
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            handler=handler,
            event_types=set(event_types),
            filter_func=filter_func,
        )
        for event_type in event_types:
            self._type_index[event_type].add(sub_id)

        logger.debug(
            "event_subscription_created",
            subscription_id=sub_id,
            event_types=[et.value for et in event_types],
        )
        return sub_id

    def subscribe_all(self, handler: EventHandler) -> str:
        """Subscribe to all event types."""
        return self.subscribe(handler=handler, event_types=set(EventType))

    def unsubscribe(self, subscription_id: str) -> bool:
        """Returns True if unsubscribed, False if not found."""
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False
        for event_type in subscription.event_types:
            self._type_index[event_type].discard(subscription_id)
        logger.debug("event_subscription_removed", subscription_id=subscription_id)
        return True

    # =========================================================================
    # Event Publishing
    # =========================================================================

    async def publish(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        source: str,
        correlation_id: Optional[str] = None,
    ) -> Event:
        """
        Publish an event.

        Args:
            event_type: Type of event
            payload: Event data
            source: Source identifier (e.g., "service:marketplace")
            correlation_id: For linking related events

        Returns:
            Created Event
        """
        event = Event(
            type=event_type,
            payload=payload,
            source=source,
            correlation_id=correlation_id,
        )
        self._metrics.events_published += 1
        self._history.append(event)

        logger.debug(
            "event_published",
            event_id=event.id,
            event_type=event_type.value,
            source=source,
        )

        if self._running:
            await self._event_queue.put(event)
        else:
            await self._process_event(event)
        return event

    # =========================================================================
    # Event Processing
    # =========================================================================

    async def _process_event(self, event: Event) -> None:
        """Dispatch an event to every matching subscriber."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        tasks = []
        for sub_id in list(self._type_index.get(event.type, ())):
            subscription = self._subscriptions.get(sub_id)
            if subscription and subscription.matches(event):
                tasks.append(self._deliver_event(subscription, event))

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    self._metrics.events_failed += 1
                    logger.error("event_delivery_failed", event_id=event.id, error=str(result))
                else:
                    self._metrics.events_delivered += 1

        self._metrics.record_delivery((loop.time() - start_time) * 1000)

    async def _deliver_event(self, subscription: Subscription, event: Event) -> None:
        """Deliver event to a single subscriber with retry logic."""
        attempt = 1
        while True:
            try:
                await asyncio.wait_for(subscription.handler(event), timeout=self._handler_timeout)
                return
            except Exception as e:
                if attempt >= self._max_retries:
                    self._dead_letters.append((event, str(e) or type(e).__name__))
                    raise
                logger.warning(
                    "event_delivery_retry",
                    subscription_id=subscription.id,
                    event_id=event.id,
                    attempt=attempt,
                    error=str(e),
                )
                await asyncio.sleep(self._retry_delay * attempt)
                attempt += 1

    async def _worker(self) -> None:
        """Background worker that processes events from the queue."""
        logger.info("event_worker_started")

        while self._running:
            try:
                event = await asyncio.wait_for(self._event_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            try:
                await self._process_event(event)
            except Exception as e:
                logger.error("event_worker_error", error=str(e))
            finally:
                self._event_queue.task_done()

        logger.info("event_worker_stopped")

    # =========================================================================
    # Lifecycle Management
    # =========================================================================

    async def start(self) -> None:
        """Start the event bus worker."""
        if self._running:
            return
        self._running = True
        self._worker_task = asyncio.create_task(self._worker())
        logger.info("event_bus_started")

    async def stop(self, timeout: float = 10.0) -> None:
        """Drain pending events (up to timeout) and stop the worker."""
        if not self._running:
            return

        try:
            await asyncio.wait_for(self._event_queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("event_bus_stop_timeout", pending_events=self._event_queue.qsize())

        self._running = False
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

        logger.info("event_bus_stopped")

    # =========================================================================
    # Dead Letters & History
    # =========================================================================

    def get_dead_letters(self, limit: int = 100) -> list[tuple[Event, str]]:
        """Most recent failed deliveries as (event, error_message)."""
        return list(self._dead_letters)[-limit:]

    def recent_events(
        self,
        limit: int = 50,
        event_type: Optional[EventType] = None,
    ) -> list[Event]:
        events = [e for e in self._history if event_type is None or e.type == event_type]
        return events[-limit:]

    # =========================================================================
    # Metrics & Monitoring
    # =========================================================================

    def get_metrics(self) -> dict[str, Any]:
        """Get event bus metrics."""
        return {
            "events_published": self._metrics.events_published,
            "events_delivered": self._metrics.events_delivered,
            "events_failed": self._metrics.events_failed,
            "avg_delivery_time_ms": round(self._metrics.avg_delivery_time_ms, 2),
            "queue_size": self._event_queue.qsize(),
            "dead_letter_size": len(self._dead_letters),
            "active_subscriptions": len(self._subscriptions),
            "running": self._running,
        }

