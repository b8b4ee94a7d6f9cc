"""Fire-and-forget publish/subscribe bus for lifecycle and task events."""

import asyncio
import inspect
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set
from uuid import uuid4

from taskbox.utils import get_logger

logger = get_logger(__name__)

DEFAULT_HISTORY_SIZE = 1000


class EventType(str, Enum):
    """Event names published by Taskbox components."""

    # Container lifecycle
    CONTAINER_CREATING = "container.creating"
    CONTAINER_CREATED = "container.created"
    CONTAINER_ERROR = "container.error"
    CONTAINER_DESTROYED = "container.destroyed"
    COMMAND_COMPLETED = "command.completed"

    # Task lifecycle
    TASK_STARTED = "task.started"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"

    # Agent
    AGENT_CONTAINER_CREATED = "agent.container_created"
    AGENT_CONTAINER_DESTROYED = "agent.container_destroyed"
    AGENT_MESSAGE = "agent.message"

    # System
    SYSTEM_READY = "system.ready"
    SYSTEM_SHUTDOWN = "system.shutdown"


@dataclass
class Event:
    """A published event."""

    type: str
    data: Dict[str, Any]
    id: str = field(default_factory=lambda: f"evt_{uuid4().hex}")
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "taskbox"
    correlation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "correlation_id": self.correlation_id,
        }


Handler = Callable[[Event], Any]
EventFilter = Callable[[Event], bool]


@dataclass
class _Subscriber:
    id: str
    handler: Handler
    filter: Optional[EventFilter] = None
    once: bool = False
    priority: int = 0


@dataclass
class Subscription:
    """Handle returned by subscribe()."""

    event_type: str
    subscriber_id: str
    _bus: "EventBus"

    def unsubscribe(self) -> bool:
        """Remove this subscription from the bus."""
        return self._bus.unsubscribe(self.event_type, self.subscriber_id)


def _event_key(event_type: EventType | str) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


class EventBus:
    """
    Publish/subscribe bus with a never-blocks, never-raises publish contract.

    Subscribers may be plain callables or coroutine functions. Deliveries are
    scheduled on the running event loop, so a slow or failing subscriber never
    delays or breaks the publisher. Zero subscribers is a normal state.
    """

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        """
        Initialize event bus.

        Args:
            history_size: Number of events kept for history queries
        """
        self._subscribers: Dict[str, List[_Subscriber]] = defaultdict(list)
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._counts: Dict[str, int] = defaultdict(int)
        self._pending: Set[asyncio.Future] = set()

    def publish(
        self,
        event_type: EventType | str,
        data: Optional[Dict[str, Any]] = None,
        *,
        source: str = "taskbox",
        correlation_id: Optional[str] = None,
    ) -> Event:
        """
        Publish an event to all subscribers of its type.

        Args:
            event_type: Event name
            data: Event payload
            source: Publishing component
            correlation_id: Optional ID tying related events together

        Returns:
            The published event
        """
        event = Event(
            type=_event_key(event_type),
            data=dict(data or {}),
            source=source,
            correlation_id=correlation_id,
        )
        self._history.append(event)
        self._counts[event.type] += 1

        for subscriber in list(self._subscribers.get(event.type, ())):
            try:
                self._dispatch(subscriber, event)
            except Exception as e:
                logger.error(
                    "Failed to dispatch event",
                    extra={"event_type": event.type, "subscriber_id": subscriber.id, "error": str(e)},
                )

        logger.debug("Event published", extra={"event_type": event.type, "event_id": event.id})
        return event

    def _dispatch(self, subscriber: _Subscriber, event: Event) -> None:
        if subscriber.filter is not None:
            try:
                if not subscriber.filter(event):
                    return
            except Exception as e:
                logger.warning(
                    "Event filter raised, skipping subscriber",
                    extra={"event_type": event.type, "subscriber_id": subscriber.id, "error": str(e)},
                )
                return

        if subscriber.once:
            self.unsubscribe(event.type, subscriber.id)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            self._invoke(subscriber, event)
        else:
            loop.call_soon(self._invoke, subscriber, event)

    def _invoke(self, subscriber: _Subscriber, event: Event) -> None:
        try:
            result = subscriber.handler(event)
        except Exception as e:
            logger.warning(
                "Event subscriber raised",
                extra={"event_type": event.type, "subscriber_id": subscriber.id, "error": str(e)},
            )
            return

        if not inspect.isawaitable(result):
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop: async subscribers cannot be delivered
            if inspect.iscoroutine(result):
                result.close()
            logger.debug(
                "Dropped async delivery outside event loop",
                extra={"event_type": event.type, "subscriber_id": subscriber.id},
            )
            return
        task = loop.create_task(self._await_handler(subscriber, event, result))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _await_handler(subscriber: _Subscriber, event: Event, result: Awaitable) -> None:
        try:
            await result
        except Exception as e:
            logger.warning(
                "Async event subscriber raised",
                extra={"event_type": event.type, "subscriber_id": subscriber.id, "error": str(e)},
            )

    def subscribe(
        self,
        event_type: EventType | str,
        handler: Handler,
        *,
        filter: Optional[EventFilter] = None,
        once: bool = False,
        priority: int = 0,
    ) -> Subscription:
        """
        Subscribe to an event type.

        Args:
            event_type: Event name
            handler: Callable or coroutine function receiving the Event
            filter: Optional predicate; events it rejects are not delivered
            once: Remove the subscription after the first delivery
            priority: Higher priorities are dispatched first

        Returns:
            Subscription handle
        """
        key = _event_key(event_type)
        subscriber = _Subscriber(
            id=f"sub_{uuid4().hex[:12]}",
            handler=handler,
            filter=filter,
            once=once,
            priority=priority,
        )
        subscribers = self._subscribers[key]
        subscribers.append(subscriber)
        subscribers.sort(key=lambda s: s.priority, reverse=True)

        logger.debug("Subscribed to event", extra={"event_type": key, "subscriber_id": subscriber.id})
        return Subscription(event_type=key, subscriber_id=subscriber.id, _bus=self)

    def subscribe_once(self, event_type: EventType | str, handler: Handler) -> Subscription:
        """Subscribe for a single delivery."""
        return self.subscribe(event_type, handler, once=True)

    def unsubscribe(self, event_type: EventType | str, subscriber_id: str) -> bool:
        """
        Remove a subscriber.

        Returns:
            True if the subscriber was found and removed
        """
        key = _event_key(event_type)
        subscribers = self._subscribers.get(key)
        if not subscribers:
            return False

        for subscriber in subscribers:
            if subscriber.id == subscriber_id:
                subscribers.remove(subscriber)
                if not subscribers:
                    del self._subscribers[key]
                return True
        return False

    async def wait_for(
        self,
        event_type: EventType | str,
        timeout: float = 30.0,
        predicate: Optional[EventFilter] = None,
    ) -> Event:
        """
        Wait for the next event of a type.

        Raises:
            asyncio.TimeoutError: If no matching event arrives in time
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def _resolve(event: Event) -> None:
            if not future.done():
                future.set_result(event)

        subscription = self.subscribe(event_type, _resolve, filter=predicate, once=True)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            subscription.unsubscribe()

    def history(self, event_type: EventType | str | None = None, limit: int = 100) -> List[Event]:
        """Return the most recent events, optionally of one type."""
        if event_type is None:
            events = list(self._history)
        else:
            key = _event_key(event_type)
            events = [e for e in self._history if e.type == key]
        return events[-limit:] if limit else events

    def event_counts(self) -> Dict[str, int]:
        """Number of events published per type."""
        return dict(self._counts)

    def subscriber_count(self, event_type: EventType | str | None = None) -> int:
        """Number of subscribers for one type, or in total."""
        if event_type is not None:
            return len(self._subscribers.get(_event_key(event_type), ()))
        return sum(len(s) for s in self._subscribers.values())

    def clear_history(self) -> None:
        """Forget recorded events."""
        self._history.clear()

    async def drain(self) -> None:
        """Wait until every scheduled delivery has run."""
        await asyncio.sleep(0)
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
            await asyncio.sleep(0)
