"""Append-only, ordered event log with synchronous fan-out to subscribers."""

import logging
import time
from typing import Any, Callable, Collection, Iterable, cast
from uuid import uuid4

from msgspec.structs import replace

from mmagent.errors import MMAgentValidationError
from mmagent.events import (
    EVENT_CLASSES,
    STREAMING_EVENT_TYPES,
    AgentEvent,
    AssistantMessageEvent,
    EventType,
    ToolResultEvent,
    is_streaming_event,
)

logger = logging.getLogger(__name__)

type EventCallback = Callable[[AgentEvent], None]
type Unsubscribe = Callable[[], None]
type Clock = Callable[[], int]


def now_ms() -> int:
    return time.time_ns() // 1_000_000


class _Subscription:
    __slots__ = ("callback", "types")

    def __init__(self, callback: EventCallback, types: frozenset[str] | None):
        self.callback = callback
        self.types = types

    def wants(self, event: AgentEvent) -> bool:
        return self.types is None or event.event_type in self.types


class EventStream:
    """The single source of truth for a session.

    Events are appended in the order they are sent and every subscriber sees
    them in that order, synchronously, before `send_event` returns.
    """

    def __init__(self, *, clock: Clock = now_ms) -> None:
        self._clock = clock
        self._events: list[AgentEvent] = []
        self._subscriptions: list[_Subscription] = []
        self._last_timestamp = 0

    def __len__(self) -> int:
        return len(self._events)

    def _next_timestamp(self) -> int:
        self._last_timestamp = max(self._clock(), self._last_timestamp)
        return self._last_timestamp

    def create_event(self, event_type: EventType, /, **payload: Any) -> AgentEvent:
        """Build an event with a fresh id and timestamp without publishing it."""
        try:
            event_cls = EVENT_CLASSES[event_type]
        except KeyError:
            raise MMAgentValidationError(f"Unknown event type {event_type!r}") from None
        event = event_cls(id=uuid4().hex, timestamp=self._next_timestamp(), **payload)
        return cast(AgentEvent, event)

    def send_event(self, event: AgentEvent) -> AgentEvent:
        """Append `event` and notify subscribers in subscription order.

        Returns the event as stored, restamped when it is older than the log tail.
        """
        if event.timestamp < self._last_timestamp:
            event = replace(event, timestamp=self._last_timestamp)
        self._last_timestamp = event.timestamp
        self._events.append(event)

        for sub in tuple(self._subscriptions):
            if not sub.wants(event):
                continue
            try:
                sub.callback(event)
            except Exception:
                logger.exception(
                    "Event subscriber %r failed on %s", sub.callback, event.event_type
                )
        return event

    def emit(self, event_type: EventType, /, **payload: Any) -> AgentEvent:
        return self.send_event(self.create_event(event_type, **payload))

    def _add(self, sub: _Subscription) -> Unsubscribe:
        self._subscriptions.append(sub)

        def unsubscribe() -> None:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

        return unsubscribe

    def subscribe(self, callback: EventCallback) -> Unsubscribe:
        """Receive every future event; the returned callable is idempotent."""
        return self._add(_Subscription(callback, None))

    def subscribe_to_types(
        self, types: Iterable[EventType], callback: EventCallback
    ) -> Unsubscribe:
        return self._add(_Subscription(callback, frozenset(types)))

    def subscribe_to_streaming_events(self, callback: EventCallback) -> Unsubscribe:
        return self._add(_Subscription(callback, STREAMING_EVENT_TYPES))

    def get_events(
        self,
        types: Collection[EventType] | None = None,
        limit: int | None = None,
    ) -> list[AgentEvent]:
        """Events in append order, optionally filtered; `limit` keeps the newest."""
        events = (
            self._events
            if types is None
            else [e for e in self._events if e.event_type in types]
        )
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return list(events)

    def get_latest_assistant_response(self) -> AssistantMessageEvent | None:
        for event in reversed(self._events):
            if isinstance(event, AssistantMessageEvent):
                return event
        return None

    def get_latest_tool_results(self) -> list[ToolResultEvent]:
        """Tool results appended after the most recent assistant message."""
        results: list[ToolResultEvent] = []
        for event in reversed(self._events):
            if isinstance(event, AssistantMessageEvent):
                break
            if isinstance(event, ToolResultEvent):
                results.append(event)
        results.reverse()
        return results

    def persistable_events(self) -> list[AgentEvent]:
        return [e for e in self._events if not is_streaming_event(e)]
