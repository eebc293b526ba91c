"""Append-only, subscribable in-memory event log for one session.

Usage::

    stream = EventStream(max_events=500)
    sub = stream.subscribe_to_types(["tool_result"], lambda e: print(e.name, e.content))
    stream.send_event(stream.create_event("user_message", content="hi"))
    sub.cancel()

Subscribers are notified synchronously, in append order. A subscriber that
needs to do slow work should consume :meth:`EventStream.iter_events`
instead, which buffers into an unbounded ``asyncio.Queue`` so the producer
never waits.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Iterable

from agent_loop.events import (
    CONVERSATION_EVENT_TYPES,
    STREAMING_EVENT_TYPES,
    AgentEventBase,
    ToolResultEvent,
    event_model_for,
)

logger = logging.getLogger(__name__)

EventCallback = Callable[[AgentEventBase], None]

_CLOSED = object()


class Subscription:
    """Handle returned by the ``subscribe*`` methods. ``cancel()`` is idempotent."""

    def __init__(
        self,
        stream: EventStream,
        callback: EventCallback,
        types: frozenset[str] | None,
    ) -> None:
        self._stream = stream
        self.callback = callback
        self.types = types
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def matches(self, event: AgentEventBase) -> bool:
        return self.types is None or event.type in self.types

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._stream._remove_subscription(self)


class EventStream:
    """Ordered event log with type filters, subscriptions and optional trimming."""

    def __init__(self, max_events: int = 1000, auto_trim: bool = True) -> None:
        if max_events < 1:
            raise ValueError(f"max_events must be >= 1, got {max_events}")
        self.max_events = max_events
        self.auto_trim = auto_trim
        self._events: list[AgentEventBase] = []
        self._subscriptions: list[Subscription] = []
        self._queues: list[tuple[asyncio.Queue[Any], frozenset[str] | None]] = []
        self._disposed = False

    def __len__(self) -> int:
        return len(self._events)

    # -- writing ------------------------------------------------------------

    def create_event(self, event_type: str, **payload: Any) -> AgentEventBase:
        """Build an event of ``event_type`` with a fresh id and timestamp. Does not append."""
        model = event_model_for(event_type)
        return model(**payload)

    def send_event(self, event: AgentEventBase) -> None:
        if self._disposed:
            raise RuntimeError("EventStream has been disposed")
        self._events.append(event)
        if self.auto_trim and len(self._events) > self.max_events:
            self._trim(len(self._events) - self.max_events)

        for sub in list(self._subscriptions):
            if not sub.active or not sub.matches(event):
                continue
            try:
                sub.callback(event)
            except Exception:
                logger.exception("Event subscriber failed on %s event", event.type)

        for queue, types in self._queues:
            if types is None or event.type in types:
                queue.put_nowait(event)

    def _trim(self, excess: int) -> None:
        """Drop up to ``excess`` of the oldest non-conversation events.

        Conversation events are what the model's history is built from, so
        the log may stay above ``max_events`` when only those remain.
        """
        kept: list[AgentEventBase] = []
        dropped = 0
        for event in self._events:
            if dropped < excess and event.type not in CONVERSATION_EVENT_TYPES:
                dropped += 1
                continue
            kept.append(event)
        if dropped:
            self._events = kept
            logger.debug("Trimmed %d oldest events (max_events=%d)", dropped, self.max_events)

    # -- reading ------------------------------------------------------------

    def get_events(
        self,
        filter_types: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[AgentEventBase]:
        """Events in append order, optionally filtered by type; ``limit`` keeps the newest N."""
        if filter_types is None:
            events = list(self._events)
        else:
            wanted = frozenset(filter_types)
            events = [e for e in self._events if e.type in wanted]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def get_events_by_type(self, types: Iterable[str]) -> list[AgentEventBase]:
        return self.get_events(filter_types=types)

    def get_latest_tool_results(self) -> list[ToolResultEvent]:
        """Results answering the most recent assistant message that requested tools."""
        for idx in range(len(self._events) - 1, -1, -1):
            event = self._events[idx]
            if event.type == "assistant_message" and getattr(event, "tool_calls", None):
                ids = {tc.get("id") for tc in event.tool_calls}  # type: ignore[attr-defined]
                return [
                    e
                    for e in self._events[idx + 1 :]
                    if isinstance(e, ToolResultEvent) and e.tool_call_id in ids
                ]
        return []

    # -- subscriptions --------------------------------------------------------

    def subscribe(self, callback: EventCallback) -> Subscription:
        return self._add_subscription(callback, None)

    def subscribe_to_types(self, types: Iterable[str], callback: EventCallback) -> Subscription:
        return self._add_subscription(callback, frozenset(types))

    def subscribe_to_streaming_events(self, callback: EventCallback) -> Subscription:
        return self._add_subscription(callback, STREAMING_EVENT_TYPES)

    def _add_subscription(
        self, callback: EventCallback, types: frozenset[str] | None
    ) -> Subscription:
        if self._disposed:
            raise RuntimeError("EventStream has been disposed")
        sub = Subscription(self, callback, types)
        self._subscriptions.append(sub)
        return sub

    def _remove_subscription(self, sub: Subscription) -> None:
        try:
            self._subscriptions.remove(sub)
        except ValueError:
            pass

    async def iter_events(
        self, types: Iterable[str] | None = None
    ) -> AsyncIterator[AgentEventBase]:
        """Yield events appended after this call, until :meth:`dispose`."""
        queue: asyncio.Queue[Any] = asyncio.Queue()
        entry = (queue, frozenset(types) if types is not None else None)
        self._queues.append(entry)
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            if entry in self._queues:
                self._queues.remove(entry)

    def dispose(self) -> None:
        """Drop all events and subscriptions; wake any ``iter_events`` consumers."""
        if self._disposed:
            return
        self._disposed = True
        for sub in list(self._subscriptions):
            sub.cancel()
        for queue, _types in self._queues:
            queue.put_nowait(_CLOSED)
        self._queues.clear()
        self._events.clear()
