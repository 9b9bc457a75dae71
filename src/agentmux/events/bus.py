"""In-process publish/subscribe for chat stream events."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
import inspect
import logging
from typing import TYPE_CHECKING, Any

from agentmux.events.types import ChatStreamEventType

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from agentmux.events.types import ChatStreamEvent
    from agentmux.providers.models import AIProvider

    EventHandler = Callable[[ChatStreamEvent], Awaitable[Any] | None]
    Unsubscribe = Callable[[], None]

logger = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY = 1000


@dataclass(frozen=True)
class EventBusStats:
    total_events: int
    events_by_type: dict[ChatStreamEventType, int] = field(default_factory=dict)
    current_provider: AIProvider | None = None
    active_listener_count: int = 0


class FilteredEventStream:
    """Pull-based view of the bus limited to some event types.

    Subscribes on construction, so events emitted before the first
    ``__anext__`` are buffered. ``aclose()`` unsubscribes and ends iteration.
    """

    def __init__(self, bus: ChatEventBus, types: Iterable[ChatStreamEventType]) -> None:
        self._queue: asyncio.Queue[ChatStreamEvent | None] = asyncio.Queue()
        self._closed = False
        self._unsubscribe = bus.on(types, self._queue.put_nowait)

    def __aiter__(self) -> FilteredEventStream:
        return self

    async def __anext__(self) -> ChatStreamEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            self._unsubscribe()
            self._queue.put_nowait(None)

    async def __aenter__(self) -> FilteredEventStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


class ChatEventBus:
    """Fan events out to typed and catch-all listeners.

    Handler failures, sync or async, are logged and never stop delivery to
    the remaining listeners. Async handlers run as tasks on the running
    loop; ``drain()`` waits for the ones still pending.
    """

    def __init__(self, max_history: int = DEFAULT_MAX_HISTORY) -> None:
        self._listeners: dict[ChatStreamEventType, list[EventHandler]] = {}
        self._any_listeners: list[EventHandler] = []
        self._history: deque[ChatStreamEvent] = deque(maxlen=max_history)
        self._current_provider: AIProvider | None = None
        self._pending: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def on(
        self,
        event_type: ChatStreamEventType | Iterable[ChatStreamEventType],
        handler: EventHandler,
    ) -> Unsubscribe:
        """Subscribe *handler* to one or more event types."""
        if isinstance(event_type, ChatStreamEventType):
            types = [event_type]
        else:
            types = [ChatStreamEventType(t) for t in event_type]
        for t in types:
            self._listeners.setdefault(t, []).append(handler)

        def unsubscribe() -> None:
            for t in types:
                handlers = self._listeners.get(t, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def on_any(self, handler: EventHandler) -> Unsubscribe:
        self._any_listeners.append(handler)

        def unsubscribe() -> None:
            if handler in self._any_listeners:
                self._any_listeners.remove(handler)

        return unsubscribe

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def emit(self, event: ChatStreamEvent) -> None:
        self._current_provider = event.provider
        self._history.append(event)
        # Snapshot so handlers may unsubscribe while being called.
        handlers = [*self._listeners.get(event.type, ()), *self._any_listeners]
        for handler in handlers:
            self._call(handler, event)

    def _call(self, handler: EventHandler, event: ChatStreamEvent) -> None:
        try:
            result = handler(event)
        except Exception as e:
            logger.warning("Event handler error for %s: %s", event.type, e)
            return
        if not inspect.isawaitable(result):
            return
        try:
            task = asyncio.ensure_future(result)
        except RuntimeError:
            if inspect.iscoroutine(result):
                result.close()
            logger.warning("Async handler for %s skipped: no running event loop", event.type)
            return
        self._pending.add(task)
        task.add_done_callback(lambda t: self._handler_done(t, event))

    def _handler_done(self, task: asyncio.Task[Any], event: ChatStreamEvent) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Event handler error for %s: %s", event.type, exc)

    async def drain(self) -> None:
        """Wait until every pending async handler has finished."""
        while self._pending:
            await asyncio.wait(set(self._pending))

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def create_filtered_stream(
        self, types: Iterable[ChatStreamEventType]
    ) -> FilteredEventStream:
        return FilteredEventStream(self, types)

    async def wait_for(
        self, event_type: ChatStreamEventType, timeout_s: float | None = None
    ) -> ChatStreamEvent:
        """Return the next *event_type* event; raise ``TimeoutError`` after *timeout_s*."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[ChatStreamEvent] = loop.create_future()

        def resolve(event: ChatStreamEvent) -> None:
            if not future.done():
                future.set_result(event)

        unsubscribe = self.on(event_type, resolve)
        try:
            async with asyncio.timeout(timeout_s):
                return await future
        except TimeoutError:
            raise TimeoutError(f"Timeout waiting for event: {event_type}") from None
        finally:
            unsubscribe()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_current_provider(self) -> AIProvider | None:
        return self._current_provider

    def get_event_history(self) -> list[ChatStreamEvent]:
        return list(self._history)

    def get_stats(self) -> EventBusStats:
        by_type: dict[ChatStreamEventType, int] = {}
        for event in self._history:
            by_type[event.type] = by_type.get(event.type, 0) + 1
        listeners = len(self._any_listeners) + sum(len(h) for h in self._listeners.values())
        return EventBusStats(
            total_events=len(self._history),
            events_by_type=by_type,
            current_provider=self._current_provider,
            active_listener_count=listeners,
        )

    def clear(self) -> None:
        """Drop all listeners and the event history."""
        self._listeners.clear()
        self._any_listeners.clear()
        self._history.clear()
