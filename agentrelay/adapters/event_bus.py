"""Async event bus fanning canonical events out to consumers.

The dispatch loop publishes every canonical event here. Consumers
either register a handler (called inline, in registration order) or
subscribe and read from their own bounded queue. A failing handler
is logged and skipped so it cannot stop delivery to the others.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from agentrelay.adapters.events import CanonicalEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[CanonicalEvent], "Awaitable[None] | None"]


class Subscription:
    """One consumer's view of the bus, backed by a bounded queue."""

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue[CanonicalEvent] = asyncio.Queue(
            maxsize=maxsize
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def get_nowait(self) -> CanonicalEvent:
        return self._queue.get_nowait()

    async def get(self) -> CanonicalEvent:
        return await self._queue.get()

    async def _put(self, event: CanonicalEvent, timeout: float) -> None:
        await asyncio.wait_for(self._queue.put(event), timeout=timeout)

    def __aiter__(self) -> AsyncIterator[CanonicalEvent]:
        return self._consume()

    async def _consume(self) -> AsyncIterator[CanonicalEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed or not self._queue.empty():
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop the consumer loop once the queue is drained."""
        self._closed = True


class EventBus:
    """Ordered fan-out of canonical events to handlers and subscribers."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._maxsize = maxsize
        self._put_timeout = put_timeout
        self._handlers: list[EventHandler] = []
        self._subscriptions: list[Subscription] = []
        self._closed = False

    def add_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def subscribe(self, maxsize: int | None = None) -> Subscription:
        """Create a new subscription receiving all future events."""
        sub = Subscription(maxsize or self._maxsize)
        if self._closed:
            sub.close()
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.close()
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    async def publish(self, event: CanonicalEvent) -> None:
        """Deliver an event to every handler, then every subscriber."""
        if self._closed:
            return
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Event handler %r failed on %s", handler, event.event_type,
                )
        for sub in list(self._subscriptions):
            if sub.closed:
                continue
            try:
                # Await put() with timeout to add backpressure instead of dropping
                await sub._put(event, self._put_timeout)
            except asyncio.TimeoutError:
                logger.error(
                    "EventBus subscriber blocked for %.0fs, dropping: %s "
                    "(queue size: %d)",
                    self._put_timeout,
                    event.event_type,
                    sub.qsize(),
                )

    def close(self) -> None:
        """Stop all consumers permanently."""
        self._closed = True
        for sub in self._subscriptions:
            sub.close()

    @property
    def closed(self) -> bool:
        return self._closed
