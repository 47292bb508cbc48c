"""Broadcast event bus connecting agents to any number of observers.

Usage:
    async with EventBus(buffer_size=64) as bus:
        async with bus.subscribe() as events:
            task = asyncio.create_task(agent.run_update(source))
            async for event in events:
                print(event.to_dict())
                if is_terminal(event):
                    break

The bus keeps no history: a subscriber only sees events published after it
subscribed. Each subscriber owns a bounded buffer; ``publish`` waits for
room in every live buffer, so a slow observer slows the publishers down
instead of losing events. A subscriber whose buffer stays full for longer
than ``publish_timeout`` (30 seconds by default) is considered dead: it is
closed and dropped so the remaining publishers and observers carry on.
Passing ``publish_timeout=None`` waits without limit.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import logging
from types import TracebackType
from typing import Self

from .models import BaseEvent

LOGGER = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 64
# A subscriber whose buffer stays full this long is treated as dead and evicted.
DEFAULT_PUBLISH_TIMEOUT = 30.0

_CLOSED = object()


class Subscription:
    """An independent, ordered view of events published after subscribing."""

    def __init__(self, bus: EventBus, buffer_size: int) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=buffer_size)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def _deliver(self, event: BaseEvent, timeout: float | None) -> bool:
        """Wait until ``event`` is buffered or the subscription is closed.

        Returns False when the event was not delivered.
        """
        if self.closed:
            return False
        put = asyncio.ensure_future(self._queue.put(event))
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {put, closed}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in (put, closed):
                if not waiter.done():
                    waiter.cancel()
        return put in done and not put.cancelled()

    def close(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self.closed:
            return
        self._closed.set()
        self._bus._discard(self)
        # Wake a consumer blocked on an empty queue.
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    def __aiter__(self) -> AsyncIterator[BaseEvent]:
        return self

    async def __anext__(self) -> BaseEvent:
        if self._queue.empty() and self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class EventBus:
    """In-memory broadcast channel with per-subscriber backpressure.

    The bus is explicitly constructed and shut down with :meth:`close` (or by
    leaving its ``async with`` block); tests create one bus per case.
    """

    def __init__(
        self,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        publish_timeout: float | None = DEFAULT_PUBLISH_TIMEOUT,
    ) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.buffer_size = buffer_size
        self.publish_timeout = publish_timeout
        self._subscribers: list[Subscription] = []
        self._publish_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        """Return a fresh subscription to every future event."""
        subscription = Subscription(self, self.buffer_size)
        if self._closed:
            subscription.close()
            return subscription
        self._subscribers.append(subscription)
        LOGGER.debug("bus.subscribed", extra={"event": "bus.subscribed"})
        return subscription

    def _discard(self, subscription: Subscription) -> None:
        try:
            self._subscribers.remove(subscription)
        except ValueError:
            pass

    async def publish(self, event: BaseEvent) -> None:
        """Deliver ``event`` to every live subscriber, in publish order."""
        if self._closed:
            LOGGER.debug(
                "bus.publish_after_close",
                extra={
                    "event": "bus.publish_after_close",
                    "event_type": type(event).__name__,
                },
            )
            return
        async with self._publish_lock:
            for subscription in list(self._subscribers):
                delivered = await subscription._deliver(event, self.publish_timeout)
                if not delivered and not subscription.closed:
                    LOGGER.warning(
                        "bus.subscriber.evicted",
                        extra={
                            "event": "bus.subscriber.evicted",
                            "event_type": type(event).__name__,
                            "timeout": self.publish_timeout,
                        },
                    )
                    subscription.close()

    def close(self) -> None:
        """Shut the bus down and end every subscription."""
        if self._closed:
            return
        self._closed = True
        for subscription in list(self._subscribers):
            subscription.close()
        self._subscribers.clear()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
