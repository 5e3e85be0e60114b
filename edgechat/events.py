"""
Broadcast event streams.

A ``BroadcastStream`` fans each emitted event out to every current listener
(plain callbacks) and subscriber (async iterators). Events emitted after
``close()`` are dropped without error.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("edgechat")

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    """Async iterator over the events of one ``BroadcastStream``.

    Registered at construction, so no event emitted after ``subscribe()`` returns
    is missed even if iteration starts later.
    """

    def __init__(self, stream: BroadcastStream[T]) -> None:
        self._stream = stream
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False

    def _push(self, item: object) -> None:
        self._queue.put_nowait(item)

    def __aiter__(self) -> Subscription[T]:
        return self

    async def __anext__(self) -> T:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._done = True
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    def cancel(self) -> None:
        """Stop receiving events."""
        self._stream._detach(self)
        if not self._done:
            self._push(_CLOSED)


class BroadcastStream(Generic[T]):
    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: list[Callable[[T], object]] = []
        self._subscriptions: list[Subscription[T]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def listen(self, callback: Callable[[T], object]) -> Callable[[], None]:
        """Register a synchronous callback; returns a function that removes it."""
        if self._closed:
            return lambda: None
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def subscribe(self) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(self)
        if self._closed:
            subscription._push(_CLOSED)
        else:
            self._subscriptions.append(subscription)
        return subscription

    def emit(self, event: T) -> None:
        if self._closed:
            logger.debug(f"[EdgeChat Events] Dropped event on closed stream '{self.name}'.")
            return
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.warning(
                    "[EdgeChat Events] Listener on '%s' raised.", self.name, exc_info=True
                )
        for subscription in list(self._subscriptions):
            subscription._push(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        for subscription in self._subscriptions:
            subscription._push(_CLOSED)
        self._subscriptions.clear()

    def _detach(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def __repr__(self) -> str:
        return (
            f"BroadcastStream(name={self.name!r}, listeners={len(self._listeners)}, "
            f"subscriptions={len(self._subscriptions)}, closed={self._closed})"
        )
