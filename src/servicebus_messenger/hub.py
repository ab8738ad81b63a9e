"""MessageHub — in-process fan-out of deliveries to typed callbacks and streams."""

from __future__ import annotations

import asyncio
import logging
from inspect import isawaitable
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from .envelope import Delivery, EntityKind

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

logger = logging.getLogger("servicebus_messenger.hub")

T = TypeVar("T")

RouteKey = tuple[EntityKind, type[Any]]

# pushed into observer queues on close to end their streams
_CLOSED: Any = object()


class HubSubscription:
    """Handle for a callback bound to the hub. ``dispose()`` unbinds it."""

    def __init__(self, hub: MessageHub, key: RouteKey, callback: Any) -> None:
        self._hub = hub
        self._key = key
        self._callback = callback
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._hub._unregister(self._key, self._callback)


class MessageHub:
    """Route-keyed registry of callbacks and observer queues.

    A delivery is routed by ``(delivery.source, delivery.message_type)``;
    only exact type matches receive it. Callbacks returning awaitables run as
    their own tasks so handlers never block the polling loop that published
    the delivery.
    """

    def __init__(self) -> None:
        self._callbacks: dict[RouteKey, list[Any]] = {}
        self._observers: dict[RouteKey, list[asyncio.Queue[Delivery[Any]]]] = {}
        self._pending: set[asyncio.Future[Any]] = set()
        self._closed = False

    # ── Registration ─────────────────────────────────────────────

    def register(
        self,
        source: EntityKind,
        message_type: type[T],
        callback: Callable[[Delivery[T]], Awaitable[None] | None],
    ) -> HubSubscription:
        """Bind ``callback`` to deliveries of ``message_type`` from ``source``."""
        key: RouteKey = (source, message_type)
        self._callbacks.setdefault(key, []).append(callback)
        logger.debug("Bound callback for %s (%s)", message_type.__name__, source.value)
        return HubSubscription(self, key, callback)

    def _unregister(self, key: RouteKey, callback: Any) -> None:
        callbacks = self._callbacks.get(key)
        if not callbacks:
            return
        try:
            callbacks.remove(callback)
        except ValueError:
            return
        if not callbacks:
            del self._callbacks[key]

    def attach(
        self, source: EntityKind, message_type: type[T]
    ) -> asyncio.Queue[Delivery[T]]:
        """Attach an observer queue that receives every matching delivery."""
        queue: asyncio.Queue[Delivery[Any]] = asyncio.Queue()
        self._observers.setdefault((source, message_type), []).append(queue)
        return queue

    def detach(
        self, source: EntityKind, message_type: type[Any], queue: asyncio.Queue[Any]
    ) -> None:
        """Detach an observer queue previously returned by :meth:`attach`."""
        key: RouteKey = (source, message_type)
        queues = self._observers.get(key)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._observers[key]

    def stream(self, source: EntityKind, message_type: type[T]) -> MessageStream[T]:
        """Return a restartable async stream of matching deliveries."""
        return MessageStream(self, source, message_type)

    # ── Dispatch ─────────────────────────────────────────────────

    def publish(self, delivery: Delivery[Any]) -> int:
        """Hand ``delivery`` to every matching callback and observer.

        Returns the number of receivers reached.
        """
        key: RouteKey = (delivery.source, delivery.message_type)
        callbacks = list(self._callbacks.get(key, ()))
        queues = list(self._observers.get(key, ()))
        for callback in callbacks:
            self._invoke(callback, delivery)
        for queue in queues:
            queue.put_nowait(delivery)
        if not callbacks and not queues:
            logger.debug(
                "No receivers for %s delivery %s",
                delivery.message_type.__name__,
                delivery.token,
            )
        return len(callbacks) + len(queues)

    def _invoke(self, callback: Any, delivery: Delivery[Any]) -> None:
        try:
            result = callback(delivery)
        except Exception:
            logger.exception(
                "Error in callback for %s delivery %s",
                delivery.message_type.__name__,
                delivery.token,
            )
            return
        if isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Future[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Error in async message callback", exc_info=exc)

    @property
    def closed(self) -> bool:
        return self._closed

    def observer_count(self, source: EntityKind, message_type: type[Any]) -> int:
        return len(self._observers.get((source, message_type), ()))

    @property
    def pending(self) -> int:
        """Number of async callbacks still running."""
        return len(self._pending)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for running async callbacks to finish (useful in tests)."""
        if self._pending:
            await asyncio.wait(list(self._pending), timeout=timeout)

    async def close(self) -> None:
        """Cancel running callbacks, end open streams and drop registrations."""
        self._closed = True
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()
        self._callbacks.clear()
        for queues in self._observers.values():
            for queue in queues:
                queue.put_nowait(_CLOSED)
        self._observers.clear()


class MessageStream(Generic[T]):
    """Async iterable of deliveries for one message type.

    Each ``async for`` attaches its own observer and detaches when the loop
    exits, so the stream can be iterated again or by several consumers.
    Iteration ends when the hub is closed::

        async for delivery in await messenger.observe(OrderPlaced):
            ...
    """

    def __init__(
        self, hub: MessageHub, source: EntityKind, message_type: type[T]
    ) -> None:
        self._hub = hub
        self._source = source
        self._message_type = message_type

    @property
    def message_type(self) -> type[T]:
        return self._message_type

    async def __aiter__(self) -> AsyncIterator[Delivery[T]]:
        if self._hub.closed:
            return
        queue = self._hub.attach(self._source, self._message_type)
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            self._hub.detach(self._source, self._message_type, queue)
