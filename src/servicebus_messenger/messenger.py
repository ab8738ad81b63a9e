"""Messenger — typed send/receive façade over per-type broker adapters."""

from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, TypeVar, cast

from .adapters import QueueAdapter, ServiceBusAdapter, TopicAdapter
from .config import MessengerSettings, ServiceBusConnectionString
from .envelope import Delivery, EntityKind
from .exceptions import (
    ConfigurationError,
    DuplicateSubscriptionError,
    MessengerClosedError,
    UnknownMessageError,
)
from .hub import MessageHub

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping
    from types import TracebackType

    from .hub import HubSubscription, MessageStream
    from .ports import IMessageBroker, IMessageSerializer

logger = logging.getLogger("servicebus_messenger.messenger")

T = TypeVar("T")

AdapterKey = tuple[EntityKind, type[Any]]


class Messenger:
    """The main messenger entry point.

    Owns one adapter per message type (and entity kind), a single fan-out
    hub and the callback registry. Only one callback per message type is
    supported through :meth:`subscribe`; :meth:`observe` streams are not
    limited.

    Keep one messenger per application; the single-callback check only
    covers the instance it runs on.

    Usage::

        async with Messenger(connection_string) as messenger:
            await messenger.send(OrderPlaced(order_id="1"))

            async def on_order(delivery: Delivery[OrderPlaced]) -> None:
                await messenger.lock(delivery)
                ...
                await messenger.complete(delivery)

            await messenger.subscribe(OrderPlaced, on_order)
    """

    def __init__(
        self,
        connection_string: str | None = None,
        *,
        broker: IMessageBroker | None = None,
        settings: MessengerSettings | None = None,
        serializer: IMessageSerializer | None = None,
    ) -> None:
        """Configure the messenger.

        Args:
            connection_string: Azure Service Bus connection string. Required
                unless ``broker`` is given.
            broker: Broker implementation to use instead of Azure Service Bus
                (e.g. :class:`~servicebus_messenger.memory.InMemoryBroker`).
                The caller keeps ownership and closes it.
            settings: Polling, lease renewal and retry tunables.
            serializer: Payload serializer; default ``MessageSerializer``.

        Raises:
            ConfigurationError: if neither a valid connection string nor a
                broker is provided.
        """
        self._owns_broker = broker is None
        if broker is None:
            broker = _azure_broker(connection_string)
        self._broker = broker
        self._settings = settings or MessengerSettings()
        self._serializer = serializer

        self._gate = asyncio.Lock()
        self._hub = MessageHub()
        self._adapters: dict[AdapterKey, ServiceBusAdapter[Any]] = {}
        self._subscriptions: dict[AdapterKey, HubSubscription] = {}
        self._closed = False

    # ── Introspection ────────────────────────────────────────────

    @property
    def hub(self) -> MessageHub:
        return self._hub

    @property
    def adapters(self) -> Mapping[AdapterKey, ServiceBusAdapter[Any]]:
        return MappingProxyType(self._adapters)

    def adapter_for(
        self, message_type: type[T], kind: EntityKind = EntityKind.QUEUE
    ) -> ServiceBusAdapter[T] | None:
        """Return the adapter for ``message_type`` if one was created."""
        return self._adapters.get((kind, message_type))

    def is_subscribed(
        self, message_type: type[Any], kind: EntityKind = EntityKind.QUEUE
    ) -> bool:
        return (kind, message_type) in self._subscriptions

    # ── Sending ──────────────────────────────────────────────────

    async def send(self, message: Any) -> None:
        """Send ``message`` to the queue of its type, creating it if absent."""
        adapter = await self._adapter(QueueAdapter, type(message))
        await adapter.send(message)

    async def publish(self, message: Any) -> None:
        """Publish ``message`` to the topic of its type, creating it if absent."""
        adapter = await self._adapter(TopicAdapter, type(message))
        await adapter.send(message)

    # ── Receiving ────────────────────────────────────────────────

    async def subscribe(
        self,
        message_type: type[T],
        callback: Callable[[Delivery[T]], Awaitable[None] | None],
    ) -> None:
        """Call ``callback`` for every message read from the queue of the type.

        Raises:
            DuplicateSubscriptionError: if a callback is already registered
                for ``message_type``.
        """
        await self._subscribe(QueueAdapter, message_type, callback)

    async def subscribe_topic(
        self,
        message_type: type[T],
        callback: Callable[[Delivery[T]], Awaitable[None] | None],
        subscription_name: str,
    ) -> None:
        """Call ``callback`` for every message read from a topic subscription.

        The subscription is created if absent.

        Raises:
            DuplicateSubscriptionError: if a topic callback is already
                registered for ``message_type``.
        """
        await self._subscribe(
            TopicAdapter, message_type, callback, subscription_name=subscription_name
        )

    async def _subscribe(
        self,
        adapter_cls: type[ServiceBusAdapter[Any]],
        message_type: type[T],
        callback: Callable[[Delivery[T]], Awaitable[None] | None],
        *,
        subscription_name: str | None = None,
    ) -> None:
        self._check_open()
        key: AdapterKey = (adapter_cls.kind, message_type)
        if key in self._subscriptions:
            raise DuplicateSubscriptionError(message_type)
        async with self._gate:
            if key in self._subscriptions:
                raise DuplicateSubscriptionError(message_type)
            adapter = await self._ensure_adapter(adapter_cls, message_type)
            if subscription_name is not None:
                await cast("TopicAdapter[T]", adapter).bind_subscription(
                    subscription_name
                )
            await adapter.start_reading()
            self._subscriptions[key] = self._hub.register(
                adapter.kind, message_type, callback
            )
        logger.info(
            "Subscribed callback for %s (%s)", message_type.__name__, key[0].value
        )

    async def cancel_receive(self, message_type: type[Any]) -> None:
        """Stop reading the queue of ``message_type`` and drop its callback.

        Messages already delivered can still be completed, abandoned or
        errored.
        """
        await self._cancel(EntityKind.QUEUE, message_type)

    async def cancel_topic_receive(self, message_type: type[Any]) -> None:
        """Stop reading the topic subscription of ``message_type``."""
        await self._cancel(EntityKind.TOPIC, message_type)

    async def _cancel(self, kind: EntityKind, message_type: type[Any]) -> None:
        self._check_open()
        async with self._gate:
            adapter = self._adapters.get((kind, message_type))
            if adapter is not None:
                await adapter.stop_reading()
            subscription = self._subscriptions.pop((kind, message_type), None)
            if subscription is not None:
                subscription.dispose()

    async def observe(self, message_type: type[T]) -> MessageStream[T]:
        """Start reading the queue of ``message_type`` and return a stream.

        Unlike :meth:`subscribe`, any number of streams may be consumed.
        """
        self._check_open()
        async with self._gate:
            adapter = await self._ensure_adapter(QueueAdapter, message_type)
            await adapter.start_reading()
        return self._hub.stream(EntityKind.QUEUE, message_type)

    async def observe_topic(
        self, message_type: type[T], subscription_name: str
    ) -> MessageStream[T]:
        """Start reading a topic subscription and return a stream."""
        self._check_open()
        async with self._gate:
            adapter = cast(
                "TopicAdapter[T]",
                await self._ensure_adapter(TopicAdapter, message_type),
            )
            await adapter.bind_subscription(subscription_name)
            await adapter.start_reading()
        return self._hub.stream(EntityKind.TOPIC, message_type)

    # ── Message lifecycle ────────────────────────────────────────

    async def lock(self, delivery: Delivery[T]) -> None:
        """Keep renewing the lease of ``delivery`` until it is resolved."""
        await self._owner(delivery).lock(delivery)

    async def complete(self, delivery: Delivery[T]) -> None:
        """Remove ``delivery`` from its entity."""
        await self._owner(delivery).complete(delivery)

    async def abandon(self, delivery: Delivery[T]) -> None:
        """Return ``delivery`` to its entity for redelivery."""
        await self._owner(delivery).abandon(delivery)

    async def error(self, delivery: Delivery[T], reason: str | None = None) -> None:
        """Move ``delivery`` to the dead-letter sub-queue of its entity."""
        await self._owner(delivery).error(delivery, reason=reason)

    def _owner(self, delivery: Delivery[T]) -> ServiceBusAdapter[T]:
        self._check_open()
        adapter = self._adapters.get((delivery.source, delivery.message_type))
        if adapter is None:
            raise UnknownMessageError(
                delivery.token,
                f"no {delivery.source.value} adapter for "
                f"{delivery.message_type.__name__}",
            )
        return adapter

    # ── Adapter registry ─────────────────────────────────────────

    async def _adapter(
        self, adapter_cls: type[ServiceBusAdapter[Any]], message_type: type[T]
    ) -> ServiceBusAdapter[T]:
        self._check_open()
        # unguarded fast path; the gate is only taken to create
        adapter = self._adapters.get((adapter_cls.kind, message_type))
        if adapter is not None:
            return adapter
        async with self._gate:
            return await self._ensure_adapter(adapter_cls, message_type)

    async def _ensure_adapter(
        self, adapter_cls: type[ServiceBusAdapter[Any]], message_type: type[T]
    ) -> ServiceBusAdapter[T]:
        """Return the adapter for the key, creating it. Caller holds the gate."""
        self._check_open()
        key: AdapterKey = (adapter_cls.kind, message_type)
        adapter = self._adapters.get(key)
        if adapter is not None:
            return adapter
        adapter = adapter_cls(
            self._broker,
            message_type,
            self._hub,
            settings=self._settings,
            serializer=self._serializer,
        )
        try:
            await adapter.initialize()
        except BaseException:
            await adapter.close()
            raise
        self._adapters[key] = adapter
        return adapter

    # ── Disposal ─────────────────────────────────────────────────

    def _check_open(self) -> None:
        if self._closed:
            raise MessengerClosedError("Messenger is closed")

    async def close(self) -> None:
        """Dispose callbacks, running handlers, adapters and owned clients."""
        if self._closed:
            return
        self._closed = True
        async with self._gate:
            for subscription in self._subscriptions.values():
                subscription.dispose()
            self._subscriptions.clear()
            await self._hub.close()
            for adapter in self._adapters.values():
                try:
                    await adapter.close()
                except Exception:
                    logger.exception(
                        "Failed to close adapter for %s", adapter.message_type.__name__
                    )
            self._adapters.clear()
        if self._owns_broker:
            await self._broker.close()
        logger.info("Messenger closed")

    async def __aenter__(self) -> Messenger:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


def _azure_broker(connection_string: str | None) -> IMessageBroker:
    ServiceBusConnectionString.parse(connection_string)
    try:
        from .servicebus import ServiceBusBroker
    except ImportError as e:
        raise ConfigurationError(
            "Azure Service Bus support requires the 'azure' extra: "
            "pip install servicebus-messenger[azure]"
        ) from e
    return ServiceBusBroker.from_connection_string(cast("str", connection_string))
