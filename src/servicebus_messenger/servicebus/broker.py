"""ServiceBusBroker — Azure Service Bus namespace access and entity provisioning."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from azure.core.exceptions import (
    AzureError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.servicebus import ServiceBusReceiveMode
from azure.servicebus.aio import ServiceBusClient
from azure.servicebus.aio.management import ServiceBusAdministrationClient

from ..config import ServiceBusConnectionString
from ..envelope import EntityDescription, EntityKind
from ..exceptions import ConfigurationError, TransientBrokerError
from .handles import ServiceBusReceiverHandle, ServiceBusSenderHandle

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger("servicebus_messenger.servicebus")


class ServiceBusBroker:
    """``IMessageBroker`` over the azure-servicebus async clients.

    Data-plane links come from ``ServiceBusClient``; queues, topics and
    subscriptions are created on demand through
    ``ServiceBusAdministrationClient``.
    """

    def __init__(
        self,
        client: ServiceBusClient,
        admin: ServiceBusAdministrationClient,
    ) -> None:
        self._client = client
        self._admin = admin

    @classmethod
    def from_connection_string(
        cls, connection_string: str, **client_kwargs: Any
    ) -> ServiceBusBroker:
        """Build data-plane and administration clients from a connection string.

        Raises:
            ConfigurationError: if the connection string is invalid.
        """
        parsed = ServiceBusConnectionString.parse(connection_string)
        try:
            client = ServiceBusClient.from_connection_string(
                connection_string, **client_kwargs
            )
            admin = ServiceBusAdministrationClient.from_connection_string(
                connection_string
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        logger.debug("Connected to Service Bus namespace %s", parsed.namespace)
        return cls(client, admin)

    # ── Provisioning ─────────────────────────────────────────────

    async def ensure_queue(self, name: str) -> EntityDescription:
        props = await self._get_or_create(
            f"queue {name}",
            lambda: self._admin.get_queue(name),
            lambda: self._admin.create_queue(name),
        )
        return EntityDescription(name=name, lock_duration=props.lock_duration)

    async def ensure_topic(self, name: str) -> EntityDescription:
        await self._get_or_create(
            f"topic {name}",
            lambda: self._admin.get_topic(name),
            lambda: self._admin.create_topic(name),
        )
        return EntityDescription(name=name, kind=EntityKind.TOPIC)

    async def ensure_subscription(
        self, topic_name: str, subscription_name: str
    ) -> EntityDescription:
        await self.ensure_topic(topic_name)
        props = await self._get_or_create(
            f"subscription {topic_name}/{subscription_name}",
            lambda: self._admin.get_subscription(topic_name, subscription_name),
            lambda: self._admin.create_subscription(topic_name, subscription_name),
        )
        return EntityDescription(
            name=topic_name,
            kind=EntityKind.TOPIC,
            subscription_name=subscription_name,
            lock_duration=props.lock_duration,
        )

    async def _get_or_create(
        self,
        what: str,
        get: Callable[[], Awaitable[Any]],
        create: Callable[[], Awaitable[Any]],
    ) -> Any:
        try:
            try:
                return await get()
            except ResourceNotFoundError:
                pass
            try:
                created = await create()
            except ResourceExistsError:
                # created concurrently by another client
                return await get()
            logger.info("Created %s", what)
            return created
        except AzureError as e:
            raise TransientBrokerError(f"Failed to provision {what}: {e}") from e

    # ── Handles ──────────────────────────────────────────────────

    def create_sender(self, entity: EntityDescription) -> ServiceBusSenderHandle:
        if entity.kind is EntityKind.TOPIC:
            sender = self._client.get_topic_sender(topic_name=entity.name)
        else:
            sender = self._client.get_queue_sender(queue_name=entity.name)
        return ServiceBusSenderHandle(sender, entity.name)

    def create_receiver(
        self, entity: EntityDescription, *, prefetch_count: int = 0
    ) -> ServiceBusReceiverHandle:
        if entity.subscription_name is not None:
            receiver = self._client.get_subscription_receiver(
                topic_name=entity.name,
                subscription_name=entity.subscription_name,
                receive_mode=ServiceBusReceiveMode.PEEK_LOCK,
                prefetch_count=prefetch_count,
            )
        elif entity.kind is EntityKind.TOPIC:
            raise ConfigurationError(
                f"Cannot receive from topic {entity.name!r} without a subscription"
            )
        else:
            receiver = self._client.get_queue_receiver(
                queue_name=entity.name,
                receive_mode=ServiceBusReceiveMode.PEEK_LOCK,
                prefetch_count=prefetch_count,
            )
        return ServiceBusReceiverHandle(receiver, entity.path)

    async def close(self) -> None:
        await self._client.close()
        await self._admin.close()
