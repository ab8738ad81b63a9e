"""Ports for the broker and serializer collaborators.

Broker implementations live in ``servicebus`` (Azure Service Bus) and
``memory`` (in-process, for tests and local runs).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

if TYPE_CHECKING:
    from .envelope import EntityDescription, OutgoingMessage, ReceivedMessage

T = TypeVar("T")


@runtime_checkable
class IMessageSender(Protocol):
    """Sends messages to one entity."""

    async def send(self, message: OutgoingMessage) -> None:
        """Send a single message."""
        ...

    async def close(self) -> None:
        """Release the underlying link."""
        ...


@runtime_checkable
class IMessageReceiver(Protocol):
    """Peek-lock receiver for one entity.

    Settlement and renewal must go through the receiver that delivered the
    message.
    """

    async def receive(
        self, max_count: int, max_wait_time: float | None = None
    ) -> list[ReceivedMessage]:
        """Receive up to ``max_count`` messages in peek-lock mode."""
        ...

    async def complete(self, message: ReceivedMessage) -> None:
        """Acknowledge and remove the message from the entity."""
        ...

    async def abandon(self, message: ReceivedMessage) -> None:
        """Release the lock and make the message visible again."""
        ...

    async def dead_letter(
        self,
        message: ReceivedMessage,
        reason: str | None = None,
        description: str | None = None,
    ) -> None:
        """Move the message to the entity's dead-letter sub-queue."""
        ...

    async def renew_lock(self, message: ReceivedMessage) -> None:
        """Extend the peek-lock lease of the message."""
        ...

    async def close(self) -> None:
        """Release the underlying link."""
        ...


@runtime_checkable
class IMessageBroker(Protocol):
    """Data-plane and create-if-absent access to a broker namespace."""

    async def ensure_queue(self, name: str) -> EntityDescription:
        """Return the queue, creating it if absent."""
        ...

    async def ensure_topic(self, name: str) -> EntityDescription:
        """Return the topic, creating it if absent."""
        ...

    async def ensure_subscription(
        self, topic_name: str, subscription_name: str
    ) -> EntityDescription:
        """Return the topic subscription, creating it if absent."""
        ...

    def create_sender(self, entity: EntityDescription) -> IMessageSender:
        """Open a sender for the queue or topic."""
        ...

    def create_receiver(
        self, entity: EntityDescription, *, prefetch_count: int = 0
    ) -> IMessageReceiver:
        """Open a peek-lock receiver for the queue or subscription."""
        ...

    async def close(self) -> None:
        """Close every client held by the broker."""
        ...


@runtime_checkable
class IMessageSerializer(Protocol):
    """Typed value ⇄ wire payload."""

    def serialize(self, message: Any) -> bytes:
        """Encode ``message`` to bytes."""
        ...

    def deserialize(self, raw: bytes, message_type: type[T]) -> T:
        """Decode ``raw`` into an instance of ``message_type``."""
        ...
