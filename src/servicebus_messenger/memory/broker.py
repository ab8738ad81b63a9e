"""InMemoryBroker — peek-lock broker held in process memory.

Models the parts of a managed broker the messenger relies on: queues,
topics with subscriptions, peek-lock leases that expire and redeliver,
delivery counts, dead-letter sub-queues and lock renewal. Fault injection
helpers let tests exercise the retry and rebuild paths.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from ..envelope import EntityDescription, EntityKind, ReceivedMessage
from ..exceptions import MessageLockLostError, TransientBrokerError

if TYPE_CHECKING:
    from collections.abc import Callable

    from ..envelope import OutgoingMessage

logger = logging.getLogger("servicebus_messenger.memory")


@dataclass
class _StoredMessage:
    message: OutgoingMessage
    sequence_number: int
    delivery_count: int = 0
    lock_token: str | None = None
    locked_until: float = 0.0
    dead_letter_reason: str | None = None
    dead_letter_description: str | None = None


class _Entity:
    """Message store of a queue or a topic subscription."""

    def __init__(self, description: EntityDescription) -> None:
        self.description = description
        self.active: deque[_StoredMessage] = deque()
        self.locked: dict[str, _StoredMessage] = {}
        self.dead_letters: list[_StoredMessage] = []

    def expire_locks(self, now: float) -> None:
        expired = [t for t, m in self.locked.items() if m.locked_until <= now]
        if not expired:
            return
        for token in expired:
            stored = self.locked.pop(token)
            stored.lock_token = None
            self.active.append(stored)
        self.active = deque(sorted(self.active, key=lambda m: m.sequence_number))


class InMemoryBroker:
    """In-process implementation of ``IMessageBroker``.

    Pass it to ``Messenger(broker=...)`` in tests; inspection helpers
    (:meth:`active_messages`, :meth:`dead_letters`, :attr:`sent`) support
    assertions.
    """

    def __init__(
        self,
        *,
        lock_duration: timedelta = timedelta(seconds=30),
        max_delivery_count: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Configure the broker.

        Args:
            lock_duration: Lease given to every entity created by the broker.
            max_delivery_count: Deliveries before a message is dead-lettered
                by the broker itself.
            clock: Monotonic clock in seconds (overridable for tests).
        """
        if max_delivery_count < 1:
            raise ValueError("max_delivery_count must be >= 1")
        self.lock_duration = lock_duration
        self.max_delivery_count = max_delivery_count
        self._clock = clock
        self._sequence = itertools.count(1)
        self._queues: dict[str, _Entity] = {}
        self._topics: dict[str, EntityDescription] = {}
        self._subscriptions: dict[str, dict[str, _Entity]] = {}
        self._send_faults: deque[BaseException] = deque()
        self._receive_faults: deque[BaseException] = deque()

        self.sent: list[tuple[str, OutgoingMessage]] = []
        self.senders_created = 0
        self.receivers_created = 0
        self.lock_renewals = 0
        self.closed = False

    # ── Provisioning ─────────────────────────────────────────────

    async def ensure_queue(self, name: str) -> EntityDescription:
        entity = self._queues.get(name)
        if entity is None:
            entity = _Entity(
                EntityDescription(name=name, lock_duration=self.lock_duration)
            )
            self._queues[name] = entity
            logger.info("Created queue %s", name)
        return entity.description

    async def ensure_topic(self, name: str) -> EntityDescription:
        description = self._topics.get(name)
        if description is None:
            description = EntityDescription(
                name=name, kind=EntityKind.TOPIC, lock_duration=self.lock_duration
            )
            self._topics[name] = description
            self._subscriptions[name] = {}
            logger.info("Created topic %s", name)
        return description

    async def ensure_subscription(
        self, topic_name: str, subscription_name: str
    ) -> EntityDescription:
        await self.ensure_topic(topic_name)
        subscriptions = self._subscriptions[topic_name]
        entity = subscriptions.get(subscription_name)
        if entity is None:
            entity = _Entity(
                EntityDescription(
                    name=topic_name,
                    kind=EntityKind.TOPIC,
                    subscription_name=subscription_name,
                    lock_duration=self.lock_duration,
                )
            )
            subscriptions[subscription_name] = entity
            logger.info("Created subscription %s", entity.description.path)
        return entity.description

    # ── Handles ──────────────────────────────────────────────────

    def create_sender(self, entity: EntityDescription) -> InMemorySender:
        self.senders_created += 1
        return InMemorySender(self, entity)

    def create_receiver(
        self, entity: EntityDescription, *, prefetch_count: int = 0
    ) -> InMemoryReceiver:
        self.receivers_created += 1
        return InMemoryReceiver(self, self._entity(entity))

    async def close(self) -> None:
        self.closed = True

    # ── Fault injection ──────────────────────────────────────────

    def fail_next_sends(
        self, count: int = 1, error: BaseException | None = None
    ) -> None:
        """Make the next ``count`` sends raise ``error``."""
        for _ in range(count):
            self._send_faults.append(
                error or TransientBrokerError("Injected send fault")
            )

    def fail_next_receives(
        self, count: int = 1, error: BaseException | None = None
    ) -> None:
        """Make the next ``count`` receives raise ``error``."""
        for _ in range(count):
            self._receive_faults.append(
                error or TransientBrokerError("Injected receive fault")
            )

    # ── Inspection ───────────────────────────────────────────────

    def active_messages(self, path: str) -> list[OutgoingMessage]:
        """Messages visible on a queue or subscription path."""
        entity = self._entity_by_path(path)
        entity.expire_locks(self._clock())
        return [m.message for m in entity.active]

    def locked_messages(self, path: str) -> list[OutgoingMessage]:
        """Messages currently peek-locked on a queue or subscription path."""
        entity = self._entity_by_path(path)
        entity.expire_locks(self._clock())
        return [m.message for m in entity.locked.values()]

    def dead_letters(self, path: str) -> list[OutgoingMessage]:
        """Messages in the dead-letter sub-queue of a path."""
        return [m.message for m in self._entity_by_path(path).dead_letters]

    def dead_letter_reasons(self, path: str) -> list[str | None]:
        return [m.dead_letter_reason for m in self._entity_by_path(path).dead_letters]

    def has_queue(self, name: str) -> bool:
        return name in self._queues

    def has_topic(self, name: str) -> bool:
        return name in self._topics

    def has_subscription(self, topic_name: str, subscription_name: str) -> bool:
        return subscription_name in self._subscriptions.get(topic_name, {})

    # ── Internals ────────────────────────────────────────────────

    def _now(self) -> float:
        return self._clock()

    def _entity(self, description: EntityDescription) -> _Entity:
        return self._entity_by_path(description.path)

    def _entity_by_path(self, path: str) -> _Entity:
        if "/subscriptions/" in path:
            topic_name, _, subscription_name = path.partition("/subscriptions/")
            entity = self._subscriptions.get(topic_name, {}).get(subscription_name)
        else:
            entity = self._queues.get(path)
        if entity is None:
            raise TransientBrokerError(f"Entity {path!r} does not exist")
        return entity

    def _deliver(self, entity: EntityDescription, message: OutgoingMessage) -> None:
        if self._send_faults:
            raise self._send_faults.popleft()
        if entity.kind is EntityKind.TOPIC:
            if entity.name not in self._topics:
                raise TransientBrokerError(f"Topic {entity.name!r} does not exist")
            targets = list(self._subscriptions[entity.name].values())
        else:
            targets = [self._entity_by_path(entity.name)]
        for target in targets:
            target.active.append(
                _StoredMessage(message=message, sequence_number=next(self._sequence))
            )
        self.sent.append((entity.name, message))

    def _next_receive_fault(self) -> BaseException | None:
        if self._receive_faults:
            return self._receive_faults.popleft()
        return None


class InMemorySender:
    """Sender for one queue or topic of an :class:`InMemoryBroker`."""

    def __init__(self, broker: InMemoryBroker, entity: EntityDescription) -> None:
        self._broker = broker
        self._entity = entity
        self.closed = False

    async def send(self, message: OutgoingMessage) -> None:
        if self.closed:
            raise TransientBrokerError("Sender is closed")
        await asyncio.sleep(0)
        self._broker._deliver(self._entity, message)

    async def close(self) -> None:
        self.closed = True


class InMemoryReceiver:
    """Peek-lock receiver for one queue or subscription."""

    def __init__(self, broker: InMemoryBroker, entity: _Entity) -> None:
        self._broker = broker
        self._entity = entity
        self.closed = False

    async def receive(
        self, max_count: int, max_wait_time: float | None = None
    ) -> list[ReceivedMessage]:
        self._check_open()
        await asyncio.sleep(0)
        fault = self._broker._next_receive_fault()
        if fault is not None:
            raise fault
        entity = self._entity
        now = self._broker._now()
        entity.expire_locks(now)
        lease = entity.description.lock_duration.total_seconds()
        received: list[ReceivedMessage] = []
        while entity.active and len(received) < max_count:
            stored = entity.active.popleft()
            stored.delivery_count += 1
            if stored.delivery_count > self._broker.max_delivery_count:
                stored.dead_letter_reason = "MaxDeliveryCountExceeded"
                entity.dead_letters.append(stored)
                continue
            stored.lock_token = str(uuid.uuid4())
            stored.locked_until = now + lease
            entity.locked[stored.lock_token] = stored
            received.append(
                ReceivedMessage(
                    body=stored.message.body,
                    message_id=stored.message.message_id,
                    lock_token=stored.lock_token,
                    delivery_count=stored.delivery_count,
                    content_type=stored.message.content_type,
                    label=stored.message.label,
                    raw=stored,
                )
            )
        return received

    async def complete(self, message: ReceivedMessage) -> None:
        self._take_locked(message)

    async def abandon(self, message: ReceivedMessage) -> None:
        stored = self._take_locked(message)
        self._entity.active.appendleft(stored)

    async def dead_letter(
        self,
        message: ReceivedMessage,
        reason: str | None = None,
        description: str | None = None,
    ) -> None:
        stored = self._take_locked(message)
        stored.dead_letter_reason = reason
        stored.dead_letter_description = description
        self._entity.dead_letters.append(stored)

    async def renew_lock(self, message: ReceivedMessage) -> None:
        stored = self._locked(message)
        stored.locked_until = (
            self._broker._now() + self._entity.description.lock_duration.total_seconds()
        )
        self._broker.lock_renewals += 1

    async def close(self) -> None:
        self.closed = True

    def _check_open(self) -> None:
        if self.closed:
            raise TransientBrokerError("Receiver is closed")

    def _locked(self, message: ReceivedMessage) -> _StoredMessage:
        self._check_open()
        self._entity.expire_locks(self._broker._now())
        stored = self._entity.locked.get(message.lock_token)
        if stored is None:
            raise MessageLockLostError(
                f"Lock for message {message.message_id} expired or was released"
            )
        return stored

    def _take_locked(self, message: ReceivedMessage) -> _StoredMessage:
        stored = self._locked(message)
        del self._entity.locked[message.lock_token]
        stored.lock_token = None
        return stored
