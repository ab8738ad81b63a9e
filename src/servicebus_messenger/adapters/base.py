"""ServiceBusAdapter — per message type send/receive pipeline with lease renewal."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from ..config import MessengerSettings
from ..envelope import Delivery, EntityKind, OutgoingMessage
from ..exceptions import (
    ConfigurationError,
    MessageLockLostError,
    MessagingSerializationError,
    TransientBrokerError,
    UnknownMessageError,
)
from ..naming import entity_name_for, message_label
from ..serialization import MessageSerializer

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import timedelta

    from ..envelope import EntityDescription, ReceivedMessage
    from ..hub import MessageHub
    from ..ports import (
        IMessageBroker,
        IMessageReceiver,
        IMessageSender,
        IMessageSerializer,
    )

logger = logging.getLogger("servicebus_messenger.adapter")

T = TypeVar("T")


def lock_tick_for(lock_duration: timedelta, ratio: float = 0.8) -> int:
    """Seconds between lock renewals: ``floor(lease * ratio)``, at least 1.

    The one second minimum only leaves headroom for leases of 2 seconds or
    more; a 1 second lease would be renewed exactly as it expires.
    """
    return max(1, math.floor(lock_duration.total_seconds() * ratio))


@dataclass
class InFlightMessage:
    """A peek-locked message waiting for complete/abandon/error.

    ``receiver`` is the receiver that delivered the message; settlement and
    renewal go through it even if the adapter has since rebuilt its receiver.
    """

    received: ReceivedMessage
    receiver: IMessageReceiver
    renewal: asyncio.Task[None] | None = None
    settling: bool = False


class ServiceBusAdapter(ABC, Generic[T]):
    """Binds one message type to one broker entity.

    Owns the sender, the peek-lock receiver, the polling task and the
    in-flight table for the type. Sends go through a bounded retry policy and
    rebuild the sender after every failed attempt; receive faults rebuild the
    receiver and polling carries on.

    Subclasses provision the entity (:class:`QueueAdapter`,
    :class:`TopicAdapter`). Call :meth:`initialize` before use and
    :meth:`close` on shutdown.
    """

    kind: ClassVar[EntityKind]

    def __init__(
        self,
        broker: IMessageBroker,
        message_type: type[T],
        hub: MessageHub,
        *,
        settings: MessengerSettings | None = None,
        serializer: IMessageSerializer | None = None,
    ) -> None:
        self.message_type = message_type
        self.entity_name = entity_name_for(message_type)
        self._broker = broker
        self._hub = hub
        self._settings = settings or MessengerSettings()
        self._serializer = serializer or MessageSerializer()
        self._send_policy = self._settings.send_retry_policy()

        self.entity: EntityDescription | None = None
        self.receive_entity: EntityDescription | None = None
        self.lock_duration: timedelta | None = None
        self.lock_tick: int = 0
        self.sender: IMessageSender | None = None
        self.receiver: IMessageReceiver | None = None

        self._read_task: asyncio.Task[None] | None = None
        self._in_flight: dict[str, InFlightMessage] = {}

    # ── Provisioning ─────────────────────────────────────────────

    @abstractmethod
    async def _provision(self) -> EntityDescription:
        """Resolve or create the entity messages are sent to."""

    async def initialize(self) -> None:
        """Provision the entity and open the sender."""
        self.entity = await self._provision()
        await self.rebuild_sender()
        logger.info(
            "%s ready for %s on %s",
            type(self).__name__,
            self.message_type.__name__,
            self.entity.path,
        )

    def _use_receive_entity(self, entity: EntityDescription) -> None:
        self.receive_entity = entity
        self.lock_duration = entity.lock_duration
        self.lock_tick = lock_tick_for(
            entity.lock_duration, self._settings.lock_renewal_ratio
        )

    # ── Introspection ────────────────────────────────────────────

    @property
    def reading(self) -> bool:
        """True while the polling task is running."""
        return self._read_task is not None

    @property
    def in_flight(self) -> Mapping[str, InFlightMessage]:
        """Read-only view of the in-flight table, keyed by delivery token."""
        return MappingProxyType(self._in_flight)

    @property
    def active_renewals(self) -> int:
        """Number of lock renewal tasks still running."""
        return sum(
            1
            for record in self._in_flight.values()
            if record.renewal is not None and not record.renewal.done()
        )

    # ── Sending ──────────────────────────────────────────────────

    async def send(self, message: T) -> None:
        """Serialize and send ``message`` through the retry policy.

        Raises:
            MessagingSerializationError: if the message cannot be encoded.
            TerminalBrokerError: once every attempt failed.
        """
        outgoing = OutgoingMessage(
            body=self._serializer.serialize(message),
            label=message_label(type(message)),
        )

        async def _attempt() -> None:
            sender = self.sender
            try:
                if sender is None:
                    raise TransientBrokerError(
                        f"No open sender for {self.entity_name}"
                    )
                await sender.send(outgoing)
            except Exception:
                # the link may be poisoned; only rebuild if nobody else did
                if self.sender is sender:
                    await self.rebuild_sender()
                raise

        await self._send_policy.execute(
            _attempt, description=f"Send to {self.entity_name}"
        )
        logger.debug("Sent %s %s", outgoing.label, outgoing.message_id)

    # ── Receiving ────────────────────────────────────────────────

    async def start_reading(self) -> None:
        """Start polling the entity. No-op if already polling."""
        if self._read_task is not None:
            return
        if self.receiver is None:
            await self.rebuild_receiver()
        self._read_task = asyncio.create_task(self._read_loop())
        logger.info(
            "Started reading %s (poll_interval=%.1fs, batch=%d)",
            self._receive_path(),
            self._settings.poll_interval,
            self._settings.batch_size,
        )

    async def stop_reading(self) -> None:
        """Stop polling. In-flight messages still need to be resolved."""
        task, self._read_task = self._read_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Stopped reading %s", self._receive_path())

    async def read_once(self) -> int:
        """Run a single receive cycle (useful in tests).

        Returns the number of messages received.
        """
        receiver = self.receiver
        if receiver is None:
            raise TransientBrokerError(f"No open receiver for {self._receive_path()}")
        batch = await receiver.receive(
            self._settings.batch_size, self._settings.receive_wait_time
        )
        for received in batch:
            await self._dispatch(receiver, received)
        return len(batch)

    async def _read_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.poll_interval)
            receiver = self.receiver
            try:
                await self.read_once()
            except Exception:
                logger.exception("Failed to read from %s", self._receive_path())
                if self.receiver is receiver:
                    try:
                        await self.rebuild_receiver()
                    except Exception:
                        logger.exception(
                            "Failed to rebuild receiver for %s", self._receive_path()
                        )

    async def _dispatch(
        self, receiver: IMessageReceiver, received: ReceivedMessage
    ) -> None:
        try:
            message = self._serializer.deserialize(received.body, self.message_type)
        except MessagingSerializationError as e:
            logger.error(
                "Dead-lettering message %s from %s: cannot deserialize to %s: %s",
                received.message_id,
                self._receive_path(),
                self.message_type.__name__,
                e,
            )
            try:
                await receiver.dead_letter(
                    received, reason="DeserializationFailed", description=str(e)
                )
            except Exception:
                logger.exception(
                    "Failed to dead-letter message %s", received.message_id
                )
            return

        token = str(uuid.uuid4())
        self._in_flight[token] = InFlightMessage(received=received, receiver=receiver)
        delivery: Delivery[T] = Delivery(
            message=message,
            token=token,
            message_type=self.message_type,
            source=self.kind,
            message_id=received.message_id,
            delivery_count=received.delivery_count,
        )
        logger.debug(
            "Received %s %s (delivery %d)",
            self.message_type.__name__,
            received.message_id,
            received.delivery_count,
        )
        if self._hub.publish(delivery) == 0:
            # unresolvable; the lease lapses and the broker redelivers
            del self._in_flight[token]
            logger.debug(
                "No consumer for %s %s; leaving its lock to lapse",
                self.message_type.__name__,
                received.message_id,
            )

    # ── Message lifecycle ────────────────────────────────────────

    def _lookup(self, delivery: Delivery[Any]) -> InFlightMessage:
        record = self._in_flight.get(delivery.token)
        if record is None:
            raise UnknownMessageError(delivery.token)
        if record.settling:
            raise UnknownMessageError(delivery.token, "already being settled")
        return record

    def _claim(self, delivery: Delivery[Any]) -> InFlightMessage:
        record = self._lookup(delivery)
        record.settling = True
        return record

    def _release(self, token: str) -> None:
        record = self._in_flight.pop(token, None)
        if record is not None and record.renewal is not None:
            record.renewal.cancel()

    async def lock(self, delivery: Delivery[T]) -> None:
        """Renew the lease now and keep renewing it every ``lock_tick`` seconds.

        Renewal stops when the delivery is completed, abandoned or errored.
        Calling it again keeps the existing renewal task.
        """
        record = self._lookup(delivery)
        await record.receiver.renew_lock(record.received)
        if self._in_flight.get(delivery.token) is not record:
            return
        if record.renewal is None or record.renewal.done():
            record.renewal = asyncio.create_task(
                self._renew_lock_periodically(record)
            )

    async def _renew_lock_periodically(self, record: InFlightMessage) -> None:
        message_id = record.received.message_id
        while True:
            await asyncio.sleep(self.lock_tick)
            try:
                await record.receiver.renew_lock(record.received)
            except MessageLockLostError:
                logger.warning(
                    "Lock lost for message %s on %s; renewal stopped",
                    message_id,
                    self._receive_path(),
                )
                return
            except Exception:
                logger.warning(
                    "Lock renewal failed for message %s on %s",
                    message_id,
                    self._receive_path(),
                    exc_info=True,
                )
            else:
                logger.debug("Renewed lock for message %s", message_id)

    async def complete(self, delivery: Delivery[T]) -> None:
        """Remove the message from the entity, then release the record.

        A failed call keeps the record for another attempt, unless the lock
        was lost: then the record is released and the error propagates.
        """
        record = self._claim(delivery)
        try:
            await record.receiver.complete(record.received)
        except MessageLockLostError:
            # the lock cannot come back; the broker redelivers under a new token
            self._release(delivery.token)
            raise
        except BaseException:
            record.settling = False
            raise
        self._release(delivery.token)

    async def abandon(self, delivery: Delivery[T]) -> None:
        """Return the message to the entity, then release the record."""
        record = self._claim(delivery)
        try:
            await record.receiver.abandon(record.received)
        except MessageLockLostError:
            # the lock cannot come back; the broker redelivers under a new token
            self._release(delivery.token)
            raise
        except BaseException:
            record.settling = False
            raise
        self._release(delivery.token)

    async def error(self, delivery: Delivery[T], reason: str | None = None) -> None:
        """Move the message to the dead-letter sub-queue.

        The record is released whether or not the dead-letter call succeeds;
        a failure still propagates to the caller.
        """
        record = self._claim(delivery)
        try:
            await record.receiver.dead_letter(record.received, reason=reason)
        finally:
            self._release(delivery.token)

    # ── Handle recovery ──────────────────────────────────────────

    async def rebuild_sender(self) -> None:
        """Close the current sender (best effort) and open a new one."""
        if self.entity is None:
            raise ConfigurationError(f"{self.entity_name} has not been provisioned")
        old, self.sender = self.sender, None
        if old is not None:
            await _close_quietly(old, "sender", self.entity.path)
        self.sender = self._broker.create_sender(self.entity)

    async def rebuild_receiver(self) -> None:
        """Close the current receiver (best effort) and open a new one."""
        if self.receive_entity is None:
            raise ConfigurationError(
                f"No receive entity configured for {self.entity_name}"
            )
        old, self.receiver = self.receiver, None
        if old is not None:
            await _close_quietly(old, "receiver", self.receive_entity.path)
        self.receiver = self._broker.create_receiver(
            self.receive_entity, prefetch_count=self._settings.batch_size
        )

    def _receive_path(self) -> str:
        if self.receive_entity is not None:
            return self.receive_entity.path
        return self.entity_name

    # ── Disposal ─────────────────────────────────────────────────

    async def close(self) -> None:
        """Stop polling, cancel renewals and close sender and receiver."""
        await self.stop_reading()
        renewals = [
            record.renewal
            for record in self._in_flight.values()
            if record.renewal is not None
        ]
        self._in_flight.clear()
        for task in renewals:
            task.cancel()
        if renewals:
            await asyncio.gather(*renewals, return_exceptions=True)
        path = self._receive_path()
        if self.receiver is not None:
            await _close_quietly(self.receiver, "receiver", path)
            self.receiver = None
        if self.sender is not None:
            await _close_quietly(self.sender, "sender", path)
            self.sender = None


async def _close_quietly(
    handle: IMessageSender | IMessageReceiver, what: str, path: str
) -> None:
    try:
        await handle.close()
    except Exception:
        logger.warning("Failed to close %s for %s", what, path, exc_info=True)
