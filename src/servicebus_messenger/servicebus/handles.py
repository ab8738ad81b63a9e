"""Sender and receiver handles over azure-servicebus async links."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from azure.core.exceptions import AzureError
from azure.servicebus import ServiceBusMessage
from azure.servicebus.exceptions import MessageLockLostError as _LockLost

from ..envelope import ReceivedMessage
from ..exceptions import MessageLockLostError, TransientBrokerError

if TYPE_CHECKING:
    from azure.servicebus import ServiceBusReceivedMessage
    from azure.servicebus.aio import ServiceBusReceiver, ServiceBusSender

    from ..envelope import OutgoingMessage


def _translate(e: Exception, action: str) -> TransientBrokerError:
    if isinstance(e, _LockLost):
        return MessageLockLostError(f"{action}: {e}")
    return TransientBrokerError(f"{action}: {e}")


def _body_bytes(message: ServiceBusReceivedMessage) -> bytes:
    body: Any = message.body
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    return b"".join(bytes(chunk) for chunk in body)


def to_received_message(message: ServiceBusReceivedMessage) -> ReceivedMessage:
    """Wrap an SDK message in a broker-neutral ``ReceivedMessage``."""
    return ReceivedMessage(
        body=_body_bytes(message),
        message_id=str(message.message_id),
        lock_token=str(message.lock_token),
        delivery_count=message.delivery_count or 1,
        content_type=message.content_type,
        label=message.subject,
        raw=message,
    )


class ServiceBusSenderHandle:
    """``IMessageSender`` over an SDK ``ServiceBusSender``."""

    def __init__(self, sender: ServiceBusSender, entity_path: str) -> None:
        self._sender = sender
        self._entity_path = entity_path

    async def send(self, message: OutgoingMessage) -> None:
        sb_message = ServiceBusMessage(
            message.body,
            content_type=message.content_type,
            subject=message.label,
            message_id=message.message_id,
        )
        try:
            await self._sender.send_messages(sb_message)
        except AzureError as e:
            raise _translate(e, f"Send to {self._entity_path} failed") from e

    async def close(self) -> None:
        await self._sender.close()


class ServiceBusReceiverHandle:
    """``IMessageReceiver`` over an SDK ``ServiceBusReceiver`` in peek-lock mode."""

    def __init__(self, receiver: ServiceBusReceiver, entity_path: str) -> None:
        self._receiver = receiver
        self._entity_path = entity_path

    async def receive(
        self, max_count: int, max_wait_time: float | None = None
    ) -> list[ReceivedMessage]:
        try:
            batch = await self._receiver.receive_messages(
                max_message_count=max_count, max_wait_time=max_wait_time
            )
        except AzureError as e:
            raise _translate(e, f"Receive from {self._entity_path} failed") from e
        return [to_received_message(m) for m in batch]

    async def complete(self, message: ReceivedMessage) -> None:
        try:
            await self._receiver.complete_message(message.raw)
        except AzureError as e:
            raise _translate(e, f"Complete {message.message_id} failed") from e

    async def abandon(self, message: ReceivedMessage) -> None:
        try:
            await self._receiver.abandon_message(message.raw)
        except AzureError as e:
            raise _translate(e, f"Abandon {message.message_id} failed") from e

    async def dead_letter(
        self,
        message: ReceivedMessage,
        reason: str | None = None,
        description: str | None = None,
    ) -> None:
        try:
            await self._receiver.dead_letter_message(
                message.raw, reason=reason, error_description=description
            )
        except AzureError as e:
            raise _translate(e, f"Dead-letter {message.message_id} failed") from e

    async def renew_lock(self, message: ReceivedMessage) -> None:
        try:
            await self._receiver.renew_message_lock(message.raw)
        except AzureError as e:
            raise _translate(e, f"Renew lock {message.message_id} failed") from e

    async def close(self) -> None:
        await self._receiver.close()
