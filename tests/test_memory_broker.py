"""Tests for the in-memory peek-lock broker."""

from __future__ import annotations

from datetime import timedelta

import pytest

from servicebus_messenger.envelope import EntityKind, OutgoingMessage
from servicebus_messenger.exceptions import MessageLockLostError, TransientBrokerError
from servicebus_messenger.memory import InMemoryBroker


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _message(body: bytes = b"{}") -> OutgoingMessage:
    return OutgoingMessage(body=body, label="pkg.OrderPlaced")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broker(clock: FakeClock) -> InMemoryBroker:
    return InMemoryBroker(lock_duration=timedelta(seconds=30), clock=clock)


@pytest.mark.asyncio
async def test_ensure_queue_is_idempotent(broker: InMemoryBroker) -> None:
    first = await broker.ensure_queue("orders")
    second = await broker.ensure_queue("orders")
    assert first == second
    assert first.lock_duration == timedelta(seconds=30)
    assert broker.has_queue("orders")


@pytest.mark.asyncio
async def test_peek_lock_hides_message_until_settled(broker: InMemoryBroker) -> None:
    entity = await broker.ensure_queue("orders")
    await broker.create_sender(entity).send(_message())
    receiver = broker.create_receiver(entity)

    [received] = await receiver.receive(10)
    assert received.delivery_count == 1
    assert await receiver.receive(10) == []
    assert len(broker.locked_messages("orders")) == 1

    await receiver.complete(received)
    assert broker.active_messages("orders") == []
    assert broker.locked_messages("orders") == []


@pytest.mark.asyncio
async def test_expired_lock_redelivers(
    broker: InMemoryBroker, clock: FakeClock
) -> None:
    entity = await broker.ensure_queue("orders")
    await broker.create_sender(entity).send(_message())
    receiver = broker.create_receiver(entity)
    [first] = await receiver.receive(10)

    clock.now = 31
    [second] = await receiver.receive(10)
    assert second.message_id == first.message_id
    assert second.delivery_count == 2
    with pytest.raises(MessageLockLostError):
        await receiver.complete(first)


@pytest.mark.asyncio
async def test_renew_lock_extends_lease(
    broker: InMemoryBroker, clock: FakeClock
) -> None:
    entity = await broker.ensure_queue("orders")
    await broker.create_sender(entity).send(_message())
    receiver = broker.create_receiver(entity)
    [received] = await receiver.receive(10)

    clock.now = 25
    await receiver.renew_lock(received)
    clock.now = 50
    assert await receiver.receive(10) == []
    await receiver.complete(received)
    assert broker.lock_renewals == 1


@pytest.mark.asyncio
async def test_abandon_puts_message_back_first(broker: InMemoryBroker) -> None:
    entity = await broker.ensure_queue("orders")
    sender = broker.create_sender(entity)
    await sender.send(_message(b'{"n": 1}'))
    await sender.send(_message(b'{"n": 2}'))
    receiver = broker.create_receiver(entity)
    [first] = await receiver.receive(1)

    await receiver.abandon(first)
    [again] = await receiver.receive(1)
    assert again.body == b'{"n": 1}'
    assert again.delivery_count == 2


@pytest.mark.asyncio
async def test_dead_letter_records_reason(broker: InMemoryBroker) -> None:
    entity = await broker.ensure_queue("orders")
    await broker.create_sender(entity).send(_message())
    receiver = broker.create_receiver(entity)
    [received] = await receiver.receive(10)

    await receiver.dead_letter(received, reason="Invalid", description="bad total")
    assert broker.dead_letter_reasons("orders") == ["Invalid"]
    assert len(broker.dead_letters("orders")) == 1
    assert broker.active_messages("orders") == []


@pytest.mark.asyncio
async def test_max_delivery_count_dead_letters(clock: FakeClock) -> None:
    broker = InMemoryBroker(max_delivery_count=2, clock=clock)
    entity = await broker.ensure_queue("orders")
    await broker.create_sender(entity).send(_message())
    receiver = broker.create_receiver(entity)

    for _ in range(2):
        [received] = await receiver.receive(10)
        await receiver.abandon(received)
    assert await receiver.receive(10) == []
    assert broker.dead_letter_reasons("orders") == ["MaxDeliveryCountExceeded"]


@pytest.mark.asyncio
async def test_topic_fans_out_to_every_subscription(broker: InMemoryBroker) -> None:
    billing = await broker.ensure_subscription("orders", "billing")
    shipping = await broker.ensure_subscription("orders", "shipping")
    topic = await broker.ensure_topic("orders")
    assert topic.kind is EntityKind.TOPIC
    assert billing.path == "orders/subscriptions/billing"

    await broker.create_sender(topic).send(_message())

    assert len(broker.active_messages(billing.path)) == 1
    assert len(broker.active_messages(shipping.path)) == 1
    assert broker.has_subscription("orders", "billing")


@pytest.mark.asyncio
async def test_injected_faults_are_raised_once(broker: InMemoryBroker) -> None:
    entity = await broker.ensure_queue("orders")
    sender = broker.create_sender(entity)
    receiver = broker.create_receiver(entity)
    broker.fail_next_sends()
    broker.fail_next_receives()

    with pytest.raises(TransientBrokerError):
        await sender.send(_message())
    with pytest.raises(TransientBrokerError):
        await receiver.receive(10)

    await sender.send(_message())
    assert len(await receiver.receive(10)) == 1


@pytest.mark.asyncio
async def test_closed_handles_raise(broker: InMemoryBroker) -> None:
    entity = await broker.ensure_queue("orders")
    sender = broker.create_sender(entity)
    receiver = broker.create_receiver(entity)
    await sender.close()
    await receiver.close()

    with pytest.raises(TransientBrokerError):
        await sender.send(_message())
    with pytest.raises(TransientBrokerError):
        await receiver.receive(10)


@pytest.mark.asyncio
async def test_missing_entity_raises(broker: InMemoryBroker) -> None:
    with pytest.raises(TransientBrokerError, match="does not exist"):
        broker.active_messages("nowhere")
