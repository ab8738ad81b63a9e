"""Tests for transport value types."""

from __future__ import annotations

from datetime import timedelta

from servicebus_messenger.envelope import (
    JSON_CONTENT_TYPE,
    Delivery,
    EntityDescription,
    EntityKind,
    OutgoingMessage,
)


def test_queue_path_is_its_name() -> None:
    entity = EntityDescription(name="orders")
    assert entity.path == "orders"
    assert entity.kind is EntityKind.QUEUE
    assert entity.lock_duration == timedelta(seconds=60)


def test_subscription_path() -> None:
    entity = EntityDescription(
        name="orders", kind=EntityKind.TOPIC, subscription_name="billing"
    )
    assert entity.path == "orders/subscriptions/billing"


def test_outgoing_message_defaults() -> None:
    a = OutgoingMessage(body=b"{}", label="pkg.OrderPlaced")
    b = OutgoingMessage(body=b"{}", label="pkg.OrderPlaced")
    assert a.content_type == JSON_CONTENT_TYPE
    assert a.message_id != b.message_id


def test_deliveries_compare_by_token_not_message() -> None:
    same_message = {"order_id": "1"}
    first = Delivery(message=same_message, token="t-1", message_type=dict)
    second = Delivery(message=same_message, token="t-2", message_type=dict)
    again = Delivery(message={"order_id": "other"}, token="t-1", message_type=dict)
    assert first != second
    assert first == again
    assert len({first, second, again}) == 2
