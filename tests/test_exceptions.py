"""Tests for messenger exceptions."""

from __future__ import annotations

from servicebus_messenger.exceptions import (
    BrokerError,
    DuplicateSubscriptionError,
    MessageLockLostError,
    MessengerError,
    TerminalBrokerError,
    TransientBrokerError,
    UnknownMessageError,
)


class OrderPlaced:
    pass


def test_broker_errors_share_a_root() -> None:
    assert issubclass(BrokerError, MessengerError)
    assert issubclass(TransientBrokerError, BrokerError)
    assert issubclass(MessageLockLostError, TransientBrokerError)
    assert issubclass(TerminalBrokerError, BrokerError)
    assert not issubclass(TerminalBrokerError, TransientBrokerError)


def test_duplicate_subscription_error_names_the_type() -> None:
    e = DuplicateSubscriptionError(OrderPlaced)
    assert e.message_type is OrderPlaced
    assert "OrderPlaced" in str(e)
    assert "Only one callback" in str(e)


def test_unknown_message_error_has_token() -> None:
    e = UnknownMessageError("tok-1", "already being settled")
    assert e.token == "tok-1"
    assert "tok-1" in str(e)
    assert "already being settled" in str(e)


def test_terminal_broker_error_has_attempts() -> None:
    e = TerminalBrokerError("send failed", attempts=3)
    assert e.attempts == 3
    assert "send failed" in str(e)
