"""Exceptions for servicebus-messenger."""

from __future__ import annotations


class MessengerError(Exception):
    """Root exception for the messenger library."""


class ConfigurationError(MessengerError):
    """Raised when connectivity or identity inputs are missing or invalid."""


class MessengerClosedError(MessengerError):
    """Raised when a closed messenger is used."""


class DuplicateSubscriptionError(MessengerError):
    """Raised when a second callback is registered for the same message type.

    Only one callback per message type (and entity kind) is supported.
    """

    def __init__(self, message_type: type[object]) -> None:
        self.message_type = message_type
        super().__init__(
            f"A callback is already registered for {message_type.__name__}. "
            "Only one callback per message type is supported."
        )


class UnknownMessageError(MessengerError):
    """Raised when a lifecycle call targets a delivery with no in-flight record.

    Usually the delivery was already completed, abandoned or errored.
    """

    def __init__(self, token: str, reason: str | None = None) -> None:
        self.token = token
        msg = f"No in-flight message for delivery token {token!r}"
        if reason:
            msg += f" - {reason}"
        super().__init__(msg)


class MessagingSerializationError(MessengerError):
    """Raised when message serialization or deserialization fails."""


class BrokerError(MessengerError):
    """Base class for faults raised by the message broker."""


class TransientBrokerError(BrokerError):
    """Raised for send/receive/renew faults that may succeed when retried."""


class MessageLockLostError(TransientBrokerError):
    """Raised when the peek-lock on a message expired or was lost."""


class TerminalBrokerError(BrokerError):
    """Raised when the retry policy is exhausted."""

    def __init__(self, message: str, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(message)
