"""Typed messaging over Azure Service Bus queues and topics."""

from __future__ import annotations

from .adapters import QueueAdapter, ServiceBusAdapter, TopicAdapter
from .config import MessengerSettings, ServiceBusConnectionString
from .envelope import (
    Delivery,
    EntityDescription,
    EntityKind,
    OutgoingMessage,
    ReceivedMessage,
)
from .exceptions import (
    BrokerError,
    ConfigurationError,
    DuplicateSubscriptionError,
    MessageLockLostError,
    MessengerClosedError,
    MessengerError,
    MessagingSerializationError,
    TerminalBrokerError,
    TransientBrokerError,
    UnknownMessageError,
)
from .hub import MessageHub, MessageStream
from .memory import InMemoryBroker
from .messenger import Messenger
from .retry import RetryPolicy
from .serialization import MessageSerializer

__all__ = [
    "BrokerError",
    "ConfigurationError",
    "Delivery",
    "DuplicateSubscriptionError",
    "EntityDescription",
    "EntityKind",
    "InMemoryBroker",
    "MessageHub",
    "MessageLockLostError",
    "MessageSerializer",
    "MessageStream",
    "Messenger",
    "MessengerClosedError",
    "MessengerError",
    "MessagingSerializationError",
    "OutgoingMessage",
    "QueueAdapter",
    "ReceivedMessage",
    "RetryPolicy",
    "ServiceBusAdapter",
    "ServiceBusConnectionString",
    "TopicAdapter",
    "TransientBrokerError",
    "UnknownMessageError",
]
