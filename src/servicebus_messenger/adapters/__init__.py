"""Per message type adapters binding the messenger to broker entities."""

from __future__ import annotations

from .base import InFlightMessage, ServiceBusAdapter, lock_tick_for
from .queue import QueueAdapter
from .topic import TopicAdapter

__all__ = [
    "InFlightMessage",
    "QueueAdapter",
    "ServiceBusAdapter",
    "TopicAdapter",
    "lock_tick_for",
]
