"""In-memory broker for tests and local runs."""

from __future__ import annotations

from .broker import InMemoryBroker, InMemoryReceiver, InMemorySender

__all__ = [
    "InMemoryBroker",
    "InMemoryReceiver",
    "InMemorySender",
]
