"""Azure Service Bus broker (optional extra: servicebus-messenger[azure])."""

from __future__ import annotations

from .broker import ServiceBusBroker
from .handles import ServiceBusReceiverHandle, ServiceBusSenderHandle

__all__ = [
    "ServiceBusBroker",
    "ServiceBusReceiverHandle",
    "ServiceBusSenderHandle",
]
