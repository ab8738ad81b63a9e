"""Transport value types shared by adapters and broker implementations."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

JSON_CONTENT_TYPE = "application/json"


class EntityKind(str, enum.Enum):
    """Kind of broker entity an adapter is bound to."""

    QUEUE = "queue"
    TOPIC = "topic"


class EntityDescription(BaseModel):
    """A provisioned broker entity and its peek-lock lease."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Queue or topic name")
    kind: EntityKind = EntityKind.QUEUE
    subscription_name: str | None = None
    lock_duration: timedelta = timedelta(seconds=60)

    @property
    def path(self) -> str:
        """Entity path, ``topic/subscriptions/name`` for subscriptions."""
        if self.subscription_name is None:
            return self.name
        return f"{self.name}/subscriptions/{self.subscription_name}"


class OutgoingMessage(BaseModel):
    """Immutable wire message handed to a sender."""

    model_config = ConfigDict(frozen=True)

    body: bytes
    label: str = Field(..., description="Fully qualified message type name")
    content_type: str = JSON_CONTENT_TYPE
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class ReceivedMessage:
    """Broker-neutral view of a peek-locked message.

    ``raw`` keeps the broker's native message object, which settlement calls
    need.
    """

    body: bytes
    message_id: str
    lock_token: str
    delivery_count: int = 1
    content_type: str | None = JSON_CONTENT_TYPE
    label: str | None = None
    raw: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True, eq=False)
class Delivery(Generic[T]):
    """A delivered message plus the receipt token that identifies it.

    Handlers pass the delivery back to ``Messenger.lock/complete/abandon/error``.
    Deliveries compare by token, never by message value.
    """

    message: T
    token: str
    message_type: type[T]
    source: EntityKind = EntityKind.QUEUE
    message_id: str = ""
    delivery_count: int = 1

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Delivery):
            return NotImplemented
        return self.token == other.token

    def __hash__(self) -> int:
        return hash(self.token)
