"""QueueAdapter — point-to-point adapter over one queue per message type."""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar, TypeVar

from ..envelope import EntityKind
from .base import ServiceBusAdapter

if TYPE_CHECKING:
    from ..envelope import EntityDescription

T = TypeVar("T")


class QueueAdapter(ServiceBusAdapter[T]):
    """Sends to and peek-lock reads from the queue named after the type."""

    kind: ClassVar[EntityKind] = EntityKind.QUEUE

    async def _provision(self) -> EntityDescription:
        queue = await self._broker.ensure_queue(self.entity_name)
        self._use_receive_entity(queue)
        return queue

    async def initialize(self) -> None:
        """Provision the queue, read its lease, open sender and receiver."""
        await super().initialize()
        await self.rebuild_receiver()
