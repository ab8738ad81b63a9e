"""TopicAdapter — publish/subscribe adapter over one topic per message type."""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar, TypeVar

from ..envelope import EntityKind
from ..exceptions import ConfigurationError
from .base import ServiceBusAdapter

if TYPE_CHECKING:
    from ..envelope import EntityDescription

T = TypeVar("T")

MAX_SUBSCRIPTION_NAME_LENGTH = 50


class TopicAdapter(ServiceBusAdapter[T]):
    """Publishes to the topic named after the type.

    Reading requires a subscription: :meth:`bind_subscription` provisions it,
    reads its lease and opens the receiver. One subscription per adapter.
    """

    kind: ClassVar[EntityKind] = EntityKind.TOPIC

    subscription_name: str | None = None

    async def _provision(self) -> EntityDescription:
        return await self._broker.ensure_topic(self.entity_name)

    async def bind_subscription(self, subscription_name: str) -> None:
        """Provision ``subscription_name`` on the topic and open a receiver.

        Raises:
            ConfigurationError: if the name is invalid or the adapter is
                already bound to a different subscription.
        """
        if (
            not subscription_name
            or len(subscription_name) > MAX_SUBSCRIPTION_NAME_LENGTH
        ):
            raise ConfigurationError(
                "Subscription name must be 1-"
                f"{MAX_SUBSCRIPTION_NAME_LENGTH} characters, got {subscription_name!r}"
            )
        if self.subscription_name == subscription_name:
            return
        if self.subscription_name is not None:
            raise ConfigurationError(
                f"{self.entity_name} is already bound to subscription "
                f"{self.subscription_name!r}, cannot bind {subscription_name!r}"
            )
        subscription = await self._broker.ensure_subscription(
            self.entity_name, subscription_name
        )
        self.subscription_name = subscription_name
        self._use_receive_entity(subscription)
        await self.rebuild_receiver()
