"""Shared fixtures: in-memory broker, fast settings and a messenger."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio

from servicebus_messenger.config import MessengerSettings
from servicebus_messenger.hub import MessageHub
from servicebus_messenger.memory import InMemoryBroker
from servicebus_messenger.messenger import Messenger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable


async def _eventually(
    predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01
) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Poll a predicate until it holds or fail after ``timeout`` seconds."""
    return _eventually


@pytest.fixture
def settings() -> MessengerSettings:
    return MessengerSettings(
        poll_interval=0.01,
        receive_wait_time=0.01,
        send_base_delay=0.0,
        send_max_delay=0.0,
    )


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def hub() -> MessageHub:
    return MessageHub()


@pytest_asyncio.fixture
async def messenger(
    broker: InMemoryBroker, settings: MessengerSettings
) -> AsyncIterator[Messenger]:
    m = Messenger(broker=broker, settings=settings)
    yield m
    await m.close()
