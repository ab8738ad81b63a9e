"""MessageSerializer — UTF-8 JSON roundtrip through pydantic TypeAdapters."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, TypeVar

from pydantic import TypeAdapter

from .exceptions import MessagingSerializationError

T = TypeVar("T")


@lru_cache(maxsize=256)
def _adapter_for(message_type: type[Any]) -> TypeAdapter[Any]:
    return TypeAdapter(message_type)


class MessageSerializer:
    """Serialize typed messages to JSON bytes and back.

    Works for anything pydantic can validate: ``BaseModel`` subclasses,
    dataclasses, ``TypedDict``s and plain JSON-compatible types.
    """

    def serialize(self, message: Any) -> bytes:
        """Encode ``message`` as UTF-8 JSON."""
        try:
            return _adapter_for(type(message)).dump_json(message)
        except (TypeError, ValueError) as e:
            raise MessagingSerializationError(str(e)) from e

    def deserialize(self, raw: bytes, message_type: type[T]) -> T:
        """Decode UTF-8 JSON into ``message_type``."""
        try:
            result: T = _adapter_for(message_type).validate_json(raw)
            return result
        except (TypeError, ValueError) as e:
            raise MessagingSerializationError(str(e)) from e
