"""Entity naming and diagnostic labels for message types."""

from __future__ import annotations

import re

MAX_ENTITY_NAME_LENGTH = 260

_INVALID_CHARS = re.compile(r"[^a-z0-9._-]+")


def message_label(message_type: type[object]) -> str:
    """Return the fully qualified name of a message type (``module.QualName``)."""
    return f"{message_type.__module__}.{message_type.__qualname__}"


def entity_name_for(message_type: type[object]) -> str:
    """Return the broker entity name backing ``message_type``.

    A string ``__entity_name__`` class attribute wins; otherwise the lower-cased
    fully qualified name is used, with unsupported characters (e.g. the
    ``<locals>`` of nested classes) collapsed to ``-``.
    """
    explicit = getattr(message_type, "__entity_name__", None)
    if isinstance(explicit, str) and explicit:
        return explicit
    name = _INVALID_CHARS.sub("-", message_label(message_type).lower())
    name = name.strip("-._")
    return name[:MAX_ENTITY_NAME_LENGTH]
