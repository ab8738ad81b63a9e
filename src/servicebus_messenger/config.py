"""Messenger settings and connection-string validation."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .exceptions import ConfigurationError
from .retry import RetryPolicy


class MessengerSettings(BaseModel):
    """Tunables for polling, lease renewal and the send retry policy."""

    model_config = ConfigDict(frozen=True)

    poll_interval: float = Field(default=1.0, gt=0, description="Seconds between polls")
    batch_size: int = Field(default=10, ge=1, description="Messages per receive")
    receive_wait_time: float = Field(
        default=0.5, gt=0, description="Max seconds a receive waits for messages"
    )
    lock_renewal_ratio: float = Field(default=0.8, gt=0, lt=1)
    send_max_attempts: int = Field(default=3, ge=1)
    send_base_delay: float = Field(default=0.1, ge=0)
    send_max_delay: float = Field(default=0.5, ge=0)

    @model_validator(mode="after")
    def _check_delays(self) -> MessengerSettings:
        if self.send_base_delay > self.send_max_delay:
            raise ValueError("send_base_delay must be <= send_max_delay")
        return self

    def send_retry_policy(self) -> RetryPolicy:
        """Build the retry policy used for broker sends."""
        return RetryPolicy(
            max_attempts=self.send_max_attempts,
            base_delay=self.send_base_delay,
            max_delay=self.send_max_delay,
        )


class ServiceBusConnectionString(BaseModel):
    """Parsed ``Endpoint=sb://...;SharedAccessKeyName=...;SharedAccessKey=...``."""

    model_config = ConfigDict(frozen=True)

    endpoint: str
    shared_access_key_name: str | None = None
    shared_access_key: str | None = None
    shared_access_signature: str | None = None
    entity_path: str | None = None

    @property
    def namespace(self) -> str:
        """Fully qualified namespace host, e.g. ``contoso.servicebus.windows.net``."""
        host = self.endpoint.split("://", 1)[-1]
        return host.strip("/")

    @classmethod
    def parse(cls, value: str | None) -> ServiceBusConnectionString:
        """Parse and validate a connection string.

        Raises:
            ConfigurationError: when the string is empty, malformed, or lacks
                an endpoint or credentials.
        """
        if not value or not value.strip():
            raise ConfigurationError("A Service Bus connection string is required")
        parts: dict[str, str] = {}
        for segment in value.split(";"):
            if not segment.strip():
                continue
            key, sep, val = segment.partition("=")
            if not sep or not key.strip():
                raise ConfigurationError(
                    f"Malformed connection string segment: {segment!r}"
                )
            parts[key.strip().lower()] = val.strip()

        endpoint = parts.get("endpoint")
        if not endpoint or not endpoint.startswith("sb://"):
            raise ConfigurationError(
                "Connection string must contain an 'Endpoint=sb://...' segment"
            )
        key_name = parts.get("sharedaccesskeyname")
        key = parts.get("sharedaccesskey")
        signature = parts.get("sharedaccesssignature")
        if not signature and not (key_name and key):
            raise ConfigurationError(
                "Connection string must contain SharedAccessKeyName and "
                "SharedAccessKey, or SharedAccessSignature"
            )
        return cls(
            endpoint=endpoint,
            shared_access_key_name=key_name,
            shared_access_key=key,
            shared_access_signature=signature,
            entity_path=parts.get("entitypath"),
        )
