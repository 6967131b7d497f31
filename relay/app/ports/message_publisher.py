"""Port: messaging publish contract. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Protocol

from relay.app.domain.models import MessageEnvelope


class MessagePublisher(Protocol):
    """Interface for publishing messages."""

    async def connect(self) -> None: ...

    async def publish(self, exchange: str, routing_key: str, envelope: MessageEnvelope) -> None:
        """Deliver one message; raise a PublishError subclass when delivery cannot be confirmed."""
        ...

    async def close(self) -> None: ...

    @property
    def ready(self) -> bool: ...

    @property
    def accepting(self) -> bool:
        """Whether publish() is worth attempting; stays true through a reconnect, unlike ready."""
        ...
