"""In-memory publisher for tests and local mode.

Nothing consumes what it stores; it only lets the API run without a broker.
"""
from __future__ import annotations

from relay.app.domain.codec import Codec
from relay.app.domain.models import MessageEnvelope


class InMemoryPublisher:
    def __init__(self, codec: Codec | None = None) -> None:
        self._codec = codec or Codec()
        # (exchange, routing_key, wire bytes, envelope)
        self.messages: list[tuple[str, str, bytes, MessageEnvelope]] = []

    async def connect(self) -> None:
        return

    @property
    def ready(self) -> bool:
        return True

    @property
    def accepting(self) -> bool:
        return True

    async def publish(self, exchange: str, routing_key: str, envelope: MessageEnvelope) -> None:
        body = envelope.body if envelope.body is not None else self._codec.encode(envelope.payload, envelope.content_type)
        self.messages.append((exchange, routing_key, body, envelope))

    async def close(self) -> None:
        return
