"""Publisher factory: selects implementation from config. Only place that imports concrete publishers."""
from __future__ import annotations

from relay.app.config.settings import Settings
from relay.app.domain.codec import Codec
from relay.app.infrastructure.messaging.inmemory.in_memory_publisher import InMemoryPublisher
from relay.app.infrastructure.messaging.rabbitmq.connection_manager import ConnectionManager
from relay.app.infrastructure.messaging.rabbitmq.rabbitmq_publisher import RabbitMQPublisher
from relay.app.ports.message_publisher import MessagePublisher


def create_publisher(
    settings: Settings,
    connection_manager: ConnectionManager | None,
    codec: Codec,
) -> MessagePublisher:
    backend = settings.publisher_backend.strip().lower()

    if backend == "rabbitmq":
        if connection_manager is None:
            raise ValueError("rabbitmq publisher needs a connection manager")
        return RabbitMQPublisher(settings, connection_manager, codec)

    if backend == "inmemory":
        return InMemoryPublisher(codec)

    raise ValueError(f"Unsupported publisher backend: {backend}")
