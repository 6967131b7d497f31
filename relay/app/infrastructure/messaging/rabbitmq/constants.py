"""RabbitMQ lifecycle states and the client exceptions treated as channel failures."""
from enum import Enum

from aio_pika.exceptions import AMQPError, ChannelInvalidStateError


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"

    @property
    def health(self) -> str:
        """Coarse view for health endpoints: Connected, Reconnecting or Down."""
        if self is ConnectionState.CONNECTED:
            return "Connected"
        if self in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
            return "Reconnecting"
        return "Down"


class SubscriptionState(str, Enum):
    STOPPED = "STOPPED"
    SUBSCRIBING = "SUBSCRIBING"
    RUNNING = "RUNNING"
    DRAINING = "DRAINING"


# Raised by aio_pika/aiormq when the channel or the connection underneath it is gone.
CHANNEL_ERRORS: tuple[type[BaseException], ...] = (AMQPError, ChannelInvalidStateError, ConnectionError)
