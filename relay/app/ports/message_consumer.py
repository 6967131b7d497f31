"""Port: consumer dispatcher and the handler/error-sink callables it accepts."""
from __future__ import annotations

from typing import Awaitable, Callable, Protocol, Union

from relay.app.domain.models import DeliveryOutcome, MessageEnvelope

MessageHandler = Callable[[MessageEnvelope], Union[DeliveryOutcome, Awaitable[DeliveryOutcome]]]
# (queue_name, error, raw_body) -> None; receives failures that never reach a handler.
ErrorSink = Callable[[str, Exception, bytes], None]


class MessageConsumer(Protocol):
    async def start(self, queue_name: str, handler: MessageHandler, options=None): ...

    async def stop(self, queue_name: str, drain_timeout: float | None = None) -> None: ...

    async def stop_all(self, drain_timeout: float | None = None) -> None: ...

    def states(self) -> dict[str, str]: ...
