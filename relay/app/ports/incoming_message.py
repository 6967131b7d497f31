"""Port: abstraction for an incoming queue message. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Mapping, Protocol


class IncomingMessage(Protocol):
    """Transport-agnostic incoming delivery. The dispatcher uses this; broker adapters implement it."""

    @property
    def body(self) -> bytes: ...

    @property
    def content_type(self) -> str | None: ...

    @property
    def correlation_id(self) -> str | None: ...

    @property
    def message_id(self) -> str | None: ...

    @property
    def headers(self) -> Mapping[str, str]: ...

    @property
    def exchange(self) -> str | None: ...

    @property
    def routing_key(self) -> str | None: ...

    @property
    def redelivered(self) -> bool: ...

    @property
    def delivery_attempt(self) -> int:
        """1 on first delivery; grows each time the broker redelivers."""
        ...

    async def ack(self) -> None: ...

    async def nack(self, *, requeue: bool = True) -> None: ...
