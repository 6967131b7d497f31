"""Adapter: wrap aio_pika.IncomingMessage to implement ports.IncomingMessage."""
from __future__ import annotations

from typing import Any, Mapping

from aio_pika.abc import AbstractIncomingMessage

from relay.app.constants import DELIVERY_COUNT_HEADER


def delivery_attempt_from(headers: Mapping[str, Any] | None, redelivered: bool) -> int:
    """
    1-based attempt number. Quorum queues report prior failed deliveries in
    x-delivery-count; classic queues only flag a redelivery.
    """
    count = (headers or {}).get(DELIVERY_COUNT_HEADER)
    if count is not None:
        try:
            return int(count) + 1
        except (TypeError, ValueError):
            pass
    return 2 if redelivered else 1


def _string_headers(headers: Mapping[str, Any] | None) -> dict[str, str]:
    result: dict[str, str] = {}
    for key, value in (headers or {}).items():
        if isinstance(value, bytes):
            result[key] = value.decode("utf-8", errors="replace")
        elif isinstance(value, (str, int, float, bool)):
            result[key] = str(value)
    return result


class AioPikaMessageAdapter:
    """Implements relay.app.ports.incoming_message.IncomingMessage for aio_pika."""

    def __init__(self, message: AbstractIncomingMessage) -> None:
        self._message = message

    @property
    def body(self) -> bytes:
        return self._message.body

    @property
    def content_type(self) -> str | None:
        return self._message.content_type

    @property
    def correlation_id(self) -> str | None:
        return self._message.correlation_id

    @property
    def message_id(self) -> str | None:
        return self._message.message_id

    @property
    def headers(self) -> dict[str, str]:
        return _string_headers(self._message.headers)

    @property
    def exchange(self) -> str | None:
        return self._message.exchange

    @property
    def routing_key(self) -> str | None:
        return self._message.routing_key

    @property
    def redelivered(self) -> bool:
        return bool(self._message.redelivered)

    @property
    def delivery_attempt(self) -> int:
        return delivery_attempt_from(self._message.headers, self.redelivered)

    async def ack(self) -> None:
        await self._message.ack()

    async def nack(self, *, requeue: bool = True) -> None:
        await self._message.nack(requeue=requeue)
