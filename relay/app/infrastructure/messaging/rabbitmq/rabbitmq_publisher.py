"""
RabbitMQ publisher: encode, publish through a pooled channel, wait for the confirm.

Delivery is at-least-once. A channel failure discards the pooled channel and the
publish is retried once on a fresh one; if the broker accepted the first attempt but
the confirm was lost, the message is delivered twice. Deduplication is the caller's job.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel
from aio_pika.exceptions import DeliveryError
from loguru import logger

from relay.app.config.settings import Settings
from relay.app.core import SERVICE_NAME
from relay.app.domain.codec import Codec
from relay.app.domain.errors import (
    BrokerConnectionError,
    PublishConnectionLostError,
    PublishRejectedError,
    PublishUnconfirmedError,
)
from relay.app.domain.models import MessageEnvelope
from relay.app.infrastructure.messaging.rabbitmq.channel_pool import ChannelPool
from relay.app.infrastructure.messaging.rabbitmq.connection_manager import ConnectionManager
from relay.app.infrastructure.messaging.rabbitmq.constants import CHANNEL_ERRORS, ConnectionState

PUBLISH_ATTEMPTS = 2
_NEGATIVE_CONFIRMS = {"Basic.Nack", "Basic.Reject"}
# publish waits out a (re)connect on the channel acquire timeout instead of failing fast
_ACCEPTING_STATES = {ConnectionState.CONNECTED, ConnectionState.CONNECTING, ConnectionState.RECONNECTING}


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class RabbitMQPublisher:
    """MessagePublisher implementation over a shared ConnectionManager."""

    def __init__(
        self,
        settings: Settings,
        connection_manager: ConnectionManager,
        codec: Codec | None = None,
    ) -> None:
        self._settings = settings
        self._connection_manager = connection_manager
        self._codec = codec or Codec()
        self._confirms = settings.publisher_confirms
        self._pool = ChannelPool(
            connection_manager,
            settings.publisher_pool_size,
            acquire_timeout=settings.channel_acquire_timeout_seconds,
            publisher_confirms=self._confirms,
            on_return_raises=settings.mandatory_publish,
        )
        self._closing = False

    @property
    def ready(self) -> bool:
        return not self._closing and self._connection_manager.ready

    @property
    def accepting(self) -> bool:
        """True while a publish can still succeed, including while a reconnect is under way."""
        return not self._closing and self._connection_manager.state in _ACCEPTING_STATES

    async def connect(self) -> None:
        await self._connection_manager.connect()
        self._closing = False

    def _build_message(self, envelope: MessageEnvelope) -> Message:
        body = envelope.body if envelope.body is not None else self._codec.encode(envelope.payload, envelope.content_type)
        return Message(
            body,
            content_type=envelope.content_type,
            correlation_id=envelope.correlation_id,
            message_id=envelope.message_id or str(uuid.uuid4()),
            headers=dict(envelope.headers),
            delivery_mode=DeliveryMode.PERSISTENT,
        )

    async def publish(self, exchange: str, routing_key: str, envelope: MessageEnvelope) -> None:
        if self._closing:
            raise PublishConnectionLostError("publisher is closed")
        message = self._build_message(envelope)
        start = time.perf_counter()
        last_error: BaseException | None = None
        for attempt in range(1, PUBLISH_ATTEMPTS + 1):
            try:
                async with self._pool.acquire() as channel:
                    await self._send(channel, exchange, routing_key, message)
            except (BrokerConnectionError, *CHANNEL_ERRORS) as e:
                last_error = e
                _log("publish_attempt_failed", attempt=attempt, exchange=exchange, routing_key=routing_key, error=str(e))
                continue
            latency_ms = (time.perf_counter() - start) * 1000
            _log(
                "publish_success",
                exchange=exchange,
                routing_key=routing_key,
                message_id=message.message_id,
                correlation_id=envelope.correlation_id,
                attempt=attempt,
                latency_ms=round(latency_ms, 2),
            )
            return
        _log("publish_failed", reason="connection_lost", exchange=exchange, routing_key=routing_key)
        raise PublishConnectionLostError(f"publish to {exchange!r} failed: {last_error}") from last_error

    async def _send(self, channel: AbstractChannel, exchange_name: str, routing_key: str, message: Message) -> None:
        if exchange_name:
            exchange = await channel.get_exchange(exchange_name, ensure=False)
        else:
            exchange = channel.default_exchange
        try:
            confirmation = await exchange.publish(
                message,
                routing_key=routing_key,
                mandatory=self._settings.mandatory_publish,
                timeout=self._settings.confirm_timeout_seconds if self._confirms else None,
            )
        except asyncio.TimeoutError as e:
            _log("publish_unconfirmed", exchange=exchange_name, routing_key=routing_key)
            raise PublishUnconfirmedError(
                f"no confirm within {self._settings.confirm_timeout_seconds}s for {exchange_name!r}/{routing_key!r}"
            ) from e
        except DeliveryError as e:
            _log("publish_rejected", exchange=exchange_name, routing_key=routing_key, reason="returned")
            raise PublishRejectedError(f"message returned by broker for {exchange_name!r}/{routing_key!r}") from e
        if self._confirms and getattr(confirmation, "name", None) in _NEGATIVE_CONFIRMS:
            _log("publish_rejected", exchange=exchange_name, routing_key=routing_key, reason="nack")
            raise PublishRejectedError(f"broker nacked message for {exchange_name!r}/{routing_key!r}")

    async def close(self) -> None:
        self._closing = True
        _log("publisher_shutdown")
        await self._pool.close()
