"""
RabbitMQ consumer dispatcher: one Subscription per queue, one channel per worker slot.

Subscription lifecycle:
  STOPPED -> SUBSCRIBING -> RUNNING (first slot registered) -> DRAINING (stop()) -> STOPPED.
  On reconnect: RUNNING subscriptions re-open every slot on the new connection; slots that
  fail are dropped, and a subscription left with no slot goes back to STOPPED.

Per delivery:
  decode (failure -> dead-letter + error sink, handler not called) -> handler -> settle.
  Handler exceptions and non-DeliveryOutcome results count as NACK_REQUEUE; a NACK_REQUEUE
  at or past max_delivery_attempts is forced to NACK_DEAD_LETTER so a poison message
  cannot loop forever. Nothing is acked unless the handler returned ACK.

Concurrency:
  Each slot owns its channel (prefetch_count QoS, own consumer) and a lock, so a slot
  handles one message at a time in delivery order. worker_count=1 preserves queue order.
  stop() cancels consumers, waits up to the drain timeout for in-flight handlers, then
  closes the slot channels; whatever is still unsettled goes back to the queue.
"""
from __future__ import annotations

import asyncio
import inspect
from collections import Counter
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue
from loguru import logger

from relay.app.config.settings import Settings
from relay.app.constants import CLASSIC_MAX_DELIVERY_ATTEMPTS, QueueType
from relay.app.core import SERVICE_NAME
from relay.app.domain.codec import Codec, normalize_content_type
from relay.app.domain.errors import DecodeError
from relay.app.domain.models import DeliveryOutcome, MessageEnvelope
from relay.app.infrastructure.messaging.rabbitmq.aio_pika_message_adapter import AioPikaMessageAdapter
from relay.app.infrastructure.messaging.rabbitmq.connection_manager import ConnectionManager
from relay.app.infrastructure.messaging.rabbitmq.constants import CHANNEL_ERRORS, SubscriptionState
from relay.app.ports.incoming_message import IncomingMessage
from relay.app.ports.message_consumer import ErrorSink, MessageHandler


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def log_error_sink(queue_name: str, error: Exception, body: bytes) -> None:
    """Default sink for failures that never reach a handler."""
    logger.bind(
        service_name=SERVICE_NAME,
        event="message_undecodable",
        queue=queue_name,
        error_type=type(error).__name__,
        body_length=len(body),
    ).warning("{}", error)


@dataclass(frozen=True)
class SubscriptionOptions:
    worker_count: int = 1
    prefetch_count: int = 10
    max_delivery_attempts: int = 5
    drain_timeout_seconds: float = 30.0
    queue_type: QueueType = QueueType.QUORUM
    error_sink: ErrorSink = field(default=log_error_sink)

    def __post_init__(self) -> None:
        if self.worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        if self.prefetch_count < 1:
            raise ValueError("prefetch_count must be >= 1")
        if self.max_delivery_attempts < 1:
            raise ValueError("max_delivery_attempts must be >= 1")
        if QueueType(self.queue_type) is QueueType.CLASSIC and self.max_delivery_attempts > CLASSIC_MAX_DELIVERY_ATTEMPTS:
            raise ValueError(
                f"classic queues never report more than {CLASSIC_MAX_DELIVERY_ATTEMPTS} attempts; "
                f"max_delivery_attempts={self.max_delivery_attempts} would never dead-letter"
            )

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "SubscriptionOptions":
        values: dict[str, Any] = {
            "worker_count": settings.worker_count,
            "prefetch_count": settings.prefetch_count,
            "max_delivery_attempts": settings.max_delivery_attempts,
            "drain_timeout_seconds": settings.drain_timeout_seconds,
            "queue_type": settings.queue_type,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class _WorkerSlot:
    index: int
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    channel: AbstractChannel | None = None
    queue: AbstractQueue | None = None
    consumer_tag: str | None = None


class Subscription:
    def __init__(
        self,
        queue_name: str,
        handler: MessageHandler,
        options: SubscriptionOptions,
        connection_manager: ConnectionManager,
        codec: Codec,
    ) -> None:
        self._queue_name = queue_name
        self._handler = handler
        self._options = options
        self._connection_manager = connection_manager
        self._codec = codec
        self._state = SubscriptionState.STOPPED
        self._slots: list[_WorkerSlot] = []
        self._in_flight: set[asyncio.Task[Any]] = set()
        self._lifecycle_lock = asyncio.Lock()
        self._outcomes: Counter[DeliveryOutcome] = Counter()

    @property
    def queue_name(self) -> str:
        return self._queue_name

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def options(self) -> SubscriptionOptions:
        return self._options

    @property
    def in_flight(self) -> int:
        return sum(1 for task in self._in_flight if not task.done())

    def stats(self) -> dict[str, int]:
        return {outcome.value: self._outcomes[outcome] for outcome in DeliveryOutcome}

    def _set_state(self, state: SubscriptionState) -> None:
        self._state = state
        _log("subscription_state", queue=self._queue_name, state=state.value)

    async def start(self) -> None:
        async with self._lifecycle_lock:
            if self._state != SubscriptionState.STOPPED:
                raise RuntimeError(f"subscription {self._queue_name!r} is {self._state.value}")
            self._set_state(SubscriptionState.SUBSCRIBING)
            self._slots = [_WorkerSlot(i) for i in range(self._options.worker_count)]
            try:
                for slot in self._slots:
                    await self._open_slot(slot)
                    if self._state == SubscriptionState.SUBSCRIBING:
                        self._set_state(SubscriptionState.RUNNING)
            except Exception:
                await self._close_slots()
                self._slots = []
                self._set_state(SubscriptionState.STOPPED)
                raise

    async def _open_slot(self, slot: _WorkerSlot) -> None:
        channel = await self._connection_manager.acquire_channel()
        slot.channel = channel
        await channel.set_qos(prefetch_count=self._options.prefetch_count)
        slot.queue = await channel.get_queue(self._queue_name, ensure=True)
        slot.consumer_tag = await slot.queue.consume(partial(self._on_message, slot, channel), no_ack=False)
        _log("slot_subscribed", queue=self._queue_name, slot=slot.index, consumer_tag=slot.consumer_tag)

    async def _on_message(self, slot: _WorkerSlot, channel: AbstractChannel, raw: AbstractIncomingMessage) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._in_flight.add(task)
        try:
            async with slot.lock:
                # left unsettled; the broker redelivers it once this channel closes
                if self._state != SubscriptionState.RUNNING or slot.channel is not channel:
                    return
                await self.process(AioPikaMessageAdapter(raw))
        finally:
            if task is not None:
                self._in_flight.discard(task)

    async def process(self, message: IncomingMessage) -> DeliveryOutcome:
        """Decode, run the handler and settle one delivery. Returns the outcome sent to the broker."""
        attempt = message.delivery_attempt
        try:
            payload = self._codec.decode(message.body, message.content_type)
        except DecodeError as e:
            self._report(e, message.body)
            return await self._settle(message, DeliveryOutcome.NACK_DEAD_LETTER, attempt, reason="decode_error")

        envelope = MessageEnvelope(
            payload=payload,
            content_type=normalize_content_type(message.content_type),
            correlation_id=message.correlation_id,
            headers=message.headers,
            delivery_attempt=attempt,
            body=message.body,
            message_id=message.message_id,
            exchange=message.exchange,
            routing_key=message.routing_key,
            redelivered=message.redelivered,
        )
        outcome = await self._invoke(envelope)
        if outcome == DeliveryOutcome.NACK_REQUEUE and attempt >= self._options.max_delivery_attempts:
            return await self._settle(message, DeliveryOutcome.NACK_DEAD_LETTER, attempt, reason="attempts_exhausted")
        return await self._settle(message, outcome, attempt, reason="handler")

    def _report(self, error: Exception, body: bytes) -> None:
        try:
            self._options.error_sink(self._queue_name, error, body)
        except Exception as e:
            logger.exception("error sink failed for {}: {}", self._queue_name, e)

    async def _invoke(self, envelope: MessageEnvelope) -> DeliveryOutcome:
        try:
            result = self._handler(envelope)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.exception("handler failed on {} (attempt {}): {}", self._queue_name, envelope.delivery_attempt, e)
            return DeliveryOutcome.NACK_REQUEUE
        if not isinstance(result, DeliveryOutcome):
            logger.error("handler on {} returned {!r}; treating as failure", self._queue_name, result)
            return DeliveryOutcome.NACK_REQUEUE
        return result

    async def _settle(
        self,
        message: IncomingMessage,
        outcome: DeliveryOutcome,
        attempt: int,
        *,
        reason: str,
    ) -> DeliveryOutcome:
        try:
            if outcome == DeliveryOutcome.ACK:
                await message.ack()
            elif outcome == DeliveryOutcome.NACK_REQUEUE:
                await message.nack(requeue=True)
            else:
                await message.nack(requeue=False)
        except CHANNEL_ERRORS as e:
            logger.warning("settle {} failed on {} (broker will redeliver): {}", outcome.value, self._queue_name, e)
        self._outcomes[outcome] += 1
        event = "message_dead_lettered" if outcome == DeliveryOutcome.NACK_DEAD_LETTER else "message_settled"
        _log(
            event,
            queue=self._queue_name,
            outcome=outcome.value,
            reason=reason,
            attempt=attempt,
            message_id=message.message_id,
        )
        return outcome

    async def stop(self, drain_timeout: float | None = None) -> None:
        async with self._lifecycle_lock:
            if self._state == SubscriptionState.STOPPED:
                return
            timeout = self._options.drain_timeout_seconds if drain_timeout is None else drain_timeout
            self._set_state(SubscriptionState.DRAINING)
            for slot in self._slots:
                await self._cancel_consumer(slot)

            pending = {task for task in self._in_flight if not task.done()}
            if pending:
                _, pending = await asyncio.wait(pending, timeout=timeout)
            if pending:
                _log("drain_timeout", queue=self._queue_name, in_flight=len(pending), timeout=timeout)

            await self._close_slots()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            self._slots = []
            self._set_state(SubscriptionState.STOPPED)

    async def resubscribe(self) -> None:
        """Re-open every slot on the current connection; old channels died with the old one."""
        async with self._lifecycle_lock:
            if self._state != SubscriptionState.RUNNING:
                return
            opened: list[_WorkerSlot] = []
            failed: list[_WorkerSlot] = []
            for slot in self._slots:
                slot.channel = None
                slot.queue = None
                slot.consumer_tag = None
                try:
                    await self._open_slot(slot)
                except Exception as e:
                    logger.exception("resubscribe of {} slot {} failed: {}", self._queue_name, slot.index, e)
                    failed.append(slot)
                else:
                    opened.append(slot)
            await self._close_slots(failed)
            self._slots = opened
            if not opened:
                _log("subscription_lost", queue=self._queue_name)
                self._set_state(SubscriptionState.STOPPED)
                return
            _log("subscription_resubscribed", queue=self._queue_name, slots=len(opened), failed=len(failed))

    async def _cancel_consumer(self, slot: _WorkerSlot) -> None:
        if slot.queue is None or slot.consumer_tag is None:
            return
        try:
            await slot.queue.cancel(slot.consumer_tag)
        except Exception as e:
            logger.warning("consumer cancel failed on {} slot {}: {}", self._queue_name, slot.index, e)
        slot.consumer_tag = None

    async def _close_slots(self, slots: list[_WorkerSlot] | None = None) -> None:
        for slot in self._slots if slots is None else slots:
            channel, slot.channel = slot.channel, None
            slot.queue = None
            if channel is None or channel.is_closed:
                continue
            try:
                await channel.close()
            except Exception as e:
                logger.warning("channel close failed on {} slot {}: {}", self._queue_name, slot.index, e)


class ConsumerDispatcher:
    """MessageConsumer implementation: explicit handler registration per queue."""

    def __init__(
        self,
        connection_manager: ConnectionManager,
        codec: Codec | None = None,
        *,
        default_options: SubscriptionOptions | None = None,
    ) -> None:
        self._connection_manager = connection_manager
        self._codec = codec or Codec()
        self._default_options = default_options or SubscriptionOptions()
        self._subscriptions: dict[str, Subscription] = {}
        connection_manager.add_reconnect_listener(self._on_reconnected)

    async def start(
        self,
        queue_name: str,
        handler: MessageHandler,
        options: SubscriptionOptions | None = None,
    ) -> Subscription:
        existing = self._subscriptions.get(queue_name)
        if existing is not None and existing.state != SubscriptionState.STOPPED:
            raise RuntimeError(f"queue {queue_name!r} already has a {existing.state.value} subscription")
        subscription = Subscription(
            queue_name,
            handler,
            options or self._default_options,
            self._connection_manager,
            self._codec,
        )
        self._subscriptions[queue_name] = subscription
        await subscription.start()
        return subscription

    def subscription(self, queue_name: str) -> Subscription | None:
        return self._subscriptions.get(queue_name)

    async def stop(self, queue_name: str, drain_timeout: float | None = None) -> None:
        subscription = self._subscriptions.get(queue_name)
        if subscription is not None:
            await subscription.stop(drain_timeout)

    async def stop_all(self, drain_timeout: float | None = None) -> None:
        await asyncio.gather(*(s.stop(drain_timeout) for s in self._subscriptions.values()))

    def states(self) -> dict[str, str]:
        return {name: s.state.value for name, s in self._subscriptions.items()}

    async def _on_reconnected(self) -> None:
        for subscription in list(self._subscriptions.values()):
            await subscription.resubscribe()
