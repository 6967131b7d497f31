from __future__ import annotations

import asyncio
import itertools
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable

import pytest
from aio_pika.exceptions import (
    AuthenticationError,
    ChannelInvalidStateError,
    ChannelNotFoundEntity,
    ChannelPreconditionFailed,
    DeliveryError,
)
from fastapi import FastAPI

from relay.app.config.settings import Settings
from relay.app.domain.models import MessageEnvelope
from relay.app.routers.health import health_router
from relay.app.routers.messages import messages_router


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "broker_host": "rabbitmq",
        "initial_backoff_seconds": 0.0,
        "max_backoff_seconds": 0.0,
        "max_connection_attempts": 3,
        "channel_acquire_timeout_seconds": 1.0,
        "confirm_timeout_seconds": 1.0,
        "drain_timeout_seconds": 1.0,
        "publisher_pool_size": 2,
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# In-process broker mimicking the parts of aio_pika the relay touches.
# ---------------------------------------------------------------------------


def headers_match(arguments: dict[str, Any], headers: dict[str, Any]) -> bool:
    mode = arguments.get("x-match", "all")
    hits = [headers.get(k) == v for k, v in arguments.items() if not k.startswith("x-")]
    return any(hits) if mode.startswith("any") else all(hits)


def topic_matches(pattern: str, key: str) -> bool:
    p = pattern.split(".")
    k = key.split(".") if key else []

    def match(i: int, j: int) -> bool:
        if i == len(p):
            return j == len(k)
        if p[i] == "#":
            return any(match(i + 1, jj) for jj in range(j, len(k) + 1))
        if j == len(k):
            return False
        return p[i] in ("*", k[j]) and match(i + 1, j + 1)

    return match(0, 0)


@dataclass
class StoredMessage:
    body: bytes
    content_type: str | None
    correlation_id: str | None
    message_id: str | None
    headers: dict[str, Any]
    exchange: str
    routing_key: str
    redelivered: bool = False
    delivery_count: int = 0


@dataclass
class Consumer:
    tag: str
    channel: "FakeChannel"
    callback: Callable[[Any], Awaitable[None]]


@dataclass
class QueueState:
    name: str
    durable: bool
    arguments: dict[str, Any]
    messages: deque = field(default_factory=deque)
    consumers: list = field(default_factory=list)
    rr: int = 0

    @property
    def quorum(self) -> bool:
        return self.arguments.get("x-queue-type") == "quorum"


class FakeConfirmation:
    def __init__(self, name: str) -> None:
        self.name = name


class FakeIncomingMessage:
    def __init__(self, channel: "FakeChannel", tag: int, queue: QueueState, stored: StoredMessage) -> None:
        self._channel = channel
        self.delivery_tag = tag
        self._queue = queue
        self._stored = stored
        self.body = stored.body
        self.content_type = stored.content_type
        self.correlation_id = stored.correlation_id
        self.message_id = stored.message_id
        self.exchange = stored.exchange
        self.routing_key = stored.routing_key
        self.redelivered = stored.redelivered
        self.headers = dict(stored.headers)
        if queue.quorum and stored.delivery_count:
            self.headers["x-delivery-count"] = stored.delivery_count
        self.processed = False

    async def ack(self) -> None:
        self._channel.settle(self.delivery_tag, "ack")
        self.processed = True

    async def nack(self, requeue: bool = True) -> None:
        self._channel.settle(self.delivery_tag, "requeue" if requeue else "dead_letter")
        self.processed = True

    async def reject(self, requeue: bool = False) -> None:
        await self.nack(requeue=requeue)


class FakeBroker:
    def __init__(self) -> None:
        self.exchanges: dict[str, tuple[str, bool]] = {}
        self.queues: dict[str, QueueState] = {}
        self.bindings: set[tuple[str, str, str]] = set()
        self.binding_arguments: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.connections: list[FakeConnection] = []
        self.connect_attempts = 0
        self.connect_failures = 0
        self.auth_fail = False
        self.publish_calls = 0
        self.publish_failures = 0
        self.lost_confirms = 0
        self.confirm_mode = "ack"
        self.settlements: list[tuple[str, str, bytes]] = []
        self._tags = itertools.count(1)
        self._consumer_tags = itertools.count(1)

    # connection entry point, patched over aio_pika.connect
    async def connect(self, url: str, **kwargs: Any) -> "FakeConnection":
        self.connect_attempts += 1
        if self.auth_fail:
            raise AuthenticationError("ACCESS_REFUSED", "login refused")
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ConnectionRefusedError("connection refused")
        connection = FakeConnection(self)
        self.connections.append(connection)
        return connection

    @property
    def live_connection(self) -> "FakeConnection | None":
        for connection in reversed(self.connections):
            if not connection.is_closed:
                return connection
        return None

    def bodies(self, queue: str) -> list[bytes]:
        return [m.body for m in self.queues[queue].messages]

    def unacked(self, queue: str) -> int:
        count = 0
        for connection in self.connections:
            for channel in connection.channels:
                count += sum(1 for q, _ in channel.unacked.values() if q.name == queue)
        return count

    def preload(self, queue: str, body: bytes, content_type: str | None = "application/json", **headers: Any) -> None:
        state = self.queues[queue]
        state.messages.append(StoredMessage(body, content_type, None, None, dict(headers), "", queue))
        self.dispatch(state)

    def route(self, exchange: str, routing_key: str, message: StoredMessage) -> bool:
        if exchange == "":
            targets = [routing_key] if routing_key in self.queues else []
        else:
            kind, _ = self.exchanges[exchange]
            targets = []
            for ex, queue, key in sorted(self.bindings):
                if ex != exchange or queue in targets:
                    continue
                if kind == "fanout":
                    targets.append(queue)
                elif kind == "direct" and key == routing_key:
                    targets.append(queue)
                elif kind == "topic" and topic_matches(key, routing_key):
                    targets.append(queue)
                elif kind == "headers" and headers_match(self.binding_arguments.get((ex, queue, key), {}), message.headers):
                    targets.append(queue)
        for queue in targets:
            state = self.queues[queue]
            state.messages.append(replace(message, headers=dict(message.headers), exchange=exchange, routing_key=routing_key))
            self.dispatch(state)
        return bool(targets)

    def dispatch(self, state: QueueState) -> None:
        while state.messages:
            consumer = self._next_consumer(state)
            if consumer is None:
                return
            stored = state.messages.popleft()
            tag = next(self._tags)
            consumer.channel.unacked[tag] = (state, stored)
            incoming = FakeIncomingMessage(consumer.channel, tag, state, stored)
            asyncio.get_running_loop().create_task(consumer.callback(incoming))

    def _next_consumer(self, state: QueueState) -> Consumer | None:
        live = [c for c in state.consumers if not c.channel.is_closed]
        for offset in range(len(live)):
            consumer = live[(state.rr + offset) % len(live)]
            if consumer.channel.has_capacity():
                state.rr = (state.rr + offset + 1) % len(live)
                return consumer
        return None

    def requeue(self, state: QueueState, stored: StoredMessage) -> None:
        state.messages.appendleft(replace(stored, redelivered=True, delivery_count=stored.delivery_count + 1))
        self.dispatch(state)

    def dead_letter(self, state: QueueState, stored: StoredMessage) -> None:
        dlx = state.arguments.get("x-dead-letter-exchange")
        if not dlx:
            return
        key = state.arguments.get("x-dead-letter-routing-key", stored.routing_key)
        headers = dict(stored.headers)
        headers["x-first-death-queue"] = state.name
        self.route(dlx, key, replace(stored, headers=headers, redelivered=False, delivery_count=0))

    def redispatch_all(self) -> None:
        for state in self.queues.values():
            self.dispatch(state)


class CallbackCollection:
    def __init__(self) -> None:
        self._callbacks: list[Callable[..., Any]] = []

    def add(self, callback: Callable[..., Any]) -> None:
        self._callbacks.append(callback)

    def fire(self, *args: Any) -> None:
        for callback in list(self._callbacks):
            callback(*args)


class FakeConnection:
    def __init__(self, broker: FakeBroker) -> None:
        self.broker = broker
        self.channels: list[FakeChannel] = []
        self.close_callbacks = CallbackCollection()
        self.is_closed = False

    async def channel(self, publisher_confirms: bool = True, on_return_raises: bool = False, **kwargs: Any) -> "FakeChannel":
        if self.is_closed:
            raise ChannelInvalidStateError("connection is closed")
        channel = FakeChannel(self, publisher_confirms=publisher_confirms, on_return_raises=on_return_raises)
        self.channels.append(channel)
        return channel

    def _shutdown(self) -> None:
        self.is_closed = True
        for channel in self.channels:
            channel.shutdown()

    async def close(self) -> None:
        if self.is_closed:
            return
        self._shutdown()
        self.close_callbacks.fire(self, None)

    def drop(self) -> None:
        """Simulate the broker going away under us."""
        self._shutdown()
        self.close_callbacks.fire(self, ConnectionResetError("connection reset by peer"))


class FakeExchange:
    def __init__(self, channel: "FakeChannel", name: str) -> None:
        self.channel = channel
        self.name = name

    async def publish(self, message: Any, routing_key: str, *, mandatory: bool = True, timeout: float | None = None, **kwargs: Any):
        channel = self.channel
        broker = channel.broker
        channel.check_open()
        broker.publish_calls += 1
        channel.publishes += 1
        await asyncio.sleep(0)
        if broker.publish_failures > 0:
            broker.publish_failures -= 1
            channel.shutdown()
            raise ChannelInvalidStateError("channel closed")
        if self.name and self.name not in broker.exchanges:
            channel.shutdown()
            raise ChannelNotFoundEntity(404, f"NOT_FOUND - no exchange '{self.name}'")
        if broker.confirm_mode == "timeout":
            raise asyncio.TimeoutError()
        stored = StoredMessage(
            body=message.body,
            content_type=message.content_type,
            correlation_id=message.correlation_id,
            message_id=message.message_id,
            headers=dict(message.headers or {}),
            exchange=self.name,
            routing_key=routing_key,
        )
        routed = broker.route(self.name, routing_key, stored)
        if broker.lost_confirms > 0:
            broker.lost_confirms -= 1
            channel.shutdown()
            raise ChannelInvalidStateError("channel closed before confirm")
        if not routed and mandatory and channel.on_return_raises:
            raise DeliveryError(None, None)
        if not channel.publisher_confirms:
            return None
        return FakeConfirmation("Basic.Nack" if broker.confirm_mode == "nack" else "Basic.Ack")


class FakeQueue:
    def __init__(self, channel: "FakeChannel", name: str) -> None:
        self.channel = channel
        self.name = name

    async def bind(self, exchange: FakeExchange, routing_key: str | None = None, **kwargs: Any) -> None:
        self.channel.check_open()
        broker = self.channel.broker
        broker.calls.append(("bind", f"{exchange.name}->{self.name}:{routing_key or ''}"))
        if exchange.name not in broker.exchanges:
            raise ChannelNotFoundEntity(404, f"no exchange '{exchange.name}'")
        broker.bindings.add((exchange.name, self.name, routing_key or ""))
        broker.binding_arguments[(exchange.name, self.name, routing_key or "")] = dict(kwargs.get("arguments") or {})

    async def consume(self, callback: Callable[[Any], Awaitable[None]], no_ack: bool = False, **kwargs: Any) -> str:
        self.channel.check_open()
        broker = self.channel.broker
        tag = f"ctag-{next(broker._consumer_tags)}"
        state = broker.queues[self.name]
        state.consumers.append(Consumer(tag, self.channel, callback))
        self.channel.consumers[tag] = state
        broker.dispatch(state)
        return tag

    async def cancel(self, consumer_tag: str, **kwargs: Any) -> None:
        state = self.channel.consumers.pop(consumer_tag, None)
        if state is not None:
            state.consumers = [c for c in state.consumers if c.tag != consumer_tag]


class FakeChannel:
    def __init__(self, connection: FakeConnection, *, publisher_confirms: bool, on_return_raises: bool) -> None:
        self.connection = connection
        self.broker = connection.broker
        self.publisher_confirms = publisher_confirms
        self.on_return_raises = on_return_raises
        self.is_closed = False
        self.prefetch_count = 0
        self.unacked: dict[int, tuple[QueueState, StoredMessage]] = {}
        self.consumers: dict[str, QueueState] = {}
        self.publishes = 0

    def check_open(self) -> None:
        if self.is_closed:
            raise ChannelInvalidStateError("channel is closed")

    def has_capacity(self) -> bool:
        return not self.prefetch_count or len(self.unacked) < self.prefetch_count

    @property
    def default_exchange(self) -> FakeExchange:
        return FakeExchange(self, "")

    async def set_qos(self, prefetch_count: int = 0, **kwargs: Any) -> None:
        self.check_open()
        self.prefetch_count = prefetch_count

    async def declare_exchange(self, name: str, type: Any = "direct", *, durable: bool = False, **kwargs: Any) -> FakeExchange:
        self.check_open()
        kind = getattr(type, "value", type)
        self.broker.calls.append(("exchange", name))
        existing = self.broker.exchanges.get(name)
        if existing is not None and existing != (kind, durable):
            self.shutdown()
            raise ChannelPreconditionFailed(406, f"PRECONDITION_FAILED - inequivalent arg for exchange '{name}'")
        self.broker.exchanges[name] = (kind, durable)
        return FakeExchange(self, name)

    async def declare_queue(self, name: str, *, durable: bool = False, arguments: dict | None = None, **kwargs: Any) -> FakeQueue:
        self.check_open()
        arguments = dict(arguments or {})
        self.broker.calls.append(("queue", name))
        existing = self.broker.queues.get(name)
        if existing is not None:
            if existing.durable != durable or existing.arguments != arguments:
                self.shutdown()
                raise ChannelPreconditionFailed(406, f"PRECONDITION_FAILED - inequivalent arg for queue '{name}'")
        else:
            self.broker.queues[name] = QueueState(name, durable, arguments)
        return FakeQueue(self, name)

    async def get_queue(self, name: str, *, ensure: bool = True) -> FakeQueue:
        self.check_open()
        if ensure and name not in self.broker.queues:
            self.shutdown()
            raise ChannelNotFoundEntity(404, f"NOT_FOUND - no queue '{name}'")
        return FakeQueue(self, name)

    async def get_exchange(self, name: str, *, ensure: bool = True) -> FakeExchange:
        self.check_open()
        return FakeExchange(self, name)

    def settle(self, tag: int, how: str) -> None:
        self.check_open()
        state, stored = self.unacked.pop(tag)
        self.broker.settlements.append((state.name, how, stored.body))
        if how == "requeue":
            self.broker.requeue(state, stored)
        elif how == "dead_letter":
            self.broker.dead_letter(state, stored)
        self.broker.dispatch(state)

    def shutdown(self) -> None:
        if self.is_closed:
            return
        self.is_closed = True
        for tag, state in list(self.consumers.items()):
            state.consumers = [c for c in state.consumers if c.tag != tag]
        self.consumers.clear()
        unacked = list(self.unacked.values())
        self.unacked.clear()
        for state, stored in reversed(unacked):
            state.messages.appendleft(replace(stored, redelivered=True, delivery_count=stored.delivery_count + 1))
        if unacked and not self.connection.is_closed:
            for state in {s.name: s for s, _ in unacked}.values():
                self.broker.dispatch(state)

    async def close(self) -> None:
        self.shutdown()


@pytest.fixture()
def broker(monkeypatch: pytest.MonkeyPatch) -> FakeBroker:
    import relay.app.infrastructure.messaging.rabbitmq.connection_manager as mod

    fake = FakeBroker()
    monkeypatch.setattr(mod.aio_pika, "connect", fake.connect)
    return fake


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


# ---------------------------------------------------------------------------
# HTTP layer fakes
# ---------------------------------------------------------------------------


class FakePublisher:
    """Implements MessagePublisher for tests; routers depend only on .ready, .accepting and .publish()."""

    def __init__(self, ready: bool = True, *, raise_on_publish: Exception | None = None) -> None:
        self._ready = ready
        self.published: list[tuple[str, str, MessageEnvelope]] = []
        self._raise_on_publish = raise_on_publish

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def accepting(self) -> bool:
        return self._ready

    async def publish(self, exchange: str, routing_key: str, envelope: MessageEnvelope) -> None:
        if self._raise_on_publish is not None:
            raise self._raise_on_publish
        self.published.append((exchange, routing_key, envelope))


class FakeDependencies:
    def __init__(self, connection_health: str = "Connected", subscriptions: dict[str, str] | None = None) -> None:
        self.connection_health = connection_health
        self._subscriptions = subscriptions or {}

    def subscription_states(self) -> dict[str, str]:
        return dict(self._subscriptions)


@pytest.fixture()
def test_app(settings: Settings) -> FastAPI:
    app = FastAPI()
    app.state.settings = settings
    app.state.publisher = FakePublisher()
    app.state.dependencies = FakeDependencies()
    app.include_router(health_router)
    app.include_router(messages_router)
    return app
