"""Domain models."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from relay.app.constants import (
    DEAD_LETTER_EXCHANGE_ARG,
    DEAD_LETTER_ROUTING_KEY_ARG,
    HEADERS_MATCH_ARG,
    HEADERS_MATCH_MODES,
    QUEUE_TYPE_ARG,
    ExchangeKind,
    QueueType,
)


class DeliveryOutcome(str, Enum):
    """What the dispatcher tells the broker after a handler ran."""

    ACK = "ack"
    NACK_REQUEUE = "nack_requeue"
    NACK_DEAD_LETTER = "nack_dead_letter"


@dataclass(frozen=True)
class ExchangeSpec:
    name: str
    kind: ExchangeKind = ExchangeKind.TOPIC
    durable: bool = True

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("exchange name must be non-empty")
        object.__setattr__(self, "kind", ExchangeKind(self.kind))


@dataclass(frozen=True)
class QueueSpec:
    name: str
    durable: bool = True
    dead_letter_exchange: str | None = None
    dead_letter_routing_key: str | None = None
    queue_type: QueueType = QueueType.CLASSIC
    arguments: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("queue name must be non-empty")
        queue_type = QueueType(self.queue_type)
        if queue_type is QueueType.QUORUM and not self.durable:
            raise ValueError(f"quorum queue {self.name!r} must be durable")
        if self.dead_letter_routing_key and not self.dead_letter_exchange:
            raise ValueError(f"queue {self.name!r} has a dead-letter routing key but no dead-letter exchange")
        object.__setattr__(self, "queue_type", queue_type)
        object.__setattr__(self, "arguments", dict(self.arguments))

    def declare_arguments(self) -> dict[str, Any]:
        """Broker arguments sent with queue.declare."""
        args: dict[str, Any] = dict(self.arguments)
        if self.queue_type is QueueType.QUORUM:
            args[QUEUE_TYPE_ARG] = QueueType.QUORUM.value
        if self.dead_letter_exchange:
            args[DEAD_LETTER_EXCHANGE_ARG] = self.dead_letter_exchange
        if self.dead_letter_routing_key:
            args[DEAD_LETTER_ROUTING_KEY_ARG] = self.dead_letter_routing_key
        return args


@dataclass(frozen=True)
class BindingSpec:
    exchange: str
    queue: str
    routing_key: str = ""
    # headers-exchange match rules ("x-match" plus header values); a mapping is accepted and
    # kept as sorted pairs so the binding stays hashable
    arguments: tuple[tuple[str, Any], ...] = ()

    def __post_init__(self) -> None:
        pairs = self.arguments.items() if isinstance(self.arguments, Mapping) else self.arguments
        arguments = tuple(sorted(((str(k), v) for k, v in pairs), key=lambda pair: pair[0]))
        match = dict(arguments).get(HEADERS_MATCH_ARG)
        if match is not None and match not in HEADERS_MATCH_MODES:
            raise ValueError(f"binding {self.exchange!r} -> {self.queue!r} has unknown {HEADERS_MATCH_ARG} {match!r}")
        object.__setattr__(self, "arguments", arguments)

    def bind_arguments(self) -> dict[str, Any] | None:
        """Broker arguments sent with queue.bind, None when there are none."""
        return dict(self.arguments) or None


@dataclass(frozen=True)
class Topology:
    """Immutable description of exchanges, queues and the bindings between them.

    Validated on construction: bindings point at declared entities, direct/topic
    bindings carry a routing key, headers bindings carry match arguments, fanout and
    headers keys are dropped, and every dead-letter exchange a queue names is part
    of the same topology.
    """

    exchanges: tuple[ExchangeSpec, ...] = ()
    queues: tuple[QueueSpec, ...] = ()
    bindings: tuple[BindingSpec, ...] = ()

    def __post_init__(self) -> None:
        exchanges = tuple(self.exchanges)
        queues = tuple(self.queues)
        _require_unique("exchange", [e.name for e in exchanges])
        _require_unique("queue", [q.name for q in queues])

        by_name = {e.name: e for e in exchanges}
        queue_names = {q.name for q in queues}

        for queue in queues:
            if queue.dead_letter_exchange and queue.dead_letter_exchange not in by_name:
                raise ValueError(
                    f"queue {queue.name!r} dead-letters to undeclared exchange {queue.dead_letter_exchange!r}"
                )

        bindings: list[BindingSpec] = []
        for binding in self.bindings:
            exchange = by_name.get(binding.exchange)
            if exchange is None:
                raise ValueError(f"binding references undeclared exchange {binding.exchange!r}")
            if binding.queue not in queue_names:
                raise ValueError(f"binding references undeclared queue {binding.queue!r}")
            if exchange.kind is ExchangeKind.FANOUT:
                binding = replace(binding, routing_key="")
            elif exchange.kind is ExchangeKind.HEADERS:
                if not binding.arguments:
                    raise ValueError(
                        f"binding {binding.exchange!r} -> {binding.queue!r} needs match arguments on a headers exchange"
                    )
                binding = replace(binding, routing_key="")
            elif exchange.kind in (ExchangeKind.DIRECT, ExchangeKind.TOPIC) and not binding.routing_key:
                raise ValueError(
                    f"binding {binding.exchange!r} -> {binding.queue!r} needs a routing key on a {exchange.kind.value} exchange"
                )
            if binding not in bindings:
                bindings.append(binding)

        object.__setattr__(self, "exchanges", exchanges)
        object.__setattr__(self, "queues", queues)
        object.__setattr__(self, "bindings", tuple(bindings))

    @property
    def dead_letter_exchanges(self) -> frozenset[str]:
        return frozenset(q.dead_letter_exchange for q in self.queues if q.dead_letter_exchange)

    @property
    def work_bindings(self) -> tuple[BindingSpec, ...]:
        dlx = self.dead_letter_exchanges
        return tuple(b for b in self.bindings if b.exchange not in dlx)

    @property
    def dead_letter_bindings(self) -> tuple[BindingSpec, ...]:
        dlx = self.dead_letter_exchanges
        return tuple(b for b in self.bindings if b.exchange in dlx)

    @classmethod
    def for_queue(
        cls,
        *,
        exchange: str,
        queue: str,
        routing_keys: tuple[str, ...] | list[str] = (),
        kind: ExchangeKind = ExchangeKind.TOPIC,
        durable: bool = True,
        dead_letter_exchange: str | None = None,
        dead_letter_queue: str | None = None,
        dead_letter_routing_key: str | None = None,
        queue_type: QueueType = QueueType.CLASSIC,
        binding_arguments: Mapping[str, Any] | None = None,
    ) -> "Topology":
        """Single exchange/queue triple, optionally with a direct dead-letter exchange and queue."""
        exchanges = [ExchangeSpec(exchange, kind, durable)]
        queues = [
            QueueSpec(
                queue,
                durable=durable,
                dead_letter_exchange=dead_letter_exchange,
                dead_letter_routing_key=dead_letter_routing_key,
                queue_type=queue_type,
            )
        ]
        match = tuple((binding_arguments or {}).items())
        bindings = [BindingSpec(exchange, queue, key, match) for key in (routing_keys or ("",))]
        if dead_letter_exchange:
            exchanges.append(ExchangeSpec(dead_letter_exchange, ExchangeKind.DIRECT, durable))
            if dead_letter_queue:
                queues.append(QueueSpec(dead_letter_queue, durable=durable))
                bindings.append(
                    BindingSpec(dead_letter_exchange, dead_letter_queue, dead_letter_routing_key or queue)
                )
        return cls(tuple(exchanges), tuple(queues), tuple(bindings))


def _require_unique(kind: str, names: list[str]) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise ValueError(f"duplicate {kind} {name!r} in topology")
        seen.add(name)


@dataclass(frozen=True)
class MessageEnvelope:
    """A message as the application sees it, outbound or inbound.

    Outbound: `payload` is encoded by the publisher unless `body` is already set.
    Inbound: `body` holds the wire bytes and `payload` the decoded value.
    `delivery_attempt` is observed from the broker, never incremented here.
    """

    payload: Any
    content_type: str
    correlation_id: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    delivery_attempt: int = 1
    body: bytes | None = None
    message_id: str | None = None
    exchange: str | None = None
    routing_key: str | None = None
    redelivered: bool = False

    def __post_init__(self) -> None:
        if self.delivery_attempt < 1:
            raise ValueError("delivery_attempt starts at 1")
        headers = {str(k): str(v) for k, v in dict(self.headers).items()}
        object.__setattr__(self, "headers", MappingProxyType(headers))
