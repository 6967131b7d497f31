"""
Topology manager: declares exchanges, queues and bindings against RabbitMQ.

Order per declare(): exchanges -> queues -> work bindings -> dead-letter bindings, so a
dead-letter exchange always exists before any queue naming it is bound. What has been
declared in this process is cached: an identical re-declare never reaches the broker, a
conflicting one fails before it does.
"""
from __future__ import annotations

from typing import Any

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue
from aio_pika.exceptions import AMQPError, ChannelPreconditionFailed
from loguru import logger

from relay.app.core import SERVICE_NAME
from relay.app.domain.errors import TopologyBrokerRejectedError, TopologyConflictError
from relay.app.domain.models import BindingSpec, ExchangeSpec, QueueSpec, Topology
from relay.app.infrastructure.messaging.rabbitmq.connection_manager import ConnectionManager


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class TopologyManager:
    def __init__(self, connection_manager: ConnectionManager) -> None:
        self._connection_manager = connection_manager
        self._exchanges: dict[str, ExchangeSpec] = {}
        self._queues: dict[str, QueueSpec] = {}
        self._bindings: set[BindingSpec] = set()
        # insertion-ordered history, replayed by redeclare()
        self._declared: list[Topology] = []

    def is_declared(self, topology: Topology) -> bool:
        return (
            all(self._exchanges.get(e.name) == e for e in topology.exchanges)
            and all(self._queues.get(q.name) == q for q in topology.queues)
            and all(b in self._bindings for b in topology.bindings)
        )

    def _check_conflicts(self, topology: Topology) -> None:
        for exchange in topology.exchanges:
            known = self._exchanges.get(exchange.name)
            if known is not None and known != exchange:
                raise TopologyConflictError(
                    f"exchange {exchange.name!r} already declared as {known.kind.value} durable={known.durable}"
                )
        for queue in topology.queues:
            known_queue = self._queues.get(queue.name)
            if known_queue is not None and known_queue != queue:
                raise TopologyConflictError(f"queue {queue.name!r} already declared with different parameters")

    async def declare(self, topology: Topology) -> None:
        """Make the broker match `topology`. Raises TopologyConflictError / TopologyBrokerRejectedError."""
        self._check_conflicts(topology)
        if self.is_declared(topology):
            _log("topology_declare_skipped", exchanges=len(topology.exchanges), queues=len(topology.queues))
            return

        channel = await self._connection_manager.acquire_channel()
        try:
            await self._apply(channel, topology, skip_cached=True)
        except ChannelPreconditionFailed as e:
            _log("topology_conflict", error=str(e))
            raise TopologyConflictError(f"broker refused re-declaration: {e}") from e
        except AMQPError as e:
            _log("topology_rejected", error=str(e))
            raise TopologyBrokerRejectedError(f"broker rejected declaration: {e}") from e
        finally:
            await self._close_quietly(channel)

        self._declared.append(topology)
        _log(
            "topology_declared",
            exchanges=[e.name for e in topology.exchanges],
            queues=[q.name for q in topology.queues],
            bindings=len(topology.bindings),
        )

    async def redeclare(self) -> None:
        """Re-apply every cached declaration; registered as a reconnect listener."""
        if not self._declared:
            return
        channel = await self._connection_manager.acquire_channel()
        try:
            for topology in self._declared:
                await self._apply(channel, topology, skip_cached=False)
        finally:
            await self._close_quietly(channel)
        _log("topology_redeclared", topologies=len(self._declared))

    async def _apply(self, channel: AbstractChannel, topology: Topology, *, skip_cached: bool) -> None:
        exchanges: dict[str, AbstractExchange] = {}
        for spec in topology.exchanges:
            exchanges[spec.name] = await channel.declare_exchange(
                spec.name,
                type=aio_pika.ExchangeType(spec.kind.value),
                durable=spec.durable,
            )
            self._exchanges[spec.name] = spec

        queues: dict[str, AbstractQueue] = {}
        for queue_spec in topology.queues:
            queues[queue_spec.name] = await channel.declare_queue(
                queue_spec.name,
                durable=queue_spec.durable,
                arguments=queue_spec.declare_arguments(),
            )
            self._queues[queue_spec.name] = queue_spec

        for binding in topology.work_bindings + topology.dead_letter_bindings:
            if skip_cached and binding in self._bindings:
                continue
            await queues[binding.queue].bind(
                exchanges[binding.exchange],
                routing_key=binding.routing_key,
                arguments=binding.bind_arguments(),
            )
            self._bindings.add(binding)

    async def _close_quietly(self, channel: AbstractChannel) -> None:
        if channel.is_closed:
            return
        try:
            await channel.close()
        except Exception as e:
            logger.warning("topology channel close failed: {}", e)
