"""
Composition root: single place where concrete implementations are wired.

Builds the codec, connection manager, topology manager, publisher and consumer
dispatcher from Settings and owns their connect/close lifecycle. Used by the API
lifespan and by the worker. No DI container library, explicit wiring only.
Reconnect listeners run in registration order: topology first, then subscriptions.
"""
from __future__ import annotations

from typing import Any

from loguru import logger

from relay.app.config.settings import Settings
from relay.app.config.topology import topology_from_settings
from relay.app.core import SERVICE_NAME
from relay.app.domain.codec import Codec
from relay.app.domain.models import Topology
from relay.app.infrastructure.messaging.factory import create_publisher
from relay.app.infrastructure.messaging.rabbitmq.connection_manager import ConnectionManager
from relay.app.infrastructure.messaging.rabbitmq.consumer_dispatcher import ConsumerDispatcher, SubscriptionOptions
from relay.app.infrastructure.messaging.rabbitmq.topology_manager import TopologyManager
from relay.app.ports.message_publisher import MessagePublisher


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class RelayDependencies:
    """Holds wired messaging dependencies and their lifecycle. Built only in composition root."""

    def __init__(self, *, settings: Settings) -> None:
        self._settings = settings
        self._codec = Codec()
        self._topology = topology_from_settings(settings)
        self._connection_manager: ConnectionManager | None = None
        self._topology_manager: TopologyManager | None = None
        self._dispatcher: ConsumerDispatcher | None = None

        if settings.publisher_backend.strip().lower() == "rabbitmq":
            self._connection_manager = ConnectionManager(settings)
            self._topology_manager = TopologyManager(self._connection_manager)
            self._connection_manager.add_reconnect_listener(self._topology_manager.redeclare)
            self._dispatcher = ConsumerDispatcher(
                self._connection_manager,
                self._codec,
                default_options=SubscriptionOptions.from_settings(settings),
            )
        self._publisher = create_publisher(settings, self._connection_manager, self._codec)
        self._connected = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def codec(self) -> Codec:
        return self._codec

    @property
    def topology(self) -> Topology:
        return self._topology

    @property
    def publisher(self) -> MessagePublisher:
        return self._publisher

    @property
    def connection_manager(self) -> ConnectionManager:
        if self._connection_manager is None:
            raise RuntimeError("connection_manager is not initialized")
        return self._connection_manager

    @property
    def topology_manager(self) -> TopologyManager:
        if self._topology_manager is None:
            raise RuntimeError("topology_manager is not initialized")
        return self._topology_manager

    @property
    def dispatcher(self) -> ConsumerDispatcher:
        if self._dispatcher is None:
            raise RuntimeError("dispatcher is not initialized")
        return self._dispatcher

    @property
    def connection_health(self) -> str:
        if self._connection_manager is None:
            return "Connected" if self._publisher.ready else "Down"
        return self._connection_manager.state.health

    def subscription_states(self) -> dict[str, str]:
        if self._dispatcher is None:
            return {}
        return self._dispatcher.states()

    async def connect(self) -> None:
        """Connect and declare the topology. A topology conflict propagates; the caller must not go on."""
        if self._connection_manager is not None and self._topology_manager is not None:
            await self._connection_manager.connect()
            try:
                await self._topology_manager.declare(self._topology)
            except Exception:
                await self._connection_manager.close()
                raise
        await self._publisher.connect()
        self._connected = True
        _log("dependencies_connected", backend=self._settings.publisher_backend)

    async def close(self) -> None:
        if self._dispatcher is not None:
            try:
                await self._dispatcher.stop_all()
            except Exception as exc:
                logger.warning("dispatcher stop failed: {}", exc)

        try:
            await self._publisher.close()
        except Exception as exc:
            logger.warning("publisher close failed: {}", exc)

        if self._connection_manager is not None:
            try:
                await self._connection_manager.close()
            except Exception as exc:
                logger.warning("connection manager close failed: {}", exc)

        self._connected = False
        _log("dependencies_closed")


def create_relay_dependencies(settings: Settings | None = None) -> RelayDependencies:
    return RelayDependencies(settings=settings or Settings())
