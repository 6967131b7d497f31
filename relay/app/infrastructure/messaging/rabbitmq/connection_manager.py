"""
RabbitMQ connection manager: owns the single broker connection for the process.

Lifecycle:
  DISCONNECTED -> CONNECTING (backoff, bounded attempts) -> CONNECTED.
  On broker disconnect: CONNECTED -> RECONNECTING (backoff, unbounded by default) -> CONNECTED,
  bumping `generation` and running reconnect listeners so owners of channels re-acquire them.
  On shutdown: CLOSING -> cancel reconnect, close connection -> CLOSED.

Concurrency:
  - acquire_channel() waits on an asyncio.Condition while (re)connecting instead of polling,
    and gives up with BrokerUnavailableError after channel_acquire_timeout_seconds.
  - Connection close callbacks are scheduled onto the loop with call_soon_threadsafe; only one
    reconnect task runs at a time.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection
from aio_pika.exceptions import AuthenticationError
from loguru import logger

from relay.app.config.settings import Settings
from relay.app.core import SERVICE_NAME
from relay.app.core.backoff import exponential_backoff
from relay.app.domain.errors import BrokerAuthFailedError, BrokerUnavailableError
from relay.app.infrastructure.messaging.rabbitmq.constants import CHANNEL_ERRORS, ConnectionState

ReconnectListener = Callable[[], Awaitable[None]]


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class ConnectionManager:
    """Single shared connection; hands out channels to publishers and consumers."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._state = ConnectionState.DISCONNECTED
        self._connection: AbstractConnection | None = None
        self._condition = asyncio.Condition()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closing = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._generation = 0
        self._listeners: list[ReconnectListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def generation(self) -> int:
        """Incremented on every (re)connect; channels from older generations are dead."""
        return self._generation

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        self._listeners.append(listener)

    async def _open_connection(self) -> AbstractConnection:
        connection = await aio_pika.connect(self._settings.broker_url)
        connection.close_callbacks.add(self._on_connection_closed)
        return connection

    async def _install(self, connection: AbstractConnection) -> None:
        async with self._condition:
            self._connection = connection
            self._generation += 1
            self._set_state(ConnectionState.CONNECTED)
            self._condition.notify_all()

    async def connect(self) -> None:
        if self._state == ConnectionState.CONNECTED:
            return
        self._closing = False
        self._loop = asyncio.get_running_loop()
        self._set_state(ConnectionState.CONNECTING)
        _log("rmq_connecting", host=self._settings.broker_host, port=self._settings.broker_port)
        attempt = 0
        last_error: Exception | None = None
        async for delay in exponential_backoff(
            self._settings.initial_backoff_seconds,
            self._settings.max_backoff_seconds,
            self._settings.backoff_multiplier,
            self._settings.max_connection_attempts,
        ):
            attempt += 1
            _log("rmq_connect_attempt", attempt=attempt, delay=delay)
            try:
                connection = await self._open_connection()
            except AuthenticationError as e:
                _log("rmq_auth_failed", attempt=attempt)
                await self._give_up()
                raise BrokerAuthFailedError(str(e)) from e
            except Exception as e:
                logger.warning("rmq connect failed: {}", e)
                last_error = e
                continue
            await self._install(connection)
            _log("rmq_connected", generation=self._generation)
            return
        _log("rmq_connect_failed", attempt=attempt)
        await self._give_up()
        raise BrokerUnavailableError(f"broker unreachable after {attempt} attempts") from last_error

    async def _give_up(self) -> None:
        async with self._condition:
            self._set_state(ConnectionState.DISCONNECTED)
            self._condition.notify_all()

    async def _wait_connected(self) -> AbstractConnection:
        async with self._condition:
            await self._condition.wait_for(
                lambda: self._state not in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING)
            )
            if self._state != ConnectionState.CONNECTED or self._connection is None:
                raise BrokerUnavailableError(f"connection is {self._state.value.lower()}")
            return self._connection

    async def acquire_channel(self, **channel_options: Any) -> AbstractChannel:
        """Open a new channel on the live connection, waiting out a reconnect if one is running."""
        timeout = self._settings.channel_acquire_timeout_seconds
        try:
            connection = await asyncio.wait_for(self._wait_connected(), timeout=timeout)
        except asyncio.TimeoutError as e:
            _log("channel_acquire_timeout", timeout=timeout, state=self._state.value)
            raise BrokerUnavailableError(f"no broker connection within {timeout}s") from e
        try:
            return await connection.channel(**channel_options)
        except CHANNEL_ERRORS as e:
            if connection.is_closed:
                self._on_connection_closed(connection, e)
            raise BrokerUnavailableError(f"channel open failed: {e}") from e

    def _on_connection_closed(self, *args: Any, **kwargs: Any) -> None:
        sender = args[0] if args else None
        if self._closing:
            return
        if sender is not None and sender is not self._connection:
            return
        if self._state == ConnectionState.RECONNECTING:
            return
        self._set_state(ConnectionState.RECONNECTING)
        error = args[1] if len(args) > 1 else None
        _log("broker_disconnect_detected", error=str(error) if error else None)
        if (self._reconnect_task is None or self._reconnect_task.done()) and self._loop:
            self._loop.call_soon_threadsafe(self._schedule_reconnect)

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._closing:
            if not await self._reconnect_once():
                return
            await self._notify_listeners()
            # a drop while listeners ran only flagged RECONNECTING; this task is still the owner
            connection = self._connection
            if self._state != ConnectionState.RECONNECTING and connection is not None and not connection.is_closed:
                return
            _log("rmq_reconnect_restart", generation=self._generation)

    async def _reconnect_once(self) -> bool:
        """Back off until a new connection is installed. False when closing or out of attempts."""
        self._set_state(ConnectionState.RECONNECTING)
        attempt = 0
        async for delay in exponential_backoff(
            self._settings.initial_backoff_seconds,
            self._settings.max_backoff_seconds,
            self._settings.backoff_multiplier,
            self._settings.max_reconnect_attempts,
        ):
            if self._closing:
                return False
            attempt += 1
            _log("rmq_reconnect_attempt", attempt=attempt, delay=delay)
            try:
                connection = await self._open_connection()
            except Exception as e:
                logger.warning("reconnect failed: {}", e)
                continue
            if self._closing:
                await connection.close()
                return False
            await self._install(connection)
            _log("rmq_reconnected", attempt=attempt, generation=self._generation)
            return True
        _log("rmq_reconnect_exhausted", max_attempts=self._settings.max_reconnect_attempts)
        await self._give_up()
        return False

    async def _notify_listeners(self) -> None:
        for listener in list(self._listeners):
            try:
                await listener()
            except Exception as e:
                logger.exception("reconnect listener failed: {}", e)

    async def close(self) -> None:
        self._closing = True
        self._set_state(ConnectionState.CLOSING)
        _log("connection_shutdown")
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        async with self._condition:
            connection, self._connection = self._connection, None
            if connection is not None:
                try:
                    await connection.close()
                except Exception as e:
                    logger.warning("connection close failed: {}", e)
            self._set_state(ConnectionState.CLOSED)
            self._condition.notify_all()
