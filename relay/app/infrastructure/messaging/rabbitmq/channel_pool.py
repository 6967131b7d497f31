"""Fixed-size pool of publisher channels.

Each slot owns at most one channel and is lent to exactly one caller at a time,
so two in-flight publishes never write to the same channel. A slot reopens its
channel lazily when it is closed or belongs to an older connection generation.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

from aio_pika.abc import AbstractChannel
from loguru import logger

from relay.app.domain.errors import BrokerUnavailableError
from relay.app.infrastructure.messaging.rabbitmq.connection_manager import ConnectionManager
from relay.app.infrastructure.messaging.rabbitmq.constants import CHANNEL_ERRORS


@dataclass
class _Slot:
    index: int
    channel: AbstractChannel | None = None
    generation: int = -1


class ChannelPool:
    def __init__(
        self,
        connection_manager: ConnectionManager,
        size: int,
        *,
        acquire_timeout: float,
        **channel_options: Any,
    ) -> None:
        if size < 1:
            raise ValueError("channel pool size must be >= 1")
        self._connection_manager = connection_manager
        self._acquire_timeout = acquire_timeout
        self._channel_options = channel_options
        self._slots: list[_Slot] = [_Slot(i) for i in range(size)]
        self._idle: asyncio.Queue[_Slot] = asyncio.Queue()
        for slot in self._slots:
            self._idle.put_nowait(slot)

    @property
    def size(self) -> int:
        return len(self._slots)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[AbstractChannel]:
        """Lend a channel; a channel failure inside the block discards it before the slot is returned."""
        try:
            slot = await asyncio.wait_for(self._idle.get(), timeout=self._acquire_timeout)
        except asyncio.TimeoutError as e:
            raise BrokerUnavailableError(f"no free channel within {self._acquire_timeout}s") from e
        try:
            channel = await self._ensure_open(slot)
            try:
                yield channel
            except CHANNEL_ERRORS:
                await self._discard(slot)
                raise
        finally:
            self._idle.put_nowait(slot)

    async def _ensure_open(self, slot: _Slot) -> AbstractChannel:
        generation = self._connection_manager.generation
        if slot.channel is not None and (slot.channel.is_closed or slot.generation != generation):
            await self._discard(slot)
        if slot.channel is None:
            slot.channel = await self._connection_manager.acquire_channel(**self._channel_options)
            slot.generation = self._connection_manager.generation
        return slot.channel

    async def _discard(self, slot: _Slot) -> None:
        channel, slot.channel = slot.channel, None
        slot.generation = -1
        if channel is None or channel.is_closed:
            return
        try:
            await channel.close()
        except Exception as e:
            logger.warning("pooled channel {} close failed: {}", slot.index, e)

    async def close(self) -> None:
        for slot in self._slots:
            await self._discard(slot)
