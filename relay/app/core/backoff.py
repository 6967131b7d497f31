"""Backoff utilities.

`exponential_backoff` yields the current delay for the caller to attempt an operation,
then sleeps for that delay before the next attempt. The first attempt is immediate.
max_attempts=0 means the generator never runs out.
"""
import asyncio
from typing import AsyncIterator


async def exponential_backoff(
    initial_delay: float,
    max_delay: float,
    multiplier: float,
    max_attempts: int = 0,
) -> AsyncIterator[float]:
    delay = initial_delay
    attempt = 0
    while max_attempts <= 0 or attempt < max_attempts:
        attempt += 1
        yield delay
        if 0 < max_attempts <= attempt:
            return
        await asyncio.sleep(delay)
        delay = min(delay * multiplier, max_delay)
