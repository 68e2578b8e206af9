"""Bounded queues persisted in the local buffer."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from ..storage.buffer import LocalBuffer

logger = logging.getLogger(__name__)


class PersistentQueue:
    """A bounded list stored under one buffer key.

    Every mutation is a read-full-queue, mutate, write-full-queue sequence
    run under the queue's lock, so concurrent pushes cannot lose updates.
    On overflow the oldest items are evicted.
    """

    def __init__(self, buffer: LocalBuffer, key: str, max_length: int):
        if max_length <= 0:
            raise ValueError(f"max_length must be positive, got {max_length}")
        self._buffer = buffer
        self._key = key
        self._max_length = max_length
        self._lock = asyncio.Lock()

    @property
    def key(self) -> str:
        return self._key

    @property
    def max_length(self) -> int:
        return self._max_length

    async def items(self) -> list[dict[str, Any]]:
        return list(await self._buffer.get(self._key, []))

    async def length(self) -> int:
        return len(await self.items())

    async def _store(self, items: list[dict[str, Any]]) -> None:
        if len(items) > self._max_length:
            evicted = len(items) - self._max_length
            logger.warning("Queue %s over capacity, evicting %d oldest", self._key, evicted)
            items = items[evicted:]
        await self._buffer.set(self._key, items)

    async def push(self, item: dict[str, Any]) -> None:
        async with self._lock:
            items = await self.items()
            items.append(item)
            await self._store(items)

    async def extend(self, new_items: list[dict[str, Any]]) -> None:
        if not new_items:
            return
        async with self._lock:
            items = await self.items()
            items.extend(new_items)
            await self._store(items)

    async def remove_where(self, predicate: Callable[[dict[str, Any]], bool]) -> int:
        """Drop items matching ``predicate``. Returns how many were removed."""
        async with self._lock:
            items = await self.items()
            kept = [item for item in items if not predicate(item)]
            removed = len(items) - len(kept)
            if removed:
                await self._store(kept)
            return removed

    async def update(
        self,
        mutate: Callable[[list[dict[str, Any]]], list[dict[str, Any]]],
    ) -> list[dict[str, Any]]:
        """Replace the queue with ``mutate(items)`` in one critical section."""
        async with self._lock:
            items = mutate(await self.items())
            await self._store(items)
            return items

    async def clear(self) -> None:
        async with self._lock:
            await self._buffer.remove(self._key)
