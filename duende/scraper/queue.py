"""
Hand-off between the search phase and the extraction workers.

Any backend works as long as it offers enqueue() and dequeue(timeout); the orchestrator
never knows which one it is talking to.
"""
import asyncio
import json
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from duende.config import Settings
from duende.scraper.models import UrlTask

logger = logging.getLogger(__name__)


class QueueError(RuntimeError):
    """The queue backend could not be reached."""


class TaskQueue:
    async def enqueue(self, item: UrlTask) -> None:
        raise NotImplementedError

    async def dequeue(self, timeout: float = 1.0) -> Optional[UrlTask]:
        """Next item, or None once nothing arrives within timeout seconds."""
        raise NotImplementedError

    async def size(self) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class InMemoryTaskQueue(TaskQueue):
    def __init__(self):
        self._q: asyncio.Queue = asyncio.Queue()

    async def enqueue(self, item: UrlTask) -> None:
        await self._q.put(item)

    async def dequeue(self, timeout: float = 1.0) -> Optional[UrlTask]:
        try:
            if not timeout or timeout <= 0:
                return self._q.get_nowait()
            return await asyncio.wait_for(self._q.get(), timeout)
        except (asyncio.QueueEmpty, asyncio.TimeoutError):
            return None

    async def size(self) -> int:
        return self._q.qsize()


class RedisTaskQueue(TaskQueue):
    """A Redis list used as a FIFO: RPUSH to enqueue, BLPOP to dequeue."""

    def __init__(self, url: str, name: str = "duende:urls", client=None):
        self.name = name
        self.client = client or aioredis.from_url(url, decode_responses=True)

    async def enqueue(self, item: UrlTask) -> None:
        try:
            await self.client.rpush(self.name, json.dumps(item.to_dict(), ensure_ascii=False))
        except RedisError as e:
            raise QueueError(f"Could not enqueue {item.url}: {e}") from e

    async def dequeue(self, timeout: float = 1.0) -> Optional[UrlTask]:
        while True:
            try:
                if not timeout or timeout <= 0:
                    raw = await self.client.lpop(self.name)
                else:
                    popped = await self.client.blpop([self.name], timeout=timeout)
                    raw = popped[1] if popped else None
            except RedisError as e:
                raise QueueError(f"Could not dequeue from {self.name}: {e}") from e
            if raw is None:
                return None
            try:
                return UrlTask.from_dict(json.loads(raw))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"[QUEUE] Dropping malformed queue item: {e}")

    async def size(self) -> int:
        try:
            return await self.client.llen(self.name)
        except RedisError as e:
            raise QueueError(f"Could not read size of {self.name}: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()


def open_queue(settings: Settings) -> TaskQueue:
    if settings.redis_url:
        logger.info(f"[QUEUE] Using Redis list '{settings.queue_name}'")
        return RedisTaskQueue(settings.redis_url, settings.queue_name)
    return InMemoryTaskQueue()
