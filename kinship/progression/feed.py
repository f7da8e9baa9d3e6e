"""
Change-notification feed.

A signal only says "something about relationship X changed". Subscribers re-run
the read-side evaluation; a lost or duplicated signal never corrupts state
because re-evaluation is idempotent.
"""

import asyncio
import json
import logging
from collections import defaultdict
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from kinship.core.config import settings
from kinship.utils.redis_pool import get_redis

log = logging.getLogger(__name__)


class ChangeFeed(Protocol):
    async def publish(self, relationship_id: str, reason: str = "") -> None: ...

    def subscribe(self, relationship_id: str) -> AsyncIterator[str]: ...


class RedisChangeFeed:

    def __init__(
        self,
        redis_factory: Callable[[], Awaitable[redis.Redis]] = get_redis,
        prefix: str = settings.CHANGE_FEED_PREFIX,
    ):
        self.redis_factory = redis_factory
        self.prefix = prefix

    def channel(self, relationship_id: str) -> str:
        return f"{self.prefix}:{relationship_id}:changed"

    async def publish(self, relationship_id: str, reason: str = "") -> None:
        try:
            r = await self.redis_factory()
            await r.publish(
                self.channel(relationship_id),
                json.dumps({"relationship_id": relationship_id, "reason": reason}),
            )
        except RedisError as e:
            # clients catch up on their next read
            log.warning("[FEED %s] publish failed: %s", relationship_id, e)

    async def subscribe(self, relationship_id: str) -> AsyncIterator[str]:
        r = await self.redis_factory()
        pubsub = r.pubsub()
        channel = self.channel(relationship_id)
        await pubsub.subscribe(channel)
        log.debug("[FEED %s] subscribed to %s", relationship_id, channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                yield relationship_id
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()


class InMemoryChangeFeed:

    def __init__(self):
        self.published: List[tuple[str, str]] = []
        self._queues: Dict[str, List[asyncio.Queue]] = defaultdict(list)

    async def publish(self, relationship_id: str, reason: str = "") -> None:
        self.published.append((relationship_id, reason))
        for q in self._queues.get(relationship_id, []):
            q.put_nowait(relationship_id)

    async def subscribe(self, relationship_id: str) -> AsyncIterator[str]:
        q: asyncio.Queue = asyncio.Queue()
        self._queues[relationship_id].append(q)
        try:
            while True:
                yield await q.get()
        finally:
            self._queues[relationship_id].remove(q)
