"""
Crawl jobs and the visited-URL sets that guard at-most-once scheduling.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Set

import redis.asyncio as redis


@dataclass(frozen=True)
class Job:
    """One page to crawl. Depth 0 is a seed."""
    url: str
    depth: int = 0

    def child(self, url: str) -> 'Job':
        return Job(url=url, depth=self.depth + 1)


class VisitedSet:
    """
    Set of URLs scheduled during one crawl run. `add` is an atomic
    check-and-insert: it returns True only for the caller that inserted.
    """

    async def reset(self):
        """Start a new run with an empty set."""
        raise NotImplementedError

    async def add(self, url: str) -> bool:
        raise NotImplementedError

    async def size(self) -> int:
        raise NotImplementedError


class MemoryVisitedSet(VisitedSet):
    """In-process set guarded by an asyncio lock."""

    def __init__(self):
        self._urls: Set[str] = set()
        self._lock = asyncio.Lock()

    async def reset(self):
        async with self._lock:
            self._urls.clear()

    async def add(self, url: str) -> bool:
        async with self._lock:
            if url in self._urls:
                return False
            self._urls.add(url)
            return True

    async def size(self) -> int:
        return len(self._urls)

    def __contains__(self, url: str) -> bool:
        return url in self._urls


class RedisVisitedSet(VisitedSet):
    """Redis-backed set; SADD is atomic on the server, so no local lock is needed."""

    def __init__(self, redis_client: redis.Redis, key: str = "image_crawler:visited_urls"):
        self.redis_client = redis_client
        self.key = key
        self.logger = logging.getLogger(__name__)

    async def reset(self):
        await self.redis_client.delete(self.key)
        self.logger.info(f"Cleared visited set {self.key}")

    async def add(self, url: str) -> bool:
        added = await self.redis_client.sadd(self.key, url)
        return added == 1

    async def size(self) -> int:
        return await self.redis_client.scard(self.key)
