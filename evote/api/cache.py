"""Redis read-through cache for published results."""

import json
import logging
from typing import Dict, List, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class TallyCache:
    """
    Caches the published tally projection.

    The cache never holds state of its own: entries are copies of what the
    store returned, expire after a short TTL and are orphaned by a
    generation bump after every write that changes counts or candidates.
    """

    KEY_PREFIX = "evote:results:"
    GENERATION_KEY = "evote:results:gen"

    def __init__(self, client: redis.Redis, ttl: int = 5):
        self.client = client
        self.ttl = ttl

    @classmethod
    def from_settings(cls, settings) -> 'TallyCache':
        client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True
        )
        return cls(client, ttl=settings.TALLY_CACHE_TTL)

    def _key(self, source: str, generation: int) -> str:
        return f"{self.KEY_PREFIX}{source}:{generation}"

    async def generation(self) -> Optional[int]:
        """
        Return the current cache generation.

        Readers take the generation before computing a tally and store the
        result under it. An invalidation bumps the generation, so a tally
        computed before a write can only land under a key nobody reads.

        Returns:
            The generation, or None when Redis is unreachable
        """
        try:
            raw = await self.client.get(self.GENERATION_KEY)
        except redis.RedisError as e:
            logger.warning(f"Redis error reading results cache generation: {e}")
            return None
        return int(raw) if raw else 0

    async def get(self, source: str, generation: int) -> Optional[List[Dict]]:
        """
        Return the cached results for a tally source.

        Args:
            source: Tally source name ("counters" or "ledger")
            generation: Generation returned by generation()

        Returns:
            The cached rows, or None on a miss or when Redis is unreachable
        """
        try:
            raw = await self.client.get(self._key(source, generation))
        except redis.RedisError as e:
            logger.warning(f"Redis error reading results cache: {e}")
            return None
        return json.loads(raw) if raw else None

    async def set(self, source: str, generation: int, rows: List[Dict]) -> None:
        try:
            await self.client.set(self._key(source, generation), json.dumps(rows), ex=self.ttl)
        except redis.RedisError as e:
            logger.warning(f"Redis error writing results cache: {e}")

    async def invalidate(self) -> None:
        """Move readers to a fresh generation; older entries expire unread."""
        try:
            generation = await self.client.incr(self.GENERATION_KEY)
            logger.debug(f"Results cache invalidated, generation {generation}")
        except redis.RedisError as e:
            # Entries still expire after ttl seconds
            logger.warning(f"Redis error invalidating results cache: {e}")

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self):
        """Close Redis connection pool."""
        try:
            await self.client.aclose()
            logger.info("Redis connection closed")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")
