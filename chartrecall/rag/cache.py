"""
ChartRecall Embedding Cache

Redis cache for query embeddings with content-addressable keys and a TTL.
Only embeddings are cached here: vectors of query text carry no patient
scope, so a cached vector can never widen what a filtered search returns.
Cache failures degrade to misses and never break a query.
"""

import hashlib
import json
import logging
import os

logger = logging.getLogger(__name__)

# Default TTL: 7 days in seconds
DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60

CACHE_KEY_PREFIX = "emb:"


class CacheManager:
    """Redis-backed embedding cache.

    Attributes:
        ttl_seconds: Time-to-live for cached embeddings in seconds.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self._redis = None

    async def _get_redis(self):
        """Lazily initialize the Redis connection."""
        if self._redis is None:
            import redis.asyncio as redis

            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    @staticmethod
    def compute_hash(text: str) -> str:
        return hashlib.sha256(text.encode()).hexdigest()

    @staticmethod
    def _make_key(text_hash: str) -> str:
        return f"{CACHE_KEY_PREFIX}{text_hash}"

    async def get_embedding(self, text_hash: str) -> list[float] | None:
        """Cached embedding for a text hash, or None on miss or error."""
        try:
            redis = await self._get_redis()
            cached = await redis.get(self._make_key(text_hash))
            return json.loads(cached) if cached else None
        except Exception as e:
            logger.debug("Embedding cache read failed: %s", e)
            return None

    async def set_embedding(
        self,
        text_hash: str,
        embedding: list[float],
        ttl: int | None = None,
    ) -> bool:
        """Store an embedding. Returns False on error."""
        try:
            redis = await self._get_redis()
            ttl_seconds = ttl if ttl is not None else self.ttl_seconds
            await redis.set(self._make_key(text_hash), json.dumps(embedding), ex=ttl_seconds)
            return True
        except Exception as e:
            logger.debug("Embedding cache write failed: %s", e)
            return False

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.close()
            self._redis = None
