"""
Result cache for classification lookups.

Maps a normalized item description to a previously computed classification.
The cache is an optimization only: every backend swallows its own failures so
that classification proceeds as if the cache were empty.
"""
import asyncio
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple, Union

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..models.customs import ClassificationResult
from ..utils.config import Settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "classification:"

# Failures that mean "cache not usable right now"
CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def normalize_description(description: str) -> str:
    return description.strip()


def cache_key(description: str) -> str:
    """Transport-safe key for a description (hex SHA-256 of the trimmed text)."""
    digest = hashlib.sha256(normalize_description(description).encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}{digest}"


def _serialize(result: Union[ClassificationResult, Dict[str, Any]]) -> str:
    if isinstance(result, ClassificationResult):
        return result.model_dump_json()
    return json.dumps(result, default=str)


class ResultCache(ABC):
    """Best-effort key/value store for classification results."""

    available: bool = True

    def __init__(self, default_ttl: int = 604800):
        self.default_ttl = default_ttl

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the cached payload, or None when absent or unreadable."""

    @abstractmethod
    async def put(self, key: str, result: Union[ClassificationResult, Dict[str, Any]],
                  ttl: Optional[int] = None) -> None:
        """Store a result. Never raises."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True only if it existed."""

    async def close(self) -> None:
        return None


class RedisResultCache(ResultCache):
    """Redis-backed cache. Values are JSON, expiry is handled by SETEX."""

    def __init__(self, client: "redis.Redis", default_ttl: int = 604800):
        super().__init__(default_ttl)
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisResultCache":
        client = redis.from_url(
            settings.REDIS_URL,
            socket_timeout=settings.CACHE_SOCKET_TIMEOUT,
            socket_connect_timeout=settings.CACHE_SOCKET_TIMEOUT,
            decode_responses=True,
        )
        return cls(client, default_ttl=settings.CLASSIFICATION_CACHE_TTL)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except CACHE_ERRORS as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.client.get(key)
        except CACHE_ERRORS as e:
            logger.warning("Error reading classification cache key=%s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.warning("Discarding unreadable cache entry key=%s: %s", key, e)
            return None

    async def put(self, key: str, result: Union[ClassificationResult, Dict[str, Any]],
                  ttl: Optional[int] = None) -> None:
        ttl = ttl if ttl is not None else self.default_ttl
        if ttl <= 0:
            # SETEX rejects non-positive expiry; such an entry would be expired already
            return
        try:
            await self.client.setex(key, ttl, _serialize(result))
            logger.debug("Cached classification key=%s ttl=%s", key, ttl)
        except CACHE_ERRORS as e:
            logger.warning("Error writing classification cache key=%s: %s", key, e)

    async def delete(self, key: str) -> bool:
        try:
            return await self.client.delete(key) > 0
        except CACHE_ERRORS as e:
            logger.warning("Error clearing classification cache key=%s: %s", key, e)
            return False

    async def close(self) -> None:
        try:
            await self.client.aclose()
        except CACHE_ERRORS as e:
            logger.warning("Error closing Redis client: %s", e)


class InMemoryResultCache(ResultCache):
    """Process-local cache with per-entry expiry."""

    def __init__(self, default_ttl: int = 604800, clock: Callable[[], float] = time.monotonic):
        super().__init__(default_ttl)
        self._clock = clock
        self._entries: Dict[str, Tuple[float, str]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return json.loads(raw)

    async def put(self, key: str, result: Union[ClassificationResult, Dict[str, Any]],
                  ttl: Optional[int] = None) -> None:
        ttl = ttl if ttl is not None else self.default_ttl
        self._entries[key] = (self._clock() + ttl, _serialize(result))

    async def delete(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        return entry is not None and self._clock() < entry[0]


class UnavailableResultCache(ResultCache):
    """Stand-in used when no cache backend could be reached at startup."""

    available = False

    def __init__(self, reason: str = "cache disabled", default_ttl: int = 604800):
        super().__init__(default_ttl)
        self.reason = reason

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return None

    async def put(self, key: str, result: Union[ClassificationResult, Dict[str, Any]],
                  ttl: Optional[int] = None) -> None:
        return None

    async def delete(self, key: str) -> bool:
        logger.warning("Classification cache unavailable (%s), cannot clear key=%s", self.reason, key)
        return False


async def connect_result_cache(settings: Settings) -> ResultCache:
    """Build the cache backend selected by CACHE_BACKEND. Called once at startup."""
    backend = settings.CACHE_BACKEND.lower()

    if backend == "memory":
        logger.info("Using in-memory classification cache")
        return InMemoryResultCache(default_ttl=settings.CLASSIFICATION_CACHE_TTL)

    if backend == "redis":
        cache = RedisResultCache.from_settings(settings)
        if await cache.ping():
            logger.info("Redis classification cache ready")
            return cache
        await cache.close()
        logger.warning("Redis unreachable, classification will run without a cache")
        return UnavailableResultCache("redis unreachable", settings.CLASSIFICATION_CACHE_TTL)

    logger.info("Classification cache disabled (CACHE_BACKEND=%s)", settings.CACHE_BACKEND)
    return UnavailableResultCache("disabled", settings.CLASSIFICATION_CACHE_TTL)
