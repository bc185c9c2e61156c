"""Classification result cache backends."""

from .result_cache import (
    ResultCache,
    RedisResultCache,
    InMemoryResultCache,
    UnavailableResultCache,
    cache_key,
    normalize_description,
    connect_result_cache,
)

__all__ = [
    "ResultCache",
    "RedisResultCache",
    "InMemoryResultCache",
    "UnavailableResultCache",
    "cache_key",
    "normalize_description",
    "connect_result_cache",
]
