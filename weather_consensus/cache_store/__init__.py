"""Cache storage backends."""

from .base import CacheBlob, CacheStore
from .file import FileCacheStore
from .memory import InMemoryCacheStore
from .redis import RedisCacheStore

__all__ = [
    "CacheBlob",
    "CacheStore",
    "FileCacheStore",
    "InMemoryCacheStore",
    "RedisCacheStore",
]
