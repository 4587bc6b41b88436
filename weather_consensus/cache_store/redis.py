"""Redis-backed cache store, for sharing snapshots across server workers."""

import json
from typing import Optional

from redis.exceptions import RedisError

from .base import CacheBlob, CacheStore
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="cache_store/redis")


class RedisCacheStore(CacheStore):
    """Stores each blob as a JSON string under ``prefix + name``."""

    def __init__(self, client, prefix: str = "weather-consensus:", ttl_seconds: int | None = None) -> None:
        logger.debug("Initializing RedisCacheStore")
        self.client = client
        self.prefix = prefix
        self.ttl = ttl_seconds

    def _key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def load(self, name: str) -> Optional[CacheBlob]:
        try:
            raw = self.client.get(self._key(name))
        except (RedisError, OSError) as exc:
            logger.error("Failed to read cache blob from Redis: %s", exc)
            return None
        if not raw:
            return None
        try:
            blob = json.loads(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Discarding corrupt cache blob: %s", exc)
            return None
        return blob if isinstance(blob, dict) else None

    def save(self, name: str, blob: CacheBlob) -> None:
        try:
            payload = json.dumps(blob, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            logger.error("Failed to serialize cache blob: %s", exc)
            return
        try:
            if self.ttl:
                self.client.setex(self._key(name), self.ttl, payload)
            else:
                self.client.set(self._key(name), payload)
        except (RedisError, OSError) as exc:
            logger.error("Failed to write cache blob to Redis: %s", exc)

    def delete(self, name: str) -> None:
        try:
            self.client.delete(self._key(name))
        except (RedisError, OSError) as exc:
            logger.error("Failed to delete cache blob from Redis: %s", exc)

    def clear(self) -> None:
        """Best-effort clear for all blobs under the configured prefix."""
        try:
            for key in self.client.scan_iter(f"{self.prefix}*"):
                self.client.delete(key)
        except (RedisError, OSError) as exc:
            logger.error("Failed to clear cache blobs from Redis: %s", exc)
