"""In-process cache store, used by default and in tests."""

import copy
import threading
from typing import Dict, Optional

from .base import CacheBlob, CacheStore
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="cache_store/memory")


class InMemoryCacheStore(CacheStore):
    """Thread-safe dict of blobs. Copies on the way in and out so callers
    cannot mutate stored state behind the lock."""

    def __init__(self) -> None:
        logger.debug("Initializing InMemoryCacheStore")
        self._blobs: Dict[str, CacheBlob] = {}
        self._lock = threading.Lock()

    def load(self, name: str) -> Optional[CacheBlob]:
        with self._lock:
            blob = self._blobs.get(name)
            return copy.deepcopy(blob) if blob is not None else None

    def save(self, name: str, blob: CacheBlob) -> None:
        with self._lock:
            self._blobs[name] = copy.deepcopy(blob)

    def delete(self, name: str) -> None:
        with self._lock:
            self._blobs.pop(name, None)

    def clear(self) -> None:
        with self._lock:
            self._blobs.clear()
