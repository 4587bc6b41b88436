"""Shared protocol for persisted cache blobs."""

from typing import Any, Dict, Optional, Protocol

CacheBlob = Dict[str, Any]


class CacheStore(Protocol):
    """Whole-document JSON storage keyed by blob name.

    Callers read the full blob, mutate it in memory and write it back; there
    is no partial update.
    """

    def load(self, name: str) -> Optional[CacheBlob]:
        """Return the stored blob, or None if it is missing or unreadable."""

    def save(self, name: str, blob: CacheBlob) -> None:
        """Persist the blob, replacing any previous version."""

    def delete(self, name: str) -> None:
        """Remove a blob without raising if it is absent."""

    def clear(self) -> None:
        """Remove every blob owned by this store."""
