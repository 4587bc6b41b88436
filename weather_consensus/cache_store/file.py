"""JSON-file cache store: one file per blob under a directory."""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

from .base import CacheBlob, CacheStore
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="cache_store/file")


class FileCacheStore(CacheStore):
    """Writes go to a temp file and are renamed into place, so a crash never
    leaves a half-written blob."""

    def __init__(self, directory: str | os.PathLike) -> None:
        self.directory = Path(directory)
        self._lock = threading.Lock()
        logger.debug("Initializing FileCacheStore", extra={"directory": str(self.directory)})

    def _path(self, name: str) -> Path:
        return self.directory / f"{name}.json"

    def load(self, name: str) -> Optional[CacheBlob]:
        path = self._path(name)
        with self._lock:
            try:
                raw = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None
            except OSError as exc:
                logger.error("Failed to read cache file", extra={"path": str(path), "error": str(exc)})
                return None
        try:
            blob = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Discarding corrupt cache file", extra={"path": str(path), "error": str(exc)})
            return None
        return blob if isinstance(blob, dict) else None

    def save(self, name: str, blob: CacheBlob) -> None:
        path = self._path(name)
        with self._lock:
            tmp_name = None
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{name}.", suffix=".tmp")
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(blob, fh, separators=(",", ":"))
                os.replace(tmp_name, path)
            except (OSError, TypeError, ValueError) as exc:
                if tmp_name is not None:
                    Path(tmp_name).unlink(missing_ok=True)
                logger.error("Failed to write cache file", extra={"path": str(path), "error": str(exc)})

    def delete(self, name: str) -> None:
        with self._lock:
            try:
                self._path(name).unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.error("Failed to delete cache file", extra={"blob": name, "error": str(exc)})

    def clear(self) -> None:
        with self._lock:
            if not self.directory.exists():
                return
            for path in self.directory.glob("*.json"):
                try:
                    path.unlink()
                except OSError as exc:
                    logger.error("Failed to delete cache file", extra={"path": str(path), "error": str(exc)})
