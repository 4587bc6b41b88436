"""Versioned forecast-snapshot and model-metadata caches.

Both caches keep one JSON document in a :class:`CacheStore` and follow the
same cycle: read the whole document, mutate it in memory, write it back.
A lock per cache serializes that cycle inside the process.
"""
from __future__ import annotations

import hashlib
import json
import threading
import time
from dataclasses import asdict
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .cache_store import CacheBlob, CacheStore
from .models import WEATHER_MODELS, ModelForecast, ModelMetadata, get_model, normalize_model
from .values import finite_or_none
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="forecast_cache")

FORECAST_CACHE_BLOB = "weather-consensus-forecast-cache-v1"
METADATA_CACHE_BLOB = "weather-consensus-model-metadata-v1"
CACHE_VERSION = 1
DEFAULT_MAX_CACHED_LOCATIONS = 6

_SNAPSHOT_FIELDS = (
    "fetched_at",
    "snapshot_time",
    "last_forecast_fetch_time",
    "last_seen_run_availability_time",
    "snapshot_id",
    "snapshot_hash",
    "etag",
    "run_initialisation_time",
    "run_availability_time",
    "update_interval_seconds",
    "metadata_fetched_at",
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def location_key(latitude: float, longitude: float, timezone: str) -> str:
    """Cache key for a location: coordinates at 4 decimals plus the zone."""
    return f"{float(latitude):.4f}|{float(longitude):.4f}|{timezone}"


def compute_snapshot_hash(hourly: Iterable[Any], daily: Iterable[Any]) -> str:
    """Content hash of a forecast's series, stable across processes."""
    payload = {
        "hourly": [asdict(h) if not isinstance(h, Mapping) else dict(h) for h in hourly],
        "daily": [asdict(d) if not isinstance(d, Mapping) else dict(d) for d in daily],
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:16]


def build_snapshot_id(model_id: str, loc_key: str, snapshot_time: int, snapshot_hash: Optional[str]) -> str:
    base = f"{model_id}:{loc_key}:{snapshot_time}"
    return f"{base}:{snapshot_hash}" if snapshot_hash else base


def _empty_forecast_store() -> CacheBlob:
    return {"version": CACHE_VERSION, "order": [], "locations": {}}


def _empty_metadata_store() -> CacheBlob:
    return {"version": CACHE_VERSION, "models": {}}


def _valid_forecast_store(blob: Optional[CacheBlob]) -> CacheBlob:
    if (
        not isinstance(blob, dict)
        or blob.get("version") != CACHE_VERSION
        or not isinstance(blob.get("order"), list)
        or not isinstance(blob.get("locations"), dict)
    ):
        if blob is not None:
            logger.warning("Discarding forecast cache with unexpected shape or version")
        return _empty_forecast_store()
    return blob


def _valid_metadata_store(blob: Optional[CacheBlob]) -> CacheBlob:
    if not isinstance(blob, dict) or blob.get("version") != CACHE_VERSION or not isinstance(blob.get("models"), dict):
        if blob is not None:
            logger.warning("Discarding metadata cache with unexpected shape or version")
        return _empty_metadata_store()
    return blob


def snapshot_entry(loc_key: str, forecast: ModelForecast) -> Dict[str, Any]:
    """Serializable cache entry for a successful forecast."""
    snapshot_time = forecast.snapshot_time or forecast.fetched_at or _now_ms()
    snapshot_hash = forecast.snapshot_hash or compute_snapshot_hash(forecast.hourly, forecast.daily)
    entry = {name: getattr(forecast, name) for name in _SNAPSHOT_FIELDS}
    entry.update(
        hourly=[asdict(h) for h in forecast.hourly],
        daily=[asdict(d) for d in forecast.daily],
        fetched_at=forecast.fetched_at or snapshot_time,
        snapshot_time=snapshot_time,
        snapshot_hash=snapshot_hash,
        snapshot_id=forecast.snapshot_id
        or build_snapshot_id(forecast.model.id, loc_key, snapshot_time, snapshot_hash),
        last_forecast_fetch_time=forecast.last_forecast_fetch_time or forecast.fetched_at,
        last_seen_run_availability_time=(
            forecast.last_seen_run_availability_time
            if forecast.last_seen_run_availability_time is not None
            else forecast.run_availability_time
        ),
    )
    return entry


def hydrate_forecast(model_id: str, entry: Mapping[str, Any]) -> Optional[ModelForecast]:
    """Rebuild a ModelForecast from a cache entry; status is re-derived."""
    model = get_model(model_id)
    if model is None or not isinstance(entry, Mapping):
        return None
    try:
        return normalize_model({**entry, "model": model, "error": None})
    except (TypeError, ValueError) as exc:
        logger.warning("Dropping unreadable cache entry", extra={"model_id": model_id, "error": str(exc)})
        return None


class ForecastCache:
    """LRU-bounded per-location snapshots of successful model forecasts."""

    def __init__(self, store: CacheStore, max_cached_locations: int = DEFAULT_MAX_CACHED_LOCATIONS) -> None:
        self.store = store
        self.max_cached_locations = max_cached_locations
        self._lock = threading.Lock()

    def _read(self) -> CacheBlob:
        return _valid_forecast_store(self.store.load(FORECAST_CACHE_BLOB))

    def get(self, loc_key: str, model_id: str) -> Optional[ModelForecast]:
        with self._lock:
            blob = self._read()
        entry = (blob["locations"].get(loc_key) or {}).get("models", {}).get(model_id)
        return hydrate_forecast(model_id, entry) if entry else None

    def get_location(self, loc_key: str) -> Dict[str, ModelForecast]:
        with self._lock:
            blob = self._read()
        models = (blob["locations"].get(loc_key) or {}).get("models", {})
        out: Dict[str, ModelForecast] = {}
        for model in WEATHER_MODELS:
            entry = models.get(model.id)
            forecast = hydrate_forecast(model.id, entry) if entry else None
            if forecast is not None:
                out[model.id] = forecast
        return out

    def get_cached_forecasts(self, latitude: float, longitude: float, timezone: str) -> List[ModelForecast]:
        return list(self.get_location(location_key(latitude, longitude, timezone)).values())

    def record(
        self,
        loc_key: str,
        forecasts: Iterable[ModelForecast],
        *,
        max_cached_locations: Optional[int] = None,
        now_ms: Optional[int] = None,
    ) -> int:
        """Merge successful forecasts into the location's snapshot set.

        Failed or empty forecasts are ignored. The location moves to the front
        of the LRU order and the oldest locations beyond the bound are evicted.
        Returns the number of models recorded.
        """
        entries = {f.model.id: snapshot_entry(loc_key, f) for f in forecasts if f.is_ok}
        if not entries:
            return 0
        limit = self.max_cached_locations if max_cached_locations is None else max_cached_locations
        limit = max(1, int(limit))
        with self._lock:
            blob = self._read()
            location = blob["locations"].setdefault(loc_key, {"updated_at": 0, "models": {}})
            location.setdefault("models", {}).update(entries)
            location["updated_at"] = now_ms if now_ms is not None else _now_ms()

            order = [key for key in blob["order"] if key != loc_key]
            order.insert(0, loc_key)
            while len(order) > limit:
                evicted = order.pop()
                blob["locations"].pop(evicted, None)
                logger.info("Evicted cached location", extra={"location_key": evicted})
            blob["order"] = order
            self.store.save(FORECAST_CACHE_BLOB, blob)
        return len(entries)

    def order(self) -> List[str]:
        with self._lock:
            return list(self._read()["order"])

    def clear(self) -> None:
        with self._lock:
            self.store.delete(FORECAST_CACHE_BLOB)


class MetadataCache:
    """Persisted last-known run metadata and check timestamps per model."""

    def __init__(self, store: CacheStore) -> None:
        self.store = store
        self._lock = threading.Lock()

    def _read(self) -> CacheBlob:
        return _valid_metadata_store(self.store.load(METADATA_CACHE_BLOB))

    def entry(self, model_id: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._read()["models"].get(model_id) or {})

    def _update(self, model_id: str, **fields: Any) -> None:
        with self._lock:
            blob = self._read()
            entry = blob["models"].setdefault(model_id, {})
            entry.update(fields)
            self.store.save(METADATA_CACHE_BLOB, blob)

    def mark_checked(self, model_id: str, now_ms: int) -> None:
        self._update(model_id, last_metadata_check_at=now_ms)

    def record(self, metadata: ModelMetadata, now_ms: int) -> None:
        self._update(
            metadata.model_id,
            run_initialisation_time=metadata.run_initialisation_time,
            run_availability_time=metadata.run_availability_time,
            update_interval_seconds=metadata.update_interval_seconds,
            metadata_fetched_at=metadata.metadata_fetched_at,
            last_metadata_check_at=now_ms,
        )

    def metadata(self, model_id: str) -> Optional[ModelMetadata]:
        """Last stored metadata, or None if it was never fetched."""
        entry = self.entry(model_id)
        if finite_or_none(entry.get("metadata_fetched_at")) is None:
            return None
        return ModelMetadata(
            model_id=model_id,
            run_initialisation_time=entry.get("run_initialisation_time"),
            run_availability_time=entry.get("run_availability_time"),
            update_interval_seconds=entry.get("update_interval_seconds"),
            metadata_fetched_at=entry.get("metadata_fetched_at"),
        )

    def clear(self) -> None:
        with self._lock:
            self.store.delete(METADATA_CACHE_BLOB)
