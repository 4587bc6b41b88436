"""Refresh-cycle orchestration: metadata, gating, fetch, merge, cache.

One call to :meth:`ForecastService.fetch_forecasts_with_metadata` runs a full
cycle for a location:

1. read cached snapshots and (if due) each model's run metadata,
2. ask :func:`gating.decide_forecast_fetch` what to do per model,
3. fetch the models that need it concurrently, sharing in-flight requests,
4. merge fresh results with cached ones and persist the successes.

Model failures are data (``ModelForecast.error``), never exceptions.
"""
from __future__ import annotations

import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import redis

from . import gating
from .cache_store import CacheStore, FileCacheStore, InMemoryCacheStore, RedisCacheStore
from .config import Settings, settings as default_settings
from .data_sources.open_meteo_client import fetch_model_forecast, fetch_model_metadata
from .domain import RefreshMode
from .forecast_cache import ForecastCache, MetadataCache, location_key
from .models import (
    WEATHER_MODELS,
    DataCompleteness,
    FetchResult,
    ModelCompleteness,
    ModelForecast,
    ModelMetadata,
    PendingModelUpdate,
    RefreshSummary,
    WeatherModel,
    error_forecast,
    normalize_model,
)
from .values import finite_or_none
from utils.logging_utils import get_tagged_logger, mask_url

logger = get_tagged_logger(__name__, tag="forecast_service")

OFFLINE_ERROR = "Offline"
NO_CACHED_DATA_ERROR = "No cached data available"

ForecastFetcher = Callable[..., ModelForecast]
MetadataFetcher = Callable[..., ModelMetadata]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _resolved(value) -> Future:
    fut: Future = Future()
    fut.set_result(value)
    return fut


def _option(value, fallback):
    return fallback if value is None else value


class MetadataLookup(NamedTuple):
    metadata: Optional[ModelMetadata]
    checked_at: Optional[int] = None  # set only when this lookup hit the network


class ForecastService:
    """Owns the caches, in-flight registry and counters for forecast refreshes.

    Instances are independent; tests build their own with in-memory stores
    and fake fetchers.
    """

    def __init__(
        self,
        forecast_cache: ForecastCache,
        metadata_cache: MetadataCache,
        *,
        config: Optional[Settings] = None,
        models: Sequence[WeatherModel] = WEATHER_MODELS,
        fetch_forecast: ForecastFetcher = fetch_model_forecast,
        fetch_metadata: MetadataFetcher = fetch_model_metadata,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Callable[[], int] = _now_ms,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.config = config or default_settings
        self.forecast_cache = forecast_cache
        self.metadata_cache = metadata_cache
        self.models = list(models)
        self.fetch_forecast = fetch_forecast
        self.fetch_metadata = fetch_metadata
        self.clock = clock
        self.rand = rand
        self.stats = gating.GatingStats()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, self.config.max_fetch_workers),
            thread_name_prefix="consensus-fetch",
        )
        self._inflight: Dict[str, Future] = {}
        self._inflight_lock = threading.Lock()
        self._metadata_memo: Dict[str, Tuple[Optional[ModelMetadata], int]] = {}
        self._memo_lock = threading.Lock()

    # ------------------------------------------------------------------
    # In-flight de-duplication
    # ------------------------------------------------------------------

    def _dedupe(self, key: str, fn: Callable[[], object]) -> Tuple[Future, bool]:
        """Return the in-flight future for ``key``, starting ``fn`` if none.

        The boolean is True when this call issued the request.
        """
        with self._inflight_lock:
            existing = self._inflight.get(key)
            if existing is not None:
                return existing, False
            future = self._executor.submit(fn)
            self._inflight[key] = future

        def _release(done: Future) -> None:
            with self._inflight_lock:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

        future.add_done_callback(_release)
        return future, True

    def inflight_keys(self) -> List[str]:
        with self._inflight_lock:
            return list(self._inflight)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def _memo_get(self, model_id: str, now_ms: int) -> Tuple[bool, Optional[ModelMetadata]]:
        ttl_ms = self.config.metadata_memory_ttl_minutes * 60_000
        with self._memo_lock:
            hit = self._metadata_memo.get(model_id)
        if hit is not None and now_ms - hit[1] < ttl_ms:
            return True, hit[0]
        return False, None

    def _memo_set(self, model_id: str, metadata: Optional[ModelMetadata], at_ms: int) -> None:
        with self._memo_lock:
            self._metadata_memo[model_id] = (metadata, at_ms)

    def _metadata_future(
        self,
        model: WeatherModel,
        *,
        now_ms: int,
        force: bool = False,
        min_interval_seconds: Optional[float] = None,
    ) -> Future:
        """Future resolving to a :class:`MetadataLookup`. Nothing is persisted here."""
        if not model.metadata_id:
            return _resolved(MetadataLookup(None))

        found, memo = self._memo_get(model.id, now_ms)
        if found:
            return _resolved(MetadataLookup(memo))

        ttl_ms = self.config.metadata_memory_ttl_minutes * 60_000
        stored = self.metadata_cache.metadata(model.id)
        if stored is not None and now_ms - stored.metadata_fetched_at < ttl_ms:
            self._memo_set(model.id, stored, stored.metadata_fetched_at)
            return _resolved(MetadataLookup(stored))

        entry = self.metadata_cache.entry(model.id)
        due = gating.should_check_metadata(
            entry.get("last_metadata_check_at"),
            entry.get("update_interval_seconds"),
            now_ms,
            min_interval_seconds=_option(min_interval_seconds, self.config.metadata_min_interval_seconds),
            force=force,
        )
        if not due and stored is not None:
            return _resolved(MetadataLookup(stored))

        def _check() -> MetadataLookup:
            self.stats.increment("metadata_checks")
            try:
                metadata = self.fetch_metadata(
                    model, now_ms=now_ms, timeout=self.config.metadata_timeout_seconds
                )
            except Exception as exc:  # any failure means "metadata unavailable"
                logger.warning("Metadata fetch failed", extra={"model_id": model.id, "error": str(exc)})
                return MetadataLookup(None, checked_at=now_ms)
            return MetadataLookup(metadata, checked_at=now_ms)

        future, _ = self._dedupe(f"metadata|{model.id}", _check)
        return future

    def _commit_metadata(self, model_id: str, lookup: MetadataLookup) -> None:
        """Persist a network check: check time, metadata and the memo."""
        if lookup.checked_at is None:
            return
        self.metadata_cache.mark_checked(model_id, lookup.checked_at)
        if lookup.metadata is not None:
            self.metadata_cache.record(lookup.metadata, lookup.checked_at)
        self._memo_set(model_id, lookup.metadata, lookup.checked_at)

    def get_model_metadata(
        self,
        model: WeatherModel,
        *,
        force: bool = False,
        min_interval_seconds: Optional[float] = None,
        now_ms: Optional[int] = None,
    ) -> Optional[ModelMetadata]:
        """Run metadata for one model, or None when it cannot be determined."""
        now = now_ms if now_ms is not None else self.clock()
        lookup = self._metadata_future(
            model, now_ms=now, force=force, min_interval_seconds=min_interval_seconds
        ).result()
        self._commit_metadata(model.id, lookup)
        return lookup.metadata

    # ------------------------------------------------------------------
    # Forecasts
    # ------------------------------------------------------------------

    def get_cached_forecasts(self, latitude: float, longitude: float, timezone: str) -> List[ModelForecast]:
        return self.forecast_cache.get_cached_forecasts(latitude, longitude, timezone)

    def _fetch_future(
        self,
        loc_key: str,
        model: WeatherModel,
        latitude: float,
        longitude: float,
        timezone: str,
        metadata: Optional[ModelMetadata],
    ) -> Future:
        def _fetch() -> ModelForecast:
            return self.fetch_forecast(
                model,
                latitude,
                longitude,
                timezone,
                metadata=metadata,
                forecast_days=self.config.forecast_days,
                timeout=self.config.forecast_timeout_seconds,
            )

        future, created = self._dedupe(f"{loc_key}|{model.id}", _fetch)
        if created:
            self.stats.increment("forecast_calls")
        return future

    def _collect(self, model: WeatherModel, future: Future, metadata: Optional[ModelMetadata]) -> ModelForecast:
        try:
            return normalize_model(future.result())
        except Exception as exc:  # isolate one model's failure from the cycle
            logger.exception("Forecast fetch raised", extra={"model_id": model.id})
            forecast = error_forecast(model, str(exc) or exc.__class__.__name__, fetched_at=self.clock())
            if metadata is not None:
                forecast.run_availability_time = metadata.run_availability_time
            return forecast

    def _offline_result(
        self, cached: Dict[str, ModelForecast], mode: RefreshMode, now_ms: int
    ) -> FetchResult:
        forecasts = [cached.get(m.id) or error_forecast(m, OFFLINE_ERROR, fetched_at=now_ms) for m in self.models]
        return FetchResult(
            forecasts=forecasts,
            pending=[],
            used_cache=bool(cached),
            refresh_summary=RefreshSummary(mode=mode.value),
            completeness=self.build_completeness(
                forecasts, cached=cached, metadata={}, pending_ids=set(), updated_ids=set(), now_ms=now_ms
            ),
        )

    def fetch_forecasts_with_metadata(
        self,
        latitude: float,
        longitude: float,
        timezone: str = "America/Toronto",
        *,
        force: bool = False,
        user_initiated: bool = False,
        offline: bool = False,
        consistency_delay_minutes: Optional[float] = None,
        max_cached_locations: Optional[int] = None,
        min_metadata_interval_seconds: Optional[float] = None,
        metadata_fallback_ttl_hours: Optional[float] = None,
        now_ms: Optional[int] = None,
        commit_guard: Optional[Callable[[], bool]] = None,
    ) -> FetchResult:
        """Run one refresh cycle for a location.

        ``commit_guard`` is checked after all fetches finish; when it returns
        False the cycle has been superseded and nothing is written to the
        cache. The result is still returned, flagged ``superseded``.
        """
        now = now_ms if now_ms is not None else self.clock()
        loc_key = location_key(latitude, longitude, timezone)
        mode = RefreshMode.FORCE if force else RefreshMode.MANUAL if user_initiated else RefreshMode.AUTO
        cached = self.forecast_cache.get_location(loc_key)

        if offline:
            logger.info("Offline refresh; serving cache only", extra={"location_key": loc_key})
            return self._offline_result(cached, mode, now)

        delay_minutes = _option(consistency_delay_minutes, self.config.consistency_delay_minutes)
        fallback_ttl = _option(metadata_fallback_ttl_hours, self.config.metadata_fallback_ttl_hours)

        metadata_futures = {
            m.id: self._metadata_future(
                m, now_ms=now, force=force or user_initiated, min_interval_seconds=min_metadata_interval_seconds
            )
            for m in self.models
        }
        metadata: Dict[str, Optional[ModelMetadata]] = {}
        lookups: Dict[str, MetadataLookup] = {}
        for model_id, future in metadata_futures.items():
            try:
                lookups[model_id] = future.result()
            except Exception as exc:  # metadata can only ever degrade gating
                logger.warning("Metadata lookup raised", extra={"model_id": model_id, "error": str(exc)})
                lookups[model_id] = MetadataLookup(None)
            metadata[model_id] = lookups[model_id].metadata

        fetch_futures: Dict[str, Future] = {}
        pending: List[PendingModelUpdate] = []
        decisions: Dict[str, str] = {}
        for model in self.models:
            decision = gating.decide_forecast_fetch(
                metadata[model.id],
                cached.get(model.id),
                now_ms=now,
                delay_minutes=delay_minutes,
                metadata_fallback_ttl_hours=fallback_ttl,
                force=force,
                user_initiated=user_initiated,
                jitter_seconds=self.config.pending_jitter_seconds,
                rand=self.rand,
            )
            decisions[model.id] = decision.action.value
            if decision.action is gating.FetchAction.FETCH:
                fetch_futures[model.id] = self._fetch_future(
                    loc_key, model, latitude, longitude, timezone, metadata[model.id]
                )
            elif decision.action is gating.FetchAction.PENDING:
                pending.append(
                    PendingModelUpdate(
                        model_id=model.id,
                        run_availability_time=decision.pending.available_at,
                        retry_at=decision.pending.retry_at,
                        pending_until=decision.pending.pending_until,
                    )
                )
            else:
                self.stats.increment("forecast_calls_skipped")
        self.stats.set("pending_delay_models", len(pending))

        fetched = {
            model.id: self._collect(model, fetch_futures[model.id], metadata[model.id])
            for model in self.models
            if model.id in fetch_futures
        }

        superseded = commit_guard is not None and not commit_guard()
        pending_by_id = {p.model_id: p for p in pending}
        forecasts: List[ModelForecast] = []
        to_record: List[ModelForecast] = []
        updated_ids = set()
        used_cache = False

        for model in self.models:
            result = fetched.get(model.id)
            cached_forecast = cached.get(model.id)
            meta = metadata[model.id]
            if result is not None:
                if result.is_ok:
                    if meta is not None and meta.has_run_availability:
                        result.last_seen_run_availability_time = meta.run_availability_time
                    forecasts.append(result)
                    to_record.append(result)
                    updated_ids.add(model.id)
                elif cached_forecast is not None:
                    cached_forecast.update_error = result.error or result.reason
                    forecasts.append(cached_forecast)
                    used_cache = True
                else:
                    forecasts.append(result)
            elif cached_forecast is not None:
                if model.id in pending_by_id:
                    cached_forecast.pending_availability_time = pending_by_id[model.id].run_availability_time
                forecasts.append(cached_forecast)
                used_cache = True
            else:
                forecasts.append(error_forecast(model, NO_CACHED_DATA_ERROR, fetched_at=now))

        if superseded:
            logger.info("Refresh superseded; not committing results", extra={"location_key": loc_key})
        else:
            for model_id, lookup in lookups.items():
                self._commit_metadata(model_id, lookup)
            if to_record:
                self.forecast_cache.record(
                    loc_key,
                    to_record,
                    max_cached_locations=_option(max_cached_locations, self.config.max_cached_locations),
                    now_ms=now,
                )

        summary = self._refresh_summary(mode, user_initiated, force, fetch_futures, pending, metadata, cached)
        completeness = self.build_completeness(
            forecasts,
            cached=cached,
            metadata=metadata,
            pending_ids=set(pending_by_id),
            updated_ids=updated_ids,
            now_ms=now,
        )

        log = logger.info if self.config.debug_gating else logger.debug
        log(
            "Refresh cycle complete",
            extra={
                "location_key": loc_key,
                "mode": mode.value,
                "decisions": decisions,
                "stats": self.stats.snapshot(),
            },
        )
        return FetchResult(
            forecasts=forecasts,
            pending=pending,
            used_cache=used_cache,
            refresh_summary=summary,
            completeness=completeness,
            superseded=superseded,
        )

    @staticmethod
    def _refresh_summary(
        mode: RefreshMode,
        user_initiated: bool,
        force: bool,
        fetch_futures: Dict[str, Future],
        pending: List[PendingModelUpdate],
        metadata: Dict[str, Optional[ModelMetadata]],
        cached: Dict[str, ModelForecast],
    ) -> RefreshSummary:
        run_times = [
            m.run_availability_time for m in metadata.values() if m is not None and m.has_run_availability
        ]
        has_new_run = any(
            gating.is_new_run(m, cached.get(model_id)) for model_id, m in metadata.items()
        )
        no_new_runs = (
            user_initiated
            and not force
            and not fetch_futures
            and not pending
            and bool(run_times)
            and not has_new_run
        )
        return RefreshSummary(
            mode=mode.value,
            no_new_runs=no_new_runs,
            latest_run_availability_time=max(run_times) if run_times else None,
        )

    def build_completeness(
        self,
        forecasts: Iterable[ModelForecast],
        *,
        cached: Dict[str, ModelForecast],
        metadata: Dict[str, Optional[ModelMetadata]],
        pending_ids: set,
        updated_ids: set,
        now_ms: int,
    ) -> DataCompleteness:
        """Per-model data coverage plus fresh/stale/unknown/failed counts.

        A model is stale when its run is more than the freshness spread
        threshold behind the freshest run in the set.
        """
        entries: List[ModelCompleteness] = []
        run_times: Dict[str, float] = {}
        for forecast in forecasts:
            model_id = forecast.model.id
            meta = metadata.get(model_id)
            has_snapshot = model_id in cached or model_id in updated_ids
            snapshot_time = finite_or_none(forecast.snapshot_time or forecast.fetched_at)
            run_time = finite_or_none(forecast.run_availability_time)
            if run_time is not None and forecast.is_ok:
                run_times[model_id] = run_time
            entries.append(
                ModelCompleteness(
                    model_id=model_id,
                    has_snapshot=has_snapshot,
                    snapshot_age_seconds=(
                        max(0.0, (now_ms - snapshot_time) / 1000) if has_snapshot and snapshot_time else None
                    ),
                    has_metadata=bool(meta is not None and meta.has_run_availability),
                    run_age_known=run_time is not None,
                    updated_this_refresh=model_id in updated_ids,
                    is_pending=model_id in pending_ids,
                    is_failed=not forecast.is_ok,
                )
            )

        threshold_seconds = self.config.freshness_spread_threshold_hours * 3600
        freshest = max(run_times.values()) if run_times else None
        completeness = DataCompleteness(models=entries)
        for entry in entries:
            if entry.is_failed:
                completeness.failed_count += 1
            elif entry.model_id not in run_times:
                completeness.unknown_count += 1
            elif freshest - run_times[entry.model_id] > threshold_seconds:
                completeness.stale_count += 1
            else:
                completeness.fresh_count += 1
        return completeness

    # ------------------------------------------------------------------
    # Diagnostics and lifecycle
    # ------------------------------------------------------------------

    def get_gating_stats(self) -> dict:
        return self.stats.snapshot()

    def reset_gating_stats(self) -> None:
        self.stats.reset()

    def clear_caches(self) -> None:
        self.forecast_cache.clear()
        self.metadata_cache.clear()
        with self._memo_lock:
            self._metadata_memo.clear()

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)


def build_cache_store(config: Optional[Settings] = None) -> CacheStore:
    """Instantiate the configured cache backend."""
    config = config or default_settings
    backend = config.cache_backend

    if backend == "memory":
        logger.info("Using in-memory forecast cache")
        return InMemoryCacheStore()

    if backend == "file":
        logger.info("Using file forecast cache", extra={"directory": config.cache_dir})
        return FileCacheStore(config.cache_dir)

    if backend == "redis":
        if not config.cache_redis_url:
            raise ValueError("cache_redis_url must be set for the redis cache backend")
        logger.info("Using Redis forecast cache", extra={"redis_url": mask_url(config.cache_redis_url)})
        return RedisCacheStore(redis.Redis.from_url(config.cache_redis_url))

    raise ValueError(f"Unknown cache backend '{backend}'")


def build_forecast_service(config: Optional[Settings] = None, store: Optional[CacheStore] = None) -> ForecastService:
    config = config or default_settings
    store = store or build_cache_store(config)
    return ForecastService(
        ForecastCache(store, max_cached_locations=config.max_cached_locations),
        MetadataCache(store),
        config=config,
    )
