"""Per-model fetch gating.

Before any network call, each model is classified as:

- ``fetch``: call the forecast endpoint now,
- ``skip``: the cached snapshot already holds the newest run,
- ``pending``: a new run is published but still inside the consistency delay;
  retry at a jittered time after the delay ends.

:func:`decide_forecast_fetch` is pure. Everything it needs (clock, tunables,
random source) comes in through its arguments.
"""
from __future__ import annotations

import math
import random
import threading
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Optional

from .models import ModelForecast, ModelMetadata
from .values import finite_or_none

DEFAULT_UPDATE_INTERVAL_SECONDS = 600
MIN_METADATA_INTERVAL_SECONDS = 60
DEFAULT_CONSISTENCY_DELAY_MINUTES = 10
DEFAULT_METADATA_FALLBACK_TTL_HOURS = 6
DEFAULT_PENDING_JITTER_SECONDS = 60

MS_PER_HOUR = 3_600_000


class FetchAction(str, Enum):
    FETCH = "fetch"
    SKIP = "skip"
    PENDING = "pending"


@dataclass(frozen=True)
class PendingWindow:
    retry_at: int  # unix ms
    available_at: float  # unix s
    pending_until: int  # unix ms


@dataclass(frozen=True)
class FetchDecision:
    action: FetchAction
    pending: Optional[PendingWindow] = None

    @classmethod
    def fetch(cls) -> "FetchDecision":
        return cls(FetchAction.FETCH)

    @classmethod
    def skip(cls) -> "FetchDecision":
        return cls(FetchAction.SKIP)


def compute_pending_retry_at(
    availability_time_seconds: float,
    delay_minutes: float,
    now_ms: float,
    *,
    jitter_seconds: float = DEFAULT_PENDING_JITTER_SECONDS,
    rand: Callable[[], float] = random.random,
) -> tuple[int, int]:
    """Return ``(pending_until, retry_at)`` in unix ms.

    ``retry_at`` lies in ``[max(pending_until, now), that + jitter)`` so that
    many clients seeing the same publish time do not retry in lockstep.
    """
    pending_until = int(availability_time_seconds * 1000 + delay_minutes * 60_000)
    jitter = math.floor(rand() * max(0.0, jitter_seconds) * 1000)
    retry_at = int(max(pending_until, now_ms)) + jitter
    return pending_until, retry_at


def cache_age_hours(cached: ModelForecast, now_ms: float) -> Optional[float]:
    fetched_at = finite_or_none(cached.fetched_at)
    if fetched_at is None:
        fetched_at = finite_or_none(cached.snapshot_time)
    if fetched_at is None:
        return None
    return max(0.0, (now_ms - fetched_at) / MS_PER_HOUR)


def last_seen_run_availability(cached: Optional[ModelForecast]) -> Optional[float]:
    """Run identity a cached snapshot actually captured."""
    if cached is None:
        return None
    last_seen = finite_or_none(cached.last_seen_run_availability_time)
    if last_seen is not None:
        return last_seen
    return finite_or_none(cached.run_availability_time)


def is_new_run(metadata: Optional[ModelMetadata], cached: Optional[ModelForecast]) -> bool:
    """True when metadata reports a run newer than the one the cache captured."""
    availability = finite_or_none(metadata.run_availability_time) if metadata is not None else None
    if availability is None:
        return False
    last_seen = last_seen_run_availability(cached)
    return last_seen is None or availability > last_seen


def decide_forecast_fetch(
    metadata: Optional[ModelMetadata],
    cached_forecast: Optional[ModelForecast],
    *,
    now_ms: float,
    delay_minutes: float = DEFAULT_CONSISTENCY_DELAY_MINUTES,
    metadata_fallback_ttl_hours: float = DEFAULT_METADATA_FALLBACK_TTL_HOURS,
    force: bool = False,
    user_initiated: bool = False,
    jitter_seconds: float = DEFAULT_PENDING_JITTER_SECONDS,
    rand: Callable[[], float] = random.random,
) -> FetchDecision:
    """Decide whether one model should be fetched this cycle.

    ``user_initiated`` does not change the decision here; a manual refresh
    only forces the metadata re-check upstream of this call.
    """
    if force:
        return FetchDecision.fetch()

    has_cached = bool(cached_forecast is not None and cached_forecast.hourly)
    availability = finite_or_none(metadata.run_availability_time) if metadata is not None else None

    if availability is None:
        if not has_cached:
            return FetchDecision.fetch()
        age = cache_age_hours(cached_forecast, now_ms)
        # A snapshot of unknown age cannot be trusted without metadata.
        if age is None or age >= max(1.0, metadata_fallback_ttl_hours):
            return FetchDecision.fetch()
        return FetchDecision.skip()

    if not has_cached:
        return FetchDecision.fetch()

    if not is_new_run(metadata, cached_forecast):
        return FetchDecision.skip()

    pending_until, retry_at = compute_pending_retry_at(
        availability, delay_minutes, now_ms, jitter_seconds=jitter_seconds, rand=rand
    )
    if now_ms < pending_until:
        return FetchDecision(
            FetchAction.PENDING,
            PendingWindow(retry_at=retry_at, available_at=availability, pending_until=pending_until),
        )
    return FetchDecision.fetch()


def should_check_metadata(
    last_check_at_ms: Optional[float],
    update_interval_seconds: Optional[float],
    now_ms: float,
    *,
    min_interval_seconds: float = MIN_METADATA_INTERVAL_SECONDS,
    force: bool = False,
) -> bool:
    """Whether a model's metadata endpoint is due for another look."""
    if force:
        return True
    last_check = finite_or_none(last_check_at_ms)
    if last_check is None:
        return True
    interval = finite_or_none(update_interval_seconds)
    if interval is None or interval <= 0:
        interval = DEFAULT_UPDATE_INTERVAL_SECONDS
    return now_ms - last_check >= max(min_interval_seconds, interval) * 1000


@dataclass
class GatingCounters:
    metadata_checks: int = 0
    forecast_calls: int = 0
    forecast_calls_skipped: int = 0
    pending_delay_models: int = 0


class GatingStats:
    """Thread-safe diagnostic counters. Never consulted for decisions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters = GatingCounters()

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self._counters, name, getattr(self._counters, name) + amount)

    def set(self, name: str, value: int) -> None:
        with self._lock:
            setattr(self._counters, name, value)

    def snapshot(self) -> dict:
        with self._lock:
            return asdict(self._counters)

    def reset(self) -> None:
        with self._lock:
            self._counters = GatingCounters()
