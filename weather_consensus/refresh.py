"""Refresh controllers: one per tracked location.

A controller runs refresh cycles through the shared :class:`ForecastService`,
turns the result into a consensus, and re-runs itself when a pending model's
retry time arrives. The generation number changes only when the location
changes or the controller closes; a cycle whose generation is no longer
current when its fetches finish is dropped, and its results never reach the
cache or the controller's latest state. Overlapping cycles for the same
location all complete, and ``latest`` always holds the most recently started
one.
"""
from __future__ import annotations

import itertools
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .config import Settings, settings as default_settings
from .consensus import calculate_consensus
from .domain import ConsensusResult, RefreshMode
from .forecast_cache import location_key
from .forecast_service import ForecastService
from .models import FetchResult, PendingModelUpdate
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="refresh")

TimerFactory = Callable[[float, Callable[[], None]], threading.Timer]


def _default_timer(delay_seconds: float, fn: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay_seconds, fn)
    timer.daemon = True
    return timer


@dataclass
class RefreshOutcome:
    generation: int
    fetch: FetchResult
    consensus: ConsensusResult


class RefreshController:
    """Refresh state for one location (or a session that changes location)."""

    def __init__(
        self,
        service: ForecastService,
        latitude: float,
        longitude: float,
        timezone: str,
        *,
        config: Optional[Settings] = None,
        timer_factory: TimerFactory = _default_timer,
        on_update: Optional[Callable[[RefreshOutcome], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.service = service
        self.config = config or default_settings
        self.latitude = latitude
        self.longitude = longitude
        self.timezone = timezone
        self.timer_factory = timer_factory
        self.on_update = on_update
        self.clock = clock
        self.latest: Optional[RefreshOutcome] = None
        self._generation = 1
        self._cycles = itertools.count(1)
        self._latest_cycle = 0
        self._lock = threading.Lock()
        self._timers: Dict[str, tuple[int, threading.Timer]] = {}
        self._closed = False

    @property
    def location_key(self) -> str:
        return location_key(self.latitude, self.longitude, self.timezone)

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return not self._closed and generation == self._generation

    def set_location(self, latitude: float, longitude: float, timezone: str) -> None:
        """Switch location. In-flight cycles for the old one are superseded."""
        with self._lock:
            self.latitude, self.longitude, self.timezone = latitude, longitude, timezone
            self._generation += 1
            self.latest = None
            self._latest_cycle = 0
        self._cancel_timers()

    def refresh(self, mode: RefreshMode = RefreshMode.AUTO, *, offline: bool = False) -> Optional[RefreshOutcome]:
        """Run one cycle. Returns None when a location change or close superseded it."""
        with self._lock:
            generation = self._generation
            cycle = next(self._cycles)
            latitude, longitude, timezone = self.latitude, self.longitude, self.timezone

        result = self.service.fetch_forecasts_with_metadata(
            latitude,
            longitude,
            timezone,
            force=mode is RefreshMode.FORCE,
            user_initiated=mode in (RefreshMode.MANUAL, RefreshMode.FORCE),
            offline=offline,
            commit_guard=lambda: self.is_current(generation),
        )
        if result.superseded or not self.is_current(generation):
            logger.info("Dropping superseded refresh", extra={"generation": generation, "mode": mode.value})
            return None

        result.generation = generation
        consensus = calculate_consensus(result.forecasts, config=self.config)
        outcome = RefreshOutcome(generation=generation, fetch=result, consensus=consensus)
        with self._lock:
            newest = cycle > self._latest_cycle
            if newest:
                self.latest = outcome
                self._latest_cycle = cycle
        if not newest:
            # an overlapping cycle that started later already published
            logger.debug("Keeping newer refresh as latest", extra={"cycle": cycle})
            return outcome
        self._schedule_pending(result.pending, generation)

        if self.on_update is not None:
            self.on_update(outcome)
        return outcome

    def _schedule_pending(self, pending: list[PendingModelUpdate], generation: int) -> None:
        pending_ids = {p.model_id for p in pending}
        with self._lock:
            stale = [mid for mid in self._timers if mid not in pending_ids]
            for model_id in stale:
                self._timers.pop(model_id)[1].cancel()

        for update in pending:
            delay = max(0.0, update.retry_at / 1000 - self.clock())
            timer = self.timer_factory(delay, lambda g=generation, mid=update.model_id: self._retry(g, mid))
            with self._lock:
                previous = self._timers.pop(update.model_id, None)
                self._timers[update.model_id] = (generation, timer)
            if previous is not None:
                previous[1].cancel()
            timer.start()
            logger.debug(
                "Scheduled pending retry",
                extra={"model_id": update.model_id, "retry_at": update.retry_at, "delay_seconds": round(delay, 1)},
            )

    def _retry(self, generation: int, model_id: str) -> None:
        with self._lock:
            entry = self._timers.get(model_id)
            if entry is not None and entry[0] == generation:
                del self._timers[model_id]
        if not self.is_current(generation):
            logger.debug("Ignoring retry from an old generation", extra={"model_id": model_id})
            return
        logger.info("Pending retry due; refreshing", extra={"model_id": model_id})
        self.refresh(RefreshMode.AUTO)

    def pending_model_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._timers)

    def _cancel_timers(self) -> None:
        with self._lock:
            timers, self._timers = self._timers, {}
        for _, timer in timers.values():
            timer.cancel()

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self._cancel_timers()


class ControllerRegistry:
    """LRU set of controllers keyed by location, bounded like the cache."""

    def __init__(
        self,
        service: ForecastService,
        *,
        config: Optional[Settings] = None,
        max_controllers: Optional[int] = None,
        timer_factory: TimerFactory = _default_timer,
    ) -> None:
        self.service = service
        self.config = config or default_settings
        self.max_controllers = max(1, max_controllers or self.config.max_cached_locations)
        self.timer_factory = timer_factory
        self._controllers: "OrderedDict[str, RefreshController]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, latitude: float, longitude: float, timezone: str) -> RefreshController:
        key = location_key(latitude, longitude, timezone)
        evicted = []
        with self._lock:
            controller = self._controllers.get(key)
            if controller is None:
                controller = RefreshController(
                    self.service,
                    latitude,
                    longitude,
                    timezone,
                    config=self.config,
                    timer_factory=self.timer_factory,
                )
                self._controllers[key] = controller
            self._controllers.move_to_end(key, last=False)
            while len(self._controllers) > self.max_controllers:
                evicted.append(self._controllers.popitem(last=True)[1])
        for old in evicted:
            old.close()
        return controller

    def close(self) -> None:
        with self._lock:
            controllers, self._controllers = list(self._controllers.values()), OrderedDict()
        for controller in controllers:
            controller.close()
