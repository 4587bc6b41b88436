"""Observed station conditions from Meteostat (via RapidAPI).

Observations are overlaid on the consensus charts, so only plausible rows at
or before the current local hour are kept.
"""
from __future__ import annotations

import datetime as dt
import time
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

import requests
from retry_requests import retry

from ..config import settings
from ..values import finite_or_none
from .open_meteo_client import resolve_zone
from utils.logging_utils import get_tagged_logger, redact_mapping

logger = get_tagged_logger(__name__, tag="meteostat_client")

session = retry(requests.Session(), retries=2, backoff_factor=0.2)

METEOSTAT_HOST = "meteostat.p.rapidapi.com"
METEOSTAT_HOURLY_URL = f"https://{METEOSTAT_HOST}/point/hourly"
LOOKBACK_DAYS = 2
OBSERVATION_BUCKET_MINUTES = 60

MS_PER_MINUTE = 60_000

# (low, high) inclusive plausibility limits
TEMPERATURE_RANGE = (-80.0, 60.0)
PRECIPITATION_RANGE = (0.0, 250.0)
WIND_DIRECTION_RANGE = (0.0, 360.0)
WIND_SPEED_RANGE = (0.0, 250.0)
WIND_GUST_RANGE = (0.0, 300.0)


class ObservationsNotConfigured(RuntimeError):
    """No Meteostat API key is configured."""


@dataclass
class ObservedHourly:
    time: str  # local "YYYY-MM-DDTHH:MM"
    temperature: float
    precipitation: Optional[float] = None
    wind_speed: Optional[float] = None
    wind_direction: Optional[float] = None
    wind_gusts: Optional[float] = None
    epoch: Optional[int] = None  # unix ms
    complete: bool = True  # False while the hour is still in progress


@dataclass
class ObservedConditions:
    hourly: List[ObservedHourly] = field(default_factory=list)
    fetched_at: int = 0  # unix ms


def bucket_ms(ts_ms: float, bucket_minutes: int = 60) -> int:
    """Start (unix ms) of the epoch-aligned bucket containing ``ts_ms``."""
    width = bucket_minutes * MS_PER_MINUTE
    return int(ts_ms // width) * width


def bucket_end_ms(ts_ms: float, bucket_minutes: int = 60) -> int:
    """Exclusive end of the bucket containing ``ts_ms``."""
    return bucket_ms(ts_ms, bucket_minutes) + bucket_minutes * MS_PER_MINUTE


def is_bucket_completed(bucket_start_ms: float, bucket_minutes: int, now_ms: float) -> bool:
    return bucket_end_ms(bucket_start_ms, bucket_minutes) <= now_ms


def _first_present(row: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if row.get(key) is not None:
            return row[key]
    return None


def _in_range(value: Any, bounds: tuple[float, float]) -> Optional[float]:
    number = finite_or_none(value) if not isinstance(value, str) else None
    if number is None or not bounds[0] <= number <= bounds[1]:
        return None
    return number


def _observation_time(value: Any, zone: dt.tzinfo) -> Optional[tuple[str, int]]:
    """Local key and epoch ms for a row time.

    Meteostat reports local "YYYY-MM-DD HH:MM:SS" when ``tz`` is passed.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = dt.datetime.fromisoformat(value.strip().replace(" ", "T"))
    except ValueError:
        return None
    parsed = parsed.astimezone(zone) if parsed.tzinfo is not None else parsed.replace(tzinfo=zone)
    try:
        epoch = int(parsed.timestamp() * 1000)
    except (OverflowError, OSError):
        return None
    return parsed.strftime("%Y-%m-%dT%H:%M"), epoch


def parse_observation_rows(
    rows: Any, zone: dt.tzinfo, now_ms: float, bucket_minutes: int = OBSERVATION_BUCKET_MINUTES
) -> List[ObservedHourly]:
    """Plausible rows whose bucket has started by ``now_ms``, oldest first."""
    if not isinstance(rows, list):
        return []
    current_bucket = bucket_ms(now_ms, bucket_minutes)
    out: List[ObservedHourly] = []
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        when = _observation_time(row.get("time"), zone)
        temperature = _in_range(_first_present(row, "temp", "temperature"), TEMPERATURE_RANGE)
        if when is None or temperature is None:
            continue
        key, epoch = when
        start = bucket_ms(epoch, bucket_minutes)
        if start > current_bucket:
            continue
        out.append(
            ObservedHourly(
                time=key,
                temperature=temperature,
                precipitation=_in_range(_first_present(row, "prcp", "precipitation", "precip"), PRECIPITATION_RANGE),
                wind_speed=_in_range(_first_present(row, "wspd", "wind_speed"), WIND_SPEED_RANGE),
                wind_direction=_in_range(_first_present(row, "wdir", "wind_direction"), WIND_DIRECTION_RANGE),
                wind_gusts=_in_range(_first_present(row, "wpgt", "wind_gusts", "gust"), WIND_GUST_RANGE),
                epoch=epoch,
                complete=is_bucket_completed(start, bucket_minutes, now_ms),
            )
        )
    out.sort(key=lambda o: o.epoch)
    return out


def fetch_observed_hourly(
    latitude: float,
    longitude: float,
    timezone: str = "America/Toronto",
    *,
    api_key: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> Optional[ObservedConditions]:
    """Fetch the last two local days of station observations.

    Returns None on any upstream failure. Raises ObservationsNotConfigured
    when no API key is available.
    """
    key = api_key or settings.meteostat_api_key
    if not key:
        raise ObservationsNotConfigured("CONSENSUS_METEOSTAT_API_KEY is not set")

    zone = resolve_zone(timezone)
    local_now = (now or dt.datetime.now(tz=dt.timezone.utc)).astimezone(zone)
    now_ms = int(local_now.timestamp() * 1000)

    params = {
        "lat": latitude,
        "lon": longitude,
        "start": (local_now - dt.timedelta(days=LOOKBACK_DAYS)).strftime("%Y-%m-%d"),
        "end": local_now.strftime("%Y-%m-%d"),
        "tz": timezone,
        "units": "metric",
    }
    headers = {"x-rapidapi-key": key, "x-rapidapi-host": METEOSTAT_HOST}

    try:
        resp = session.get(
            METEOSTAT_HOURLY_URL,
            params=params,
            headers=headers,
            timeout=settings.observations_timeout_seconds,
        )
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        logger.warning(
            "Observations fetch failed",
            extra={"params": params, "headers": redact_mapping(headers), "error": str(exc)},
        )
        return None

    rows = data.get("data") if isinstance(data, Mapping) else None
    hourly = parse_observation_rows(rows, zone, now_ms)
    logger.debug("Fetched observations", extra={"rows": len(hourly), "timezone": timezone})
    return ObservedConditions(hourly=hourly, fetched_at=int(time.time() * 1000))
