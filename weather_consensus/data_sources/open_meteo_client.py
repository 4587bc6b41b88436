"""Helpers for fetching per-model forecasts and run metadata from Open-Meteo."""
from __future__ import annotations

import datetime as dt
import time
from typing import Any, Callable, List, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
from retry_requests import retry

from ..config import settings
from ..models import (
    DailyForecastPoint,
    HourlyForecastPoint,
    ModelForecast,
    ModelMetadata,
    WeatherModel,
    error_forecast,
)
from ..values import finite_or_none
from ..weather_codes import normalize_weather_code
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="open_meteo_client")

# No HTTP response caching here: a cached body would hide a newly published run.
session = retry(requests.Session(), retries=3, backoff_factor=0.2)

OPEN_METEO_METADATA_URL = "https://api.open-meteo.com/data/{metadata_id}/static/meta.json"

HOURLY_VARIABLES = [
    "temperature_2m",
    "precipitation",
    "precipitation_probability",
    "wind_speed_10m",
    "wind_direction_10m",
    "wind_gusts_10m",
    "cloud_cover",
    "relative_humidity_2m",
    "pressure_msl",
    "weather_code",
]

DAILY_VARIABLES = [
    "temperature_2m_max",
    "temperature_2m_min",
    "precipitation_sum",
    "precipitation_probability_max",
    "wind_speed_10m_max",
    "wind_gusts_10m_max",
    "weather_code",
    "sunrise",
    "sunset",
]


class ForecastPayloadError(ValueError):
    """Upstream body is missing a series the forecast cannot do without."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def resolve_zone(tz_name: str) -> dt.tzinfo:
    """ZoneInfo for ``tz_name``; unknown names fall back to UTC."""
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone; using UTC for local keys", extra={"timezone": tz_name})
        return dt.timezone.utc


def _local_key(value: Any, zone: dt.tzinfo, fmt: str) -> tuple[Optional[str], Optional[int]]:
    """Return (local key, unix ms) for an epoch-seconds or ISO-local value.

    Times outside the platform's datetime range give ``(None, None)``.
    """
    seconds = finite_or_none(value) if not isinstance(value, str) else None
    if seconds is not None:
        try:
            local = dt.datetime.fromtimestamp(seconds, tz=zone)
        except (OverflowError, OSError, ValueError):
            return None, None
        return local.strftime(fmt), int(seconds * 1000)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            return text, None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=zone)
        try:
            return parsed.strftime(fmt), int(parsed.timestamp() * 1000)
        except (OverflowError, OSError):
            return None, None
    return None, None


def _series(block: Mapping[str, Any], name: str, length: int) -> List[Any]:
    values = block.get(name)
    if not isinstance(values, Sequence) or isinstance(values, str):
        return [None] * length
    values = list(values)
    if len(values) < length:
        values.extend([None] * (length - len(values)))
    return values


def _zero_if_absent(value: Any) -> float:
    number = finite_or_none(value)
    return 0.0 if number is None else number


def parse_hourly(block: Mapping[str, Any] | None, zone: dt.tzinfo) -> List[HourlyForecastPoint]:
    if not isinstance(block, Mapping):
        raise ForecastPayloadError("Missing hourly block")
    times = block.get("time")
    if not isinstance(times, Sequence) or isinstance(times, str) or not times:
        raise ForecastPayloadError("Missing hourly time series")
    if "temperature_2m" not in block:
        raise ForecastPayloadError("Missing hourly temperature series")

    n = len(times)
    temp = _series(block, "temperature_2m", n)
    precip = _series(block, "precipitation", n)
    precip_prob = _series(block, "precipitation_probability", n)
    wind_speed = _series(block, "wind_speed_10m", n)
    wind_dir = _series(block, "wind_direction_10m", n)
    gusts = _series(block, "wind_gusts_10m", n)
    cloud = _series(block, "cloud_cover", n)
    humidity = _series(block, "relative_humidity_2m", n)
    pressure = _series(block, "pressure_msl", n)
    codes = _series(block, "weather_code", n)

    out: List[HourlyForecastPoint] = []
    for i, raw_time in enumerate(times):
        key, epoch = _local_key(raw_time, zone, "%Y-%m-%dT%H:%M")
        if key is None:
            continue
        out.append(
            HourlyForecastPoint(
                time=key,
                epoch=epoch,
                temperature=finite_or_none(temp[i]),
                precipitation=_zero_if_absent(precip[i]),
                precipitation_probability=_zero_if_absent(precip_prob[i]),
                wind_speed=finite_or_none(wind_speed[i]),
                wind_direction=finite_or_none(wind_dir[i]),
                wind_gusts=finite_or_none(gusts[i]),
                cloud_cover=finite_or_none(cloud[i]),
                humidity=finite_or_none(humidity[i]),
                pressure=finite_or_none(pressure[i]),
                weather_code=normalize_weather_code(codes[i]),
            )
        )
    if not out:
        raise ForecastPayloadError("Hourly time series has no usable timestamps")
    return out


def parse_daily(block: Mapping[str, Any] | None, zone: dt.tzinfo) -> List[DailyForecastPoint]:
    """Daily aggregates are optional; a missing block yields an empty list."""
    if not isinstance(block, Mapping):
        return []
    dates = block.get("time")
    if not isinstance(dates, Sequence) or isinstance(dates, str):
        return []

    n = len(dates)
    tmax = _series(block, "temperature_2m_max", n)
    tmin = _series(block, "temperature_2m_min", n)
    precip = _series(block, "precipitation_sum", n)
    precip_prob = _series(block, "precipitation_probability_max", n)
    wind = _series(block, "wind_speed_10m_max", n)
    gusts = _series(block, "wind_gusts_10m_max", n)
    codes = _series(block, "weather_code", n)
    sunrise = _series(block, "sunrise", n)
    sunset = _series(block, "sunset", n)

    out: List[DailyForecastPoint] = []
    for i, raw_date in enumerate(dates):
        key, _ = _local_key(raw_date, zone, "%Y-%m-%d")
        if key is None:
            continue
        out.append(
            DailyForecastPoint(
                date=key,
                temperature_max=finite_or_none(tmax[i]),
                temperature_min=finite_or_none(tmin[i]),
                precipitation_sum=_zero_if_absent(precip[i]),
                precipitation_probability_max=_zero_if_absent(precip_prob[i]),
                wind_speed_max=finite_or_none(wind[i]),
                wind_gusts_max=finite_or_none(gusts[i]),
                weather_code=normalize_weather_code(codes[i]),
                sunrise=_local_key(sunrise[i], zone, "%Y-%m-%dT%H:%M")[0],
                sunset=_local_key(sunset[i], zone, "%Y-%m-%dT%H:%M")[0],
            )
        )
    return out


def build_forecast_params(latitude: float, longitude: float, timezone: str, forecast_days: int) -> dict:
    return {
        "latitude": latitude,
        "longitude": longitude,
        "timezone": timezone,
        "forecast_days": forecast_days,
        "timeformat": "unixtime",
        "hourly": ",".join(HOURLY_VARIABLES),
        "daily": ",".join(DAILY_VARIABLES),
    }


def _stamp_metadata(forecast: ModelForecast, metadata: Optional[ModelMetadata]) -> ModelForecast:
    if metadata is None:
        return forecast
    forecast.run_initialisation_time = metadata.run_initialisation_time
    forecast.run_availability_time = metadata.run_availability_time
    forecast.update_interval_seconds = metadata.update_interval_seconds
    forecast.metadata_fetched_at = metadata.metadata_fetched_at
    forecast.last_seen_run_availability_time = metadata.run_availability_time
    return forecast


def fetch_model_forecast(
    model: WeatherModel,
    latitude: float,
    longitude: float,
    timezone: str = "America/Toronto",
    *,
    metadata: Optional[ModelMetadata] = None,
    forecast_days: Optional[int] = None,
    timeout: Optional[float] = None,
    clock: Callable[[], int] = _now_ms,
) -> ModelForecast:
    """Fetch one model's hourly/daily forecast.

    Failures never raise: the returned forecast carries ``error`` and empty
    series instead.
    """
    params = build_forecast_params(latitude, longitude, timezone, forecast_days or settings.forecast_days)
    timeout = timeout if timeout is not None else settings.forecast_timeout_seconds
    zone = resolve_zone(timezone)

    try:
        resp = session.get(model.endpoint, params=params, timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, Mapping):
            raise ForecastPayloadError("Forecast body is not a JSON object")
        hourly = parse_hourly(data.get("hourly"), zone)
        daily = parse_daily(data.get("daily"), zone)
    except (requests.RequestException, ValueError, OverflowError, OSError) as exc:
        fetched_at = clock()
        logger.warning(
            "Model forecast fetch failed",
            extra={"model_id": model.id, "endpoint": model.endpoint, "error": str(exc)},
        )
        forecast = error_forecast(model, str(exc) or exc.__class__.__name__, fetched_at=fetched_at)
        forecast.snapshot_time = fetched_at
        forecast.last_forecast_fetch_time = fetched_at
        return _stamp_metadata(forecast, metadata)

    fetched_at = clock()
    headers = getattr(resp, "headers", None) or {}
    forecast = ModelForecast(
        model=model,
        hourly=hourly,
        daily=daily,
        fetched_at=fetched_at,
        snapshot_time=fetched_at,
        last_forecast_fetch_time=fetched_at,
        etag=headers.get("etag") or headers.get("ETag"),
    )
    logger.debug(
        "Fetched model forecast",
        extra={"model_id": model.id, "hours": len(hourly), "days": len(daily)},
    )
    return _stamp_metadata(forecast, metadata)


def _parse_metadata_time(value: Any) -> Optional[float]:
    return finite_or_none(value)


def _parse_metadata_interval(value: Any) -> Optional[float]:
    number = finite_or_none(value)
    return number if number is not None and number > 0 else None


def fetch_model_metadata(
    model: WeatherModel,
    *,
    now_ms: Optional[int] = None,
    timeout: Optional[float] = None,
) -> ModelMetadata:
    """Read a model's run publication metadata.

    Raises ``requests.RequestException`` / ``ValueError`` on failure; callers
    decide how an unreachable endpoint is treated.
    """
    if not model.metadata_id:
        raise ValueError(f"Model {model.id} has no metadata endpoint")
    url = OPEN_METEO_METADATA_URL.format(metadata_id=model.metadata_id)
    resp = session.get(url, timeout=timeout if timeout is not None else settings.metadata_timeout_seconds)
    resp.raise_for_status()
    data = resp.json()
    if not isinstance(data, Mapping):
        raise ValueError("Metadata body is not a JSON object")
    return ModelMetadata(
        model_id=model.id,
        run_initialisation_time=_parse_metadata_time(data.get("last_run_initialisation_time")),
        run_availability_time=_parse_metadata_time(data.get("last_run_availability_time")),
        update_interval_seconds=_parse_metadata_interval(data.get("update_interval_seconds")),
        metadata_fetched_at=now_ms if now_ms is not None else _now_ms(),
    )
