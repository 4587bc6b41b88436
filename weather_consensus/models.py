"""Per-model forecast records and the registry of upstream models."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

from .values import finite_or_none

STATUS_OK = "ok"
STATUS_ERROR = "error"
NO_HOURLY_DATA = "No hourly data"


@dataclass(frozen=True)
class WeatherModel:
    """Upstream numerical weather model served by Open-Meteo."""
    id: str
    name: str
    provider: str
    endpoint: str
    color: str
    description: str
    metadata_id: Optional[str] = None


WEATHER_MODELS: List[WeatherModel] = [
    WeatherModel(
        id="gem_seamless",
        name="GEM",
        provider="Environment Canada",
        endpoint="https://api.open-meteo.com/v1/gem",
        color="oklch(0.75 0.15 195)",
        description="Canadian Global Environmental Multiscale Model - Primary for Canada",
        metadata_id="cmc_gem_gdps",
    ),
    WeatherModel(
        id="gfs_seamless",
        name="GFS",
        provider="NOAA (US)",
        endpoint="https://api.open-meteo.com/v1/gfs",
        color="oklch(0.70 0.16 280)",
        description="Global Forecast System - US model with global coverage",
        metadata_id="ncep_gfs013",
    ),
    WeatherModel(
        id="ecmwf_ifs",
        name="ECMWF",
        provider="European Centre",
        endpoint="https://api.open-meteo.com/v1/ecmwf",
        color="oklch(0.72 0.19 160)",
        description="European model - IFS HRES 9 km global forecast",
        metadata_id="ecmwf_ifs",
    ),
    WeatherModel(
        id="icon_seamless",
        name="ICON",
        provider="DWD (Germany)",
        endpoint="https://api.open-meteo.com/v1/dwd-icon",
        color="oklch(0.75 0.18 85)",
        description="German Icosahedral Nonhydrostatic model",
        metadata_id="dwd_icon",
    ),
]

MODELS_BY_ID: Dict[str, WeatherModel] = {model.id: model for model in WEATHER_MODELS}


def get_model(model_id: str) -> Optional[WeatherModel]:
    return MODELS_BY_ID.get(model_id)


@dataclass
class HourlyForecastPoint:
    """One model's forecast for one local hour. Absent values are None."""
    time: str  # local "YYYY-MM-DDTHH:MM"
    epoch: Optional[int] = None  # unix ms
    temperature: Optional[float] = None
    precipitation: Optional[float] = None
    precipitation_probability: Optional[float] = None
    wind_speed: Optional[float] = None
    wind_direction: Optional[float] = None
    wind_gusts: Optional[float] = None
    cloud_cover: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    weather_code: Optional[int] = None


@dataclass
class DailyForecastPoint:
    """One model's aggregates for one local date."""
    date: str  # local "YYYY-MM-DD"
    temperature_max: Optional[float] = None
    temperature_min: Optional[float] = None
    precipitation_sum: Optional[float] = None
    precipitation_probability_max: Optional[float] = None
    wind_speed_max: Optional[float] = None
    wind_gusts_max: Optional[float] = None
    weather_code: Optional[int] = None
    sunrise: Optional[str] = None
    sunset: Optional[str] = None


def _point_from_dict(cls, data: Mapping[str, Any]):
    names = {f.name for f in fields(cls)}
    return cls(**{key: value for key, value in data.items() if key in names})


@dataclass
class ModelForecast:
    """One upstream model's result for a location.

    ``status`` is derived: a forecast is only usable when it has hourly data
    and carries no error. Consumers must branch on it rather than on the
    truthiness of individual fields.
    """
    model: WeatherModel
    hourly: List[HourlyForecastPoint] = field(default_factory=list)
    daily: List[DailyForecastPoint] = field(default_factory=list)
    fetched_at: Optional[int] = None  # unix ms
    run_initialisation_time: Optional[float] = None  # unix s
    run_availability_time: Optional[float] = None  # unix s
    update_interval_seconds: Optional[float] = None
    metadata_fetched_at: Optional[int] = None  # unix ms
    error: Optional[str] = None
    update_error: Optional[str] = None
    pending_availability_time: Optional[float] = None
    snapshot_time: Optional[int] = None
    snapshot_hash: Optional[str] = None
    snapshot_id: Optional[str] = None
    last_forecast_fetch_time: Optional[int] = None
    last_seen_run_availability_time: Optional[float] = None
    etag: Optional[str] = None

    def __post_init__(self) -> None:
        if self.hourly is None:
            self.hourly = []
        if self.daily is None:
            self.daily = []

    @property
    def status(self) -> str:
        if self.error or not self.hourly:
            return STATUS_ERROR
        return STATUS_OK

    @property
    def reason(self) -> Optional[str]:
        if self.error:
            return self.error
        if not self.hourly:
            return NO_HOURLY_DATA
        return None

    @property
    def is_ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status
        data["reason"] = self.reason
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModelForecast":
        """Rebuild a forecast from :meth:`to_dict` output or a cached snapshot.

        ``status``/``reason`` in the input are ignored and re-derived.
        """
        raw_model = data.get("model")
        if isinstance(raw_model, WeatherModel):
            model = raw_model
        elif isinstance(raw_model, Mapping):
            model = MODELS_BY_ID.get(raw_model.get("id", "")) or _point_from_dict(WeatherModel, raw_model)
        else:
            raise ValueError("forecast payload has no model")

        names = {f.name for f in fields(cls)} - {"model", "hourly", "daily"}
        kwargs = {key: data[key] for key in names if key in data}
        return cls(
            model=model,
            hourly=[_point_from_dict(HourlyForecastPoint, h) for h in (data.get("hourly") or [])],
            daily=[_point_from_dict(DailyForecastPoint, d) for d in (data.get("daily") or [])],
            **kwargs,
        )


def normalize_model(raw: ModelForecast | Mapping[str, Any]) -> ModelForecast:
    """Guarantee list-valued series and a derivable status on any forecast."""
    forecast = raw if isinstance(raw, ModelForecast) else ModelForecast.from_dict(raw)
    forecast.hourly = list(forecast.hourly or [])
    forecast.daily = list(forecast.daily or [])
    return forecast


def error_forecast(model: WeatherModel, message: str, *, fetched_at: Optional[int] = None) -> ModelForecast:
    return ModelForecast(model=model, hourly=[], daily=[], fetched_at=fetched_at, error=message)


@dataclass
class ModelMetadata:
    """Run publication facts reported by a model's metadata endpoint."""
    model_id: str
    run_initialisation_time: Optional[float] = None
    run_availability_time: Optional[float] = None
    update_interval_seconds: Optional[float] = None
    metadata_fetched_at: Optional[int] = None

    @property
    def has_run_availability(self) -> bool:
        return finite_or_none(self.run_availability_time) is not None


@dataclass
class PendingModelUpdate:
    """A newer run exists upstream but its fetch is deliberately deferred."""
    model_id: str
    run_availability_time: float  # unix s
    retry_at: int  # unix ms, jittered
    pending_until: Optional[int] = None  # unix ms


@dataclass
class RefreshSummary:
    mode: str  # force | manual | auto
    no_new_runs: bool = False
    latest_run_availability_time: Optional[float] = None


@dataclass
class ModelCompleteness:
    model_id: str
    has_snapshot: bool = False
    snapshot_age_seconds: Optional[float] = None
    has_metadata: bool = False
    run_age_known: bool = False
    updated_this_refresh: bool = False
    is_pending: bool = False
    is_failed: bool = False


@dataclass
class DataCompleteness:
    models: List[ModelCompleteness] = field(default_factory=list)
    fresh_count: int = 0
    stale_count: int = 0
    unknown_count: int = 0
    failed_count: int = 0


@dataclass
class FetchResult:
    """Outcome of one refresh cycle."""
    forecasts: List[ModelForecast]
    pending: List[PendingModelUpdate] = field(default_factory=list)
    used_cache: bool = False
    refresh_summary: RefreshSummary = field(default_factory=lambda: RefreshSummary(mode="auto"))
    completeness: DataCompleteness = field(default_factory=DataCompleteness)
    superseded: bool = False
    generation: int = 0
