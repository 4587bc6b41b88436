"""HTTP API for the weather consensus service."""

import math
from dataclasses import asdict
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from .config import settings
from .consensus import get_confidence_level
from .data_sources import ObservationsNotConfigured, fetch_observed_hourly
from .domain import ConfidenceLevel, ConsensusResult, RefreshMode
from .forecast_service import ForecastService, build_forecast_service
from .models import WEATHER_MODELS, ModelForecast
from .overview import generate_consensus_overview
from .refresh import ControllerRegistry
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="api")

DEFAULT_TIMEZONE = "America/Toronto"

router = APIRouter()

_service: Optional[ForecastService] = None
_controllers: Optional[ControllerRegistry] = None


def get_service() -> ForecastService:
    """Process-wide forecast service, built on first use."""
    global _service
    if _service is None:
        _service = build_forecast_service(settings)
    return _service


def get_controllers(service: ForecastService = Depends(get_service)) -> ControllerRegistry:
    global _controllers
    if _controllers is None:
        _controllers = ControllerRegistry(service, config=settings)
    return _controllers


def shutdown() -> None:
    """Stop refresh timers and worker threads."""
    global _service, _controllers
    if _controllers is not None:
        _controllers.close()
        _controllers = None
    if _service is not None:
        _service.shutdown()
        _service = None


class ModelInfo(BaseModel):
    id: str
    name: str
    provider: str
    endpoint: str
    color: str
    description: str
    metadata_id: Optional[str] = None


class ModelStatus(BaseModel):
    """Per-model state behind a consensus result."""
    model_id: str
    status: str
    reason: Optional[str] = None
    fetched_at: Optional[float] = None
    run_availability_time: Optional[float] = None
    update_error: Optional[str] = None
    pending_availability_time: Optional[float] = None
    snapshot_id: Optional[str] = None


class ConsensusResponse(BaseModel):
    location_key: str
    generation: int
    consensus: ConsensusResult
    confidence: ConfidenceLevel
    models: List[ModelStatus]
    pending: List[Dict[str, Any]]
    used_cache: bool
    refresh_summary: Dict[str, Any]
    completeness: Dict[str, Any]


class ObservationsResponse(BaseModel):
    fetched_at: int
    hourly: List[Dict[str, Any]]


class OverviewRequest(BaseModel):
    latitude: float
    longitude: float
    timezone: str = DEFAULT_TIMEZONE
    location_name: Optional[str] = None


class OverviewResponse(BaseModel):
    overview: Optional[str] = None
    overall: int = 0
    is_available: bool = False


def _validate_location(latitude: float, longitude: float, timezone: str) -> None:
    """Reject out-of-range coordinates and unknown IANA zones with a 400."""
    if not (math.isfinite(latitude) and -90 <= latitude <= 90):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid latitude: {latitude}")
    if not (math.isfinite(longitude) and -180 <= longitude <= 180):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid longitude: {longitude}")
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid timezone: {timezone}")


def _model_status(forecast: ModelForecast) -> ModelStatus:
    return ModelStatus(
        model_id=forecast.model.id,
        status=forecast.status,
        reason=forecast.reason,
        fetched_at=forecast.fetched_at,
        run_availability_time=forecast.run_availability_time,
        update_error=forecast.update_error,
        pending_availability_time=forecast.pending_availability_time,
        snapshot_id=forecast.snapshot_id,
    )


def _refresh(
    controllers: ControllerRegistry,
    latitude: float,
    longitude: float,
    timezone: str,
    mode: RefreshMode,
    offline: bool = False,
):
    controller = controllers.get(latitude, longitude, timezone)
    outcome = controller.refresh(mode, offline=offline)
    if outcome is None:
        # controller was evicted mid-cycle; serve whatever it last published
        outcome = controller.latest
    if outcome is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Refresh superseded; retry the request")
    return controller, outcome


@router.get("/models", response_model=List[ModelInfo])
def list_models():
    """Registry of the upstream forecast models."""
    return [ModelInfo(**asdict(m)) for m in WEATHER_MODELS]


@router.get("/consensus", response_model=ConsensusResponse)
def get_consensus(
    lat: float = Query(..., description="Latitude in degrees"),
    lon: float = Query(..., description="Longitude in degrees"),
    timezone: str = Query(DEFAULT_TIMEZONE),
    mode: RefreshMode = Query(RefreshMode.AUTO),
    offline: bool = Query(False),
    controllers: ControllerRegistry = Depends(get_controllers),
):
    """Refresh the location (subject to gating) and return its consensus."""
    _validate_location(lat, lon, timezone)
    controller, outcome = _refresh(controllers, lat, lon, timezone, mode, offline)
    fetch = outcome.fetch
    logger.info(
        "Consensus served",
        extra={
            "location_key": controller.location_key,
            "mode": mode.value,
            "overall": outcome.consensus.metrics.overall,
            "pending": [p.model_id for p in fetch.pending],
        },
    )
    return ConsensusResponse(
        location_key=controller.location_key,
        generation=outcome.generation,
        consensus=outcome.consensus,
        confidence=get_confidence_level(outcome.consensus.metrics.overall),
        models=[_model_status(f) for f in fetch.forecasts],
        pending=[asdict(p) for p in fetch.pending],
        used_cache=fetch.used_cache,
        refresh_summary=asdict(fetch.refresh_summary),
        completeness=asdict(fetch.completeness),
    )


@router.get("/observations", response_model=ObservationsResponse)
def get_observations(
    lat: float = Query(...),
    lon: float = Query(...),
    timezone: str = Query(DEFAULT_TIMEZONE),
):
    """Recent station observations for chart overlays."""
    _validate_location(lat, lon, timezone)
    try:
        observed = fetch_observed_hourly(lat, lon, timezone)
    except ObservationsNotConfigured as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if observed is None:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Observation provider request failed")
    return ObservationsResponse(fetched_at=observed.fetched_at, hourly=[asdict(h) for h in observed.hourly])


@router.get("/gating-stats")
def get_gating_stats(service: ForecastService = Depends(get_service)):
    return service.get_gating_stats()


@router.post("/gating-stats/reset")
def reset_gating_stats(service: ForecastService = Depends(get_service)):
    service.reset_gating_stats()
    return service.get_gating_stats()


@router.post("/overview", response_model=OverviewResponse)
def post_overview(req: OverviewRequest, controllers: ControllerRegistry = Depends(get_controllers)):
    """One-sentence LLM overview of the current consensus (null when unavailable)."""
    _validate_location(req.latitude, req.longitude, req.timezone)
    controller = controllers.get(req.latitude, req.longitude, req.timezone)
    outcome = controller.latest
    if outcome is None:
        _, outcome = _refresh(controllers, req.latitude, req.longitude, req.timezone, RefreshMode.AUTO)
    consensus = outcome.consensus
    text = generate_consensus_overview(consensus, location_name=req.location_name)
    return OverviewResponse(overview=text, overall=consensus.metrics.overall, is_available=consensus.is_available)
