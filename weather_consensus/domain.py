"""Consensus vocabulary, tuning constants and strict output schemas.

These models are the contract between the consensus engine and anything that
renders it (the HTTP API, the narrative overview). No calculation lives here.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _StrictBaseModel(BaseModel):
    """Base model with strict extra handling."""

    model_config = ConfigDict(extra="forbid")


class ConfidenceColor(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RefreshMode(str, Enum):
    """Why a refresh cycle ran."""
    FORCE = "force"
    MANUAL = "manual"
    AUTO = "auto"


# Disagreement considered normal per variable; a spread this large scores 0.
HOURLY_EXPECTED_SPREAD: Dict[str, float] = {
    "temperature": 10.0,  # °C
    "precipitation": 5.0,  # mm
    "precipitation_probability": 30.0,  # points
    "wind_speed": 15.0,  # km/h
    "wind_direction": 45.0,  # degrees
    "cloud_cover": 30.0,  # points
}

DAILY_EXPECTED_SPREAD: Dict[str, float] = {
    "temperature_max": 8.0,
    "temperature_min": 8.0,
    "precipitation_sum": 15.0,
    "precipitation_probability_max": 30.0,
    "wind_speed_max": 20.0,
}

HOURLY_WEIGHTS: Dict[str, float] = {
    "temperature": 0.30,
    "precipitation": 0.25,
    "wind_speed": 0.20,
    "weather_code": 0.15,
    "cloud_cover": 0.10,
}

DAILY_WEIGHTS: Dict[str, float] = {
    "temperature_max": 0.25,
    "temperature_min": 0.25,
    "precipitation": 0.25,
    "wind_speed": 0.15,
    "weather_code": 0.10,
}

METRIC_WEIGHTS: Dict[str, float] = {
    "temperature": 0.35,
    "precipitation": 0.30,
    "wind": 0.20,
    "conditions": 0.15,
}


class StatSummary(_StrictBaseModel):
    """Cross-model spread for a linear variable."""
    mean: float = 0.0
    min: float = 0.0
    max: float = 0.0
    std_dev: float = 0.0
    agreement: int = Field(0, ge=0, le=100)
    available: bool = False


class RangeSummary(_StrictBaseModel):
    """Like StatSummary, without the standard deviation."""
    mean: float = 0.0
    min: float = 0.0
    max: float = 0.0
    agreement: int = Field(0, ge=0, le=100)
    available: bool = False


class MeanSummary(_StrictBaseModel):
    mean: float = 0.0
    agreement: int = Field(0, ge=0, le=100)
    available: bool = False


class WeatherCodeSummary(_StrictBaseModel):
    dominant: Optional[int] = None
    description: str = "Unknown"
    agreement: int = Field(0, ge=0, le=100)
    available: bool = False


class HourlyConsensus(_StrictBaseModel):
    time: str
    epoch: Optional[int] = None
    temperature: StatSummary
    precipitation: StatSummary
    precipitation_probability: RangeSummary
    wind_speed: StatSummary
    wind_direction: MeanSummary
    cloud_cover: MeanSummary
    weather_code: WeatherCodeSummary
    overall_agreement: int = Field(0, ge=0, le=100)


class DailyConsensus(_StrictBaseModel):
    date: str
    temperature_max: StatSummary
    temperature_min: StatSummary
    precipitation: RangeSummary
    precipitation_probability: MeanSummary
    wind_speed: MeanSummary
    weather_code: WeatherCodeSummary
    overall_agreement: int = Field(0, ge=0, le=100)


class ConsensusMetrics(_StrictBaseModel):
    overall: int = Field(0, ge=0, le=100)
    temperature: int = Field(0, ge=0, le=100)
    precipitation: int = Field(0, ge=0, le=100)
    wind: int = Field(0, ge=0, le=100)
    conditions: int = Field(0, ge=0, le=100)


class FreshnessInfo(_StrictBaseModel):
    """Run-time spread across models. Informational only."""
    has_metadata: bool = False
    spread_hours: Optional[float] = None
    freshness_score: Optional[int] = None
    freshest_run_availability_time: Optional[float] = None
    oldest_run_availability_time: Optional[float] = None
    stale_model_count: Optional[int] = None
    stale_model_ids: Optional[List[str]] = None
    freshness_penalty: Optional[int] = None


class ConsensusResult(_StrictBaseModel):
    metrics: ConsensusMetrics = Field(default_factory=ConsensusMetrics)
    hourly: List[HourlyConsensus] = Field(default_factory=list)
    daily: List[DailyConsensus] = Field(default_factory=list)
    model_count: int = 0
    successful_models: List[str] = Field(default_factory=list)
    failed_models: List[str] = Field(default_factory=list)
    is_available: bool = False
    freshness: FreshnessInfo = Field(default_factory=FreshnessInfo)


class ConfidenceLevel(_StrictBaseModel):
    label: str
    description: str
    color: ConfidenceColor
