"""Reconcile independent model forecasts into one consensus forecast.

Hour slots and days are aligned by index: slot ``i`` pulls the ``i``-th entry
from every successful model that has one, and takes its time key from the
first of them. Each variable gets mean/min/max/stddev (circular statistics for
wind direction, dominant mode for weather codes) and an agreement score; the
per-slot and top-level scores are weighted averages over available variables.
"""
from __future__ import annotations

import time
from typing import List, Optional, Sequence

from . import consensus_math as cm
from .config import Settings, settings as default_settings
from .domain import (
    DAILY_EXPECTED_SPREAD,
    DAILY_WEIGHTS,
    HOURLY_EXPECTED_SPREAD,
    HOURLY_WEIGHTS,
    METRIC_WEIGHTS,
    ConfidenceColor,
    ConfidenceLevel,
    ConsensusMetrics,
    ConsensusResult,
    DailyConsensus,
    FreshnessInfo,
    HourlyConsensus,
    MeanSummary,
    RangeSummary,
    StatSummary,
    WeatherCodeSummary,
)
from .models import DailyForecastPoint, HourlyForecastPoint, ModelForecast
from .values import filter_finite, finite_or_none, round_half_up, round_int
from .weather_codes import describe_weather_code
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="consensus")


def _agreement(stats: cm.Stats, expected: float) -> float:
    return cm.calculate_agreement(stats.std_dev, expected) if stats.available else 0.0


def _stat_summary(stats: cm.Stats, agreement: float) -> StatSummary:
    return StatSummary(
        mean=round_half_up(stats.mean, 1),
        min=round_half_up(stats.min, 1),
        max=round_half_up(stats.max, 1),
        std_dev=round_half_up(stats.std_dev, 1),
        agreement=round_int(agreement),
        available=stats.available,
    )


def _code_summary(dominant: cm.DominantCode) -> WeatherCodeSummary:
    return WeatherCodeSummary(
        dominant=dominant.code,
        description=describe_weather_code(dominant.code),
        agreement=round_int(dominant.agreement),
        available=dominant.available,
    )


def _hourly_slot(points: Sequence[HourlyForecastPoint]) -> HourlyConsensus:
    temp = cm.compute_stats(p.temperature for p in points)
    temp_agreement = _agreement(temp, HOURLY_EXPECTED_SPREAD["temperature"])

    precip = cm.compute_stats(p.precipitation for p in points)
    precip_agreement = _agreement(precip, HOURLY_EXPECTED_SPREAD["precipitation"])

    precip_prob = cm.compute_stats(p.precipitation_probability for p in points)
    precip_prob_agreement = _agreement(precip_prob, HOURLY_EXPECTED_SPREAD["precipitation_probability"])

    wind = cm.compute_stats(p.wind_speed for p in points)
    wind_agreement = _agreement(wind, HOURLY_EXPECTED_SPREAD["wind_speed"])

    directions = filter_finite(p.wind_direction for p in points)
    direction_available = len(directions) >= cm.MIN_MODELS_FOR_AGREEMENT
    direction_mean = cm.circular_mean(directions)
    direction_agreement = (
        cm.calculate_agreement(cm.circular_std_dev(directions), HOURLY_EXPECTED_SPREAD["wind_direction"])
        if direction_available
        else 0.0
    )

    cloud = cm.compute_stats(p.cloud_cover for p in points)
    cloud_agreement = _agreement(cloud, HOURLY_EXPECTED_SPREAD["cloud_cover"])

    dominant = cm.dominant_weather_code(p.weather_code for p in points)

    overall = cm.weighted_average(
        [
            cm.WeightedItem(temp_agreement, HOURLY_WEIGHTS["temperature"], temp.available),
            cm.WeightedItem(precip_agreement, HOURLY_WEIGHTS["precipitation"], precip.available),
            cm.WeightedItem(wind_agreement, HOURLY_WEIGHTS["wind_speed"], wind.available),
            cm.WeightedItem(dominant.agreement, HOURLY_WEIGHTS["weather_code"], dominant.available),
            cm.WeightedItem(cloud_agreement, HOURLY_WEIGHTS["cloud_cover"], cloud.available),
        ]
    )

    return HourlyConsensus(
        time=points[0].time,
        epoch=points[0].epoch,
        temperature=_stat_summary(temp, temp_agreement),
        precipitation=_stat_summary(precip, precip_agreement),
        precipitation_probability=RangeSummary(
            mean=round_int(precip_prob.mean),
            min=round_int(precip_prob.min),
            max=round_int(precip_prob.max),
            agreement=round_int(precip_prob_agreement),
            available=precip_prob.available,
        ),
        wind_speed=_stat_summary(wind, wind_agreement),
        wind_direction=MeanSummary(
            # 359.6 rounds to 360, which is the same bearing as 0
            mean=round_int(direction_mean) % 360,
            agreement=round_int(direction_agreement),
            available=direction_available,
        ),
        cloud_cover=MeanSummary(
            mean=round_int(cloud.mean),
            agreement=round_int(cloud_agreement),
            available=cloud.available,
        ),
        weather_code=_code_summary(dominant),
        overall_agreement=round_int(cm.clamp_score(overall)),
    )


def _daily_slot(points: Sequence[DailyForecastPoint]) -> DailyConsensus:
    tmax = cm.compute_stats(p.temperature_max for p in points)
    tmax_agreement = _agreement(tmax, DAILY_EXPECTED_SPREAD["temperature_max"])

    tmin = cm.compute_stats(p.temperature_min for p in points)
    tmin_agreement = _agreement(tmin, DAILY_EXPECTED_SPREAD["temperature_min"])

    precip = cm.compute_stats(p.precipitation_sum for p in points)
    precip_agreement = _agreement(precip, DAILY_EXPECTED_SPREAD["precipitation_sum"])

    precip_prob = cm.compute_stats(p.precipitation_probability_max for p in points)
    precip_prob_agreement = _agreement(precip_prob, DAILY_EXPECTED_SPREAD["precipitation_probability_max"])

    wind = cm.compute_stats(p.wind_speed_max for p in points)
    wind_agreement = _agreement(wind, DAILY_EXPECTED_SPREAD["wind_speed_max"])

    dominant = cm.dominant_weather_code(p.weather_code for p in points)

    overall = cm.weighted_average(
        [
            cm.WeightedItem(tmax_agreement, DAILY_WEIGHTS["temperature_max"], tmax.available),
            cm.WeightedItem(tmin_agreement, DAILY_WEIGHTS["temperature_min"], tmin.available),
            cm.WeightedItem(precip_agreement, DAILY_WEIGHTS["precipitation"], precip.available),
            cm.WeightedItem(wind_agreement, DAILY_WEIGHTS["wind_speed"], wind.available),
            cm.WeightedItem(dominant.agreement, DAILY_WEIGHTS["weather_code"], dominant.available),
        ]
    )

    return DailyConsensus(
        date=points[0].date,
        temperature_max=_stat_summary(tmax, tmax_agreement),
        temperature_min=_stat_summary(tmin, tmin_agreement),
        precipitation=RangeSummary(
            mean=round_half_up(precip.mean, 1),
            min=round_half_up(precip.min, 1),
            max=round_half_up(precip.max, 1),
            agreement=round_int(precip_agreement),
            available=precip.available,
        ),
        precipitation_probability=MeanSummary(
            mean=round_int(precip_prob.mean),
            agreement=round_int(precip_prob_agreement),
            available=precip_prob.available,
        ),
        wind_speed=MeanSummary(
            mean=round_half_up(wind.mean, 1),
            agreement=round_int(wind_agreement),
            available=wind.available,
        ),
        weather_code=_code_summary(dominant),
        overall_agreement=round_int(cm.clamp_score(overall)),
    )


def _unavailable(successful: List[str], failed: List[str], freshness: FreshnessInfo) -> ConsensusResult:
    return ConsensusResult(
        metrics=ConsensusMetrics(),
        hourly=[],
        daily=[],
        model_count=len(successful),
        successful_models=successful,
        failed_models=failed,
        is_available=False,
        freshness=freshness,
    )


def calculate_freshness_info(
    forecasts: Sequence[ModelForecast],
    *,
    now_seconds: Optional[float] = None,
    config: Optional[Settings] = None,
) -> FreshnessInfo:
    cfg = config or default_settings
    run_times = [
        {"model_id": f.model.id, "run_availability_time": f.run_availability_time}
        for f in forecasts
        if f.is_ok
    ]
    info = cm.calculate_freshness(
        run_times,
        now_seconds=time.time() if now_seconds is None else now_seconds,
        stale_threshold_hours=cfg.freshness_stale_hours,
        spread_threshold_hours=cfg.freshness_spread_threshold_hours,
        max_penalty=cfg.freshness_max_penalty,
    )
    return FreshnessInfo(**info)


def calculate_consensus(
    forecasts: Sequence[ModelForecast],
    *,
    now_seconds: Optional[float] = None,
    config: Optional[Settings] = None,
) -> ConsensusResult:
    """Build the consensus forecast for a set of model results.

    Never raises on bad model data: fewer than two successful models, or
    series that produce no slots, give ``is_available=False`` with zeroed
    metrics. The freshness block is computed either way and never touches
    the agreement metrics.
    """
    successful_forecasts = [f for f in forecasts if f.is_ok]
    successful = [f.model.name for f in successful_forecasts]
    failed = [f.model.name for f in forecasts if not f.is_ok]
    freshness = calculate_freshness_info(forecasts, now_seconds=now_seconds, config=config)

    if len(successful_forecasts) < cm.MIN_MODELS_FOR_AGREEMENT:
        logger.debug("Not enough successful models for consensus",
                     extra={"successful": successful, "failed": failed})
        return _unavailable(successful, failed, freshness)

    hourly: List[HourlyConsensus] = []
    max_hours = max(len(f.hourly) for f in successful_forecasts)
    for i in range(max_hours):
        points = [f.hourly[i] for f in successful_forecasts if i < len(f.hourly)]
        if points:
            hourly.append(_hourly_slot(points))

    daily: List[DailyConsensus] = []
    max_days = max(len(f.daily) for f in successful_forecasts)
    for i in range(max_days):
        points = [f.daily[i] for f in successful_forecasts if i < len(f.daily)]
        if points:
            daily.append(_daily_slot(points))

    temp_agreements = [
        (d.temperature_max.agreement + d.temperature_min.agreement) / 2
        for d in daily
        if d.temperature_max.available and d.temperature_min.available
    ]
    precip_agreements = [d.precipitation.agreement for d in daily if d.precipitation.available]
    wind_agreements = [d.wind_speed.agreement for d in daily if d.wind_speed.available]
    condition_agreements = [d.weather_code.agreement for d in daily if d.weather_code.available]

    averages = {
        "temperature": cm.safe_average(temp_agreements),
        "precipitation": cm.safe_average(precip_agreements),
        "wind": cm.safe_average(wind_agreements),
        "conditions": cm.safe_average(condition_agreements),
    }
    items = [
        cm.WeightedItem(averages["temperature"], METRIC_WEIGHTS["temperature"], bool(temp_agreements)),
        cm.WeightedItem(averages["precipitation"], METRIC_WEIGHTS["precipitation"], bool(precip_agreements)),
        cm.WeightedItem(averages["wind"], METRIC_WEIGHTS["wind"], bool(wind_agreements)),
        cm.WeightedItem(averages["conditions"], METRIC_WEIGHTS["conditions"], bool(condition_agreements)),
    ]
    total_weight = cm.available_weight(items)
    overall = cm.weighted_average(items) if total_weight > 0 else 0.0

    if not hourly or not daily or total_weight <= 0:
        logger.info("Consensus series empty; reporting unavailable",
                    extra={"hourly": len(hourly), "daily": len(daily), "weight": total_weight})
        return _unavailable(successful, failed, freshness)

    return ConsensusResult(
        metrics=ConsensusMetrics(
            overall=round_int(cm.clamp_score(overall)),
            temperature=round_int(averages["temperature"]),
            precipitation=round_int(averages["precipitation"]),
            wind=round_int(averages["wind"]),
            conditions=round_int(averages["conditions"]),
        ),
        hourly=hourly,
        daily=daily,
        model_count=len(successful),
        successful_models=successful,
        failed_models=failed,
        is_available=True,
        freshness=freshness,
    )


_CONFIDENCE_LEVELS: List[tuple[float, ConfidenceLevel]] = [
    (75, ConfidenceLevel(
        label="High Confidence",
        description="Models are in strong agreement. Forecast is reliable.",
        color=ConfidenceColor.HIGH,
    )),
    (50, ConfidenceLevel(
        label="Moderate Confidence",
        description="Some model disagreement. Consider checking back for updates.",
        color=ConfidenceColor.MEDIUM,
    )),
]

_LOW_CONFIDENCE = ConfidenceLevel(
    label="Low Confidence",
    description="Significant model disagreement. Weather pattern is uncertain.",
    color=ConfidenceColor.LOW,
)


def get_confidence_level(score) -> ConfidenceLevel:
    safe_score = finite_or_none(score) or 0.0
    for threshold, level in _CONFIDENCE_LEVELS:
        if safe_score >= threshold:
            return level.model_copy()
    return _LOW_CONFIDENCE.model_copy()
