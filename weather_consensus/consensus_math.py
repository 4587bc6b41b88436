"""Statistics used to reconcile model forecasts.

All functions accept sequences that may contain absent values (None/NaN) and
filter them through :func:`weather_consensus.values.filter_finite` first.
"""
from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .values import filter_finite, finite_or_none, round_int
from .weather_codes import normalize_weather_code

# Agreement reaches 0 once the spread (2 standard deviations) equals the
# expected spread for the variable.
STDDEV_TO_SPREAD = 2.0
MIN_MODELS_FOR_AGREEMENT = 2


@dataclass(frozen=True)
class Stats:
    mean: float = 0.0
    std_dev: float = 0.0
    min: float = 0.0
    max: float = 0.0
    count: int = 0

    @property
    def available(self) -> bool:
        return self.count >= MIN_MODELS_FOR_AGREEMENT


@dataclass(frozen=True)
class DominantCode:
    code: Optional[int]
    agreement: float
    available: bool


@dataclass(frozen=True)
class WeightedItem:
    value: Optional[float]
    weight: float
    available: bool


def clamp_score(value: Any) -> float:
    """Clamp to [0, 100]; absent input scores 0."""
    number = finite_or_none(value)
    if number is None:
        return 0.0
    return max(0.0, min(100.0, number))


def compute_stats(values: Iterable[Any]) -> Stats:
    """Population mean/stddev/min/max over the finite subset."""
    finite = filter_finite(values)
    count = len(finite)
    if count == 0:
        return Stats()
    mean = sum(finite) / count
    variance = sum((value - mean) ** 2 for value in finite) / count
    std_dev = math.sqrt(variance)
    return Stats(
        mean=mean,
        std_dev=std_dev if math.isfinite(std_dev) else 0.0,
        min=min(finite),
        max=max(finite),
        count=count,
    )


def calculate_agreement(std_dev: Any, expected_spread: Any) -> float:
    """Map dispersion onto a 0-100 agreement score.

    ``100 * (1 - 2*std_dev / expected_spread)`` clamped, so two models 2 units
    apart (std_dev 1) against an expected spread of 8 score 75.
    """
    spread = finite_or_none(std_dev)
    expected = finite_or_none(expected_spread)
    if spread is None or expected is None or expected <= 0:
        return 0.0
    return clamp_score(100.0 * (1.0 - STDDEV_TO_SPREAD * spread / expected))


def circular_mean(angles: Iterable[Any]) -> float:
    """Vector mean of bearings in degrees, in [0, 360). Empty input gives 0."""
    values = filter_finite(angles)
    if not values:
        return 0.0
    sin_sum = sum(math.sin(math.radians(a)) for a in values)
    cos_sum = sum(math.cos(math.radians(a)) for a in values)
    mean = math.degrees(math.atan2(sin_sum, cos_sum))
    if mean < 0:
        mean += 360.0
    # atan2 can land a hair under 0 and wrap to exactly 360.0
    return mean % 360.0


def circular_std_dev(angles: Iterable[Any]) -> float:
    """RMS of shortest angular distances to the circular mean."""
    values = filter_finite(angles)
    if not values:
        return 0.0
    mean = circular_mean(values)
    total = 0.0
    for angle in values:
        diff = abs(angle - mean) % 360.0
        diff = min(diff, 360.0 - diff)
        total += diff * diff
    return math.sqrt(total / len(values))


def dominant_weather_code(codes: Iterable[Any]) -> DominantCode:
    """Most common canonical weather code.

    Ties go to the lowest code. Agreement is the share of models reporting the
    dominant code and needs at least two valid codes.
    """
    normalized = [code for code in (normalize_weather_code(c) for c in codes) if code is not None]
    if not normalized:
        return DominantCode(code=None, agreement=0.0, available=False)

    counts = Counter(normalized)
    code, mode_count = min(counts.items(), key=lambda item: (-item[1], item[0]))
    total = len(normalized)
    available = total >= MIN_MODELS_FOR_AGREEMENT
    agreement = 100.0 * mode_count / total if available else 0.0
    return DominantCode(code=code, agreement=agreement, available=available)


def weighted_average(items: Iterable[WeightedItem]) -> float:
    """Weighted mean over available items only.

    Unavailable, absent or zero-weight items leave both numerator and
    denominator, so the remaining weights renormalize. No usable item gives 0.
    """
    total_weight = 0.0
    total = 0.0
    for item in items:
        value = finite_or_none(item.value)
        if not item.available or value is None or item.weight <= 0:
            continue
        total_weight += item.weight
        total += value * item.weight
    if total_weight == 0:
        return 0.0
    return total / total_weight


def available_weight(items: Iterable[WeightedItem]) -> float:
    """Sum of weights that :func:`weighted_average` would use."""
    return sum(
        item.weight
        for item in items
        if item.available and item.weight > 0 and finite_or_none(item.value) is not None
    )


def safe_average(values: Iterable[Any]) -> float:
    finite = filter_finite(values)
    if not finite:
        return 0.0
    return sum(finite) / len(finite)


def calculate_freshness(
    run_times: Sequence[Mapping[str, Any]],
    *,
    now_seconds: float,
    stale_threshold_hours: float = 12,
    spread_threshold_hours: float = 6,
    max_penalty: float = 20,
) -> dict:
    """Summarize how far apart (and how old) the contributing model runs are.

    ``run_times`` holds ``{"model_id", "run_availability_time"}`` entries for
    successful forecasts; entries without a finite availability time are
    ignored. The result is informational and must not be folded into any
    agreement score.
    """
    entries = []
    for entry in run_times:
        available_at = finite_or_none(entry.get("run_availability_time"))
        if available_at is not None:
            entries.append((entry.get("model_id"), available_at))

    if not entries:
        return {"has_metadata": False}

    values = [available_at for _, available_at in entries]
    freshest = max(values)
    oldest = min(values)
    spread_hours = (freshest - oldest) / 3600 if len(values) >= 2 else None

    oldest_age_hours = max(0.0, (now_seconds - oldest) / 3600)
    freshness_score = round_int(clamp_score(100 - oldest_age_hours * 4))

    stale_model_ids: List[str] = [
        model_id
        for model_id, available_at in entries
        if (now_seconds - available_at) / 3600 > stale_threshold_hours
    ]

    spread_penalty = 0.0
    if spread_hours is not None and spread_hours > spread_threshold_hours:
        spread_penalty = (spread_hours - spread_threshold_hours) * 2
    stale_penalty = len(stale_model_ids) * 4
    penalty = clamp_score(min(max_penalty, spread_penalty + stale_penalty))

    return {
        "has_metadata": True,
        "spread_hours": max(0.0, spread_hours) if spread_hours is not None else None,
        "freshness_score": freshness_score,
        "freshest_run_availability_time": freshest,
        "oldest_run_availability_time": oldest,
        "stale_model_count": len(stale_model_ids),
        "stale_model_ids": stale_model_ids,
        "freshness_penalty": round_int(penalty) if penalty > 0 else 0,
    }
