"""One-sentence narrative of a consensus, written by a local LLM.

All numbers are computed before the model sees them; the LLM only phrases
them. Any failure yields ``None`` so callers can simply hide the overview.
"""

from __future__ import annotations

import datetime as dt
from typing import Optional

from pydantic import BaseModel

from .consensus import get_confidence_level
from .domain import ConsensusResult, FreshnessInfo
from .ollama_client import OllamaClient, OllamaError
from .values import finite_or_none, round_half_up
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="overview")

MAX_OVERVIEW_WORDS = 22

SYSTEM_PROMPT = (
    "You are a weather consensus assistant. Write one sentence (max 22 words), plain text only. "
    "Use present tense, no emojis, no quotes, no lists. "
    "Mention agreement, current conditions, and today high/low when available. "
    "If freshness is provided, include its label briefly."
)


class OverviewInput(BaseModel):
    location_name: Optional[str] = None
    overall_score: Optional[float] = None
    confidence_label: Optional[str] = None
    temperature_now: Optional[float] = None
    condition: Optional[str] = None
    today_high: Optional[float] = None
    today_low: Optional[float] = None
    freshness_label: Optional[str] = None
    freshness_spread_hours: Optional[float] = None
    model_count: Optional[int] = None


def _fmt(value, digits: int = 0) -> Optional[str]:
    number = finite_or_none(value)
    if number is None:
        return None
    return f"{round_half_up(number, digits):.{digits}f}"


def freshness_label(freshness: FreshnessInfo) -> Optional[str]:
    if not freshness.has_metadata:
        return None
    if freshness.stale_model_count:
        return "Some models stale"
    if freshness.freshness_penalty:
        return "Runs spread out"
    return "Fresh"


def build_overview_input(
    consensus: ConsensusResult,
    *,
    location_name: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> OverviewInput:
    """Pick the current hour and today's entry out of a consensus result."""
    current = consensus.hourly[0] if consensus.hourly else None
    if current is not None and now is not None:
        now_ms = now.timestamp() * 1000
        past = [h for h in consensus.hourly if h.epoch is not None and h.epoch <= now_ms]
        if past:
            current = past[-1]
    today = consensus.daily[0] if consensus.daily else None

    return OverviewInput(
        location_name=location_name,
        overall_score=consensus.metrics.overall,
        confidence_label=get_confidence_level(consensus.metrics.overall).label,
        temperature_now=current.temperature.mean if current and current.temperature.available else None,
        condition=current.weather_code.description if current and current.weather_code.available else None,
        today_high=today.temperature_max.mean if today and today.temperature_max.available else None,
        today_low=today.temperature_min.mean if today and today.temperature_min.available else None,
        freshness_label=freshness_label(consensus.freshness),
        freshness_spread_hours=consensus.freshness.spread_hours,
        model_count=consensus.model_count,
    )


def build_overview_prompt(data: OverviewInput) -> str:
    lines: list[str] = []
    if data.location_name:
        lines.append(f"Location: {data.location_name}")
    score = _fmt(data.overall_score)
    if score:
        lines.append(f"Consensus score: {score} (0-100)")
    if data.confidence_label:
        lines.append(f"Confidence label: {data.confidence_label}")
    temp = _fmt(data.temperature_now)
    if temp:
        lines.append(f"Current temp: {temp} C")
    if data.condition:
        lines.append(f"Current conditions: {data.condition}")

    high, low = _fmt(data.today_high), _fmt(data.today_low)
    if high and low:
        lines.append(f"Today high/low: {high} C / {low} C")
    elif high:
        lines.append(f"Today high: {high} C")
    elif low:
        lines.append(f"Today low: {low} C")

    if data.freshness_label:
        spread = _fmt(data.freshness_spread_hours, 1)
        detail = f" ({spread}h spread)" if spread else ""
        lines.append(f"Freshness: {data.freshness_label}{detail}")
    count = _fmt(data.model_count)
    if count:
        lines.append(f"Models: {count}")
    return "\n".join(lines)


def build_overview_messages(data: OverviewInput) -> list[dict]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": build_overview_prompt(data)},
    ]


def clean_overview_text(raw: str) -> Optional[str]:
    """Strip fences and wrapping quotes, keep the first line, cap the length."""
    text = (raw or "").strip()
    if text.startswith("```"):
        text = text.strip("`").strip()
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines:
        return None
    text = lines[0].strip("\"'“”")
    words = text.split()
    if len(words) > MAX_OVERVIEW_WORDS:
        text = " ".join(words[:MAX_OVERVIEW_WORDS]).rstrip(",;:") + "."
    return text or None


def generate_consensus_overview(
    consensus: ConsensusResult,
    *,
    location_name: Optional[str] = None,
    client: Optional[OllamaClient] = None,
    now: Optional[dt.datetime] = None,
) -> Optional[str]:
    """Ask the LLM for a one-sentence overview. Returns None on any failure."""
    if not consensus.is_available:
        return None
    data = build_overview_input(consensus, location_name=location_name, now=now)
    try:
        raw = (client or OllamaClient()).chat(build_overview_messages(data), options={"temperature": 0.3})
    except OllamaError as exc:
        logger.warning("Overview generation failed", extra={"error": str(exc)})
        return None
    return clean_overview_text(raw)
