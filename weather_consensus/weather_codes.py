"""WMO weather code helpers.

Open-Meteo models report cosmetically different codes for the same weather
(freezing drizzle vs. freezing rain, fog vs. rime fog). Codes are collapsed to
one representative per family before they are compared or counted.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from .values import finite_or_none

# raw code -> canonical code
WEATHER_CODE_FAMILIES: Dict[int, int] = {
    0: 0,
    1: 1,
    2: 2,
    3: 3,
    45: 45,
    48: 45,
    51: 61,
    53: 61,
    55: 61,
    56: 71,
    57: 71,
    61: 61,
    63: 61,
    65: 61,
    66: 71,
    67: 71,
    71: 71,
    73: 71,
    75: 75,
    77: 71,
    80: 80,
    81: 80,
    82: 95,
    85: 71,
    86: 75,
    95: 95,
    96: 95,
    99: 95,
}

WEATHER_CODES: Dict[int, Dict[str, str]] = {
    0: {"description": "Clear sky", "icon": "sun"},
    1: {"description": "Mainly clear", "icon": "sun"},
    2: {"description": "Partly cloudy", "icon": "cloud-sun"},
    3: {"description": "Overcast", "icon": "cloud"},
    45: {"description": "Fog", "icon": "fog"},
    48: {"description": "Depositing rime fog", "icon": "fog"},
    51: {"description": "Light drizzle", "icon": "drizzle"},
    53: {"description": "Moderate drizzle", "icon": "drizzle"},
    55: {"description": "Dense drizzle", "icon": "drizzle"},
    56: {"description": "Light freezing drizzle", "icon": "drizzle"},
    57: {"description": "Dense freezing drizzle", "icon": "drizzle"},
    61: {"description": "Rain", "icon": "rain"},
    63: {"description": "Moderate rain", "icon": "rain"},
    65: {"description": "Heavy rain", "icon": "rain"},
    66: {"description": "Light freezing rain", "icon": "rain"},
    67: {"description": "Heavy freezing rain", "icon": "rain"},
    71: {"description": "Snow", "icon": "snow"},
    73: {"description": "Moderate snow", "icon": "snow"},
    75: {"description": "Heavy snow", "icon": "snow"},
    77: {"description": "Snow grains", "icon": "snow"},
    80: {"description": "Rain showers", "icon": "showers"},
    81: {"description": "Moderate rain showers", "icon": "showers"},
    82: {"description": "Violent rain showers", "icon": "showers"},
    85: {"description": "Slight snow showers", "icon": "snow"},
    86: {"description": "Heavy snow showers", "icon": "snow"},
    95: {"description": "Thunderstorm", "icon": "storm"},
    96: {"description": "Thunderstorm with slight hail", "icon": "storm"},
    99: {"description": "Thunderstorm with heavy hail", "icon": "storm"},
}


def normalize_weather_code(code: Any) -> Optional[int]:
    """Collapse a raw WMO code onto its family code.

    Returns None for absent, negative or fractional input; it must never be
    read as 0 (clear sky). Codes outside the table pass through unchanged.
    """
    number = finite_or_none(code)
    if number is None or number < 0 or not number.is_integer():
        return None
    value = int(number)
    return WEATHER_CODE_FAMILIES.get(value, value)


def describe_weather_code(code: Any) -> str:
    """Human-readable label for a raw or canonical code."""
    number = finite_or_none(code)
    if number is None or not number.is_integer():
        return "Unknown"
    entry = WEATHER_CODES.get(int(number))
    return entry["description"] if entry else "Unknown"
