"""Finite-or-absent numeric values shared by parsing and statistics.

Upstream payloads mix numbers, nulls, NaN and the odd string. Everything
downstream sees either a finite float or ``None``.
"""
from __future__ import annotations

import math
from typing import Any, Iterable, List, Optional


def finite_or_none(value: Any) -> Optional[float]:
    """Return ``value`` as a finite float, or None when it carries no data."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def filter_finite(values: Iterable[Any]) -> List[float]:
    """Drop absent entries, keeping order."""
    out: List[float] = []
    for value in values:
        number = finite_or_none(value)
        if number is not None:
            out.append(number)
    return out


def round_half_up(value: Optional[float], decimals: int = 0) -> float:
    """Round halves upward (2.5 -> 3, -2.5 -> -2); absent input rounds to 0.

    Python's round() is banker's rounding, which would turn a 62.5 agreement
    into 62.
    """
    number = finite_or_none(value)
    if number is None:
        return 0.0
    factor = 10 ** decimals
    return math.floor(number * factor + 0.5) / factor


def round_int(value: Optional[float]) -> int:
    return int(round_half_up(value, 0))
