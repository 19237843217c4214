"""Crossover and gap helpers shared by all condition providers."""

import enum
import math
from collections.abc import Sequence

import numpy as np


class Cross(str, enum.Enum):
    UP = "UP"
    DOWN = "DOWN"


def _value(series, i: int) -> float:
    if i < 0 or i >= len(series):
        return math.nan
    return float(series[i])


def crossed(a, b, i: int) -> Cross | None:
    """Direction in which ``a`` crossed ``b`` between bars ``i-1`` and ``i``.

    Only a strict sign change of ``a - b`` counts: touching (a zero
    difference at either bar) is not a cross.  Unavailable values give None.
    """
    if i < 1:
        return None
    prev = _value(a, i - 1) - _value(b, i - 1)
    cur = _value(a, i) - _value(b, i)
    if math.isnan(prev) or math.isnan(cur):
        return None
    if prev < 0.0 < cur:
        return Cross.UP
    if prev > 0.0 > cur:
        return Cross.DOWN
    return None


def relative(a, b, i: int) -> Cross | None:
    """Which side of ``b`` the series ``a`` sits on at bar ``i``."""
    diff = _value(a, i) - _value(b, i)
    if math.isnan(diff) or diff == 0.0:
        return None
    return Cross.UP if diff > 0.0 else Cross.DOWN


def gap_series(a, b) -> np.ndarray:
    return np.abs(np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64))


def gap_confirmed_at(
    value: float,
    threshold: float,
    i: int,
    window: int,
    future: Sequence[np.ndarray],
    last_index: int,
) -> int | None:
    """First bar at which the gap of a crossover at ``i`` reaches ``threshold``.

    ``i`` itself when ``value`` already reaches it, otherwise the first bar of
    ``i+1 .. i+window`` where one of the ``future`` gap series does.  The scan
    never goes past ``last_index``; None when no bar up to there qualifies.
    """
    if not math.isnan(value) and value >= threshold:
        return i
    stop = min(i + window, last_index)
    for j in range(i + 1, stop + 1):
        for series in future:
            if j < len(series):
                g = series[j]
                if not np.isnan(g) and g >= threshold:
                    return j
    return None


def gap_valid_within_window(
    value: float,
    threshold: float,
    i: int,
    window: int,
    future: Sequence[np.ndarray],
    last_index: int,
) -> bool:
    """Deferred gap validation: True once :func:`gap_confirmed_at` finds a bar."""
    return gap_confirmed_at(value, threshold, i, window, future, last_index) is not None
