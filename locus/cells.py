"""Deterministic spatial cell ids.

A cell id is a pure function of (lat, lng, resolution): coordinates are
rounded to a grid whose step is 10^-min(resolution, 6) degrees. This is a
flat lat/lng grid, not a hierarchical index; resolutions above 6 only change
the label.
"""

from __future__ import annotations

import math
from typing import Any, Optional

DEFAULT_RESOLUTION = 10
MIN_RESOLUTION = 1
MAX_RESOLUTION = 15
MAX_PRECISION = 6


def _round_half_up(value: float) -> int:
    # Math.round: halves go towards +infinity, so -2.5 -> -2.
    return math.floor(value + 0.5)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def normalize_resolution(resolution: Optional[Any]) -> int:
    """Round and clamp a requested resolution into [1, 15]; bad input means the default."""
    if resolution is None or isinstance(resolution, bool):
        return DEFAULT_RESOLUTION
    try:
        value = float(resolution)
    except (TypeError, ValueError):
        return DEFAULT_RESOLUTION
    if not math.isfinite(value):
        return DEFAULT_RESOLUTION
    return _clamp(_round_half_up(value), MIN_RESOLUTION, MAX_RESOLUTION)


def cell_id_from_lat_lng(lat: float, lng: float, resolution: Optional[Any] = None) -> str:
    """Return ``cell_<res>_<lat>_<lng>`` with both coordinates printed to six decimals.

    Out-of-range resolutions are clamped, never rejected. lat and lng must be
    finite; the schema layer guarantees that for wire input.
    """
    res = normalize_resolution(resolution)
    factor = 10 ** _clamp(res, MIN_RESOLUTION, MAX_PRECISION)
    cell_lat = _round_half_up(lat * factor) / factor + 0.0
    cell_lng = _round_half_up(lng * factor) / factor + 0.0
    return f"cell_{res}_{cell_lat:.6f}_{cell_lng:.6f}"
