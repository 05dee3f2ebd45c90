"""
Distance-decay curves.

Each curve maps a normalized distance `t` in [0, 1] to a proximity score in
[0, 1] with `s(0) = 1`, `s(1) = 0`, monotonically non-increasing in `t`.
`sensitivity` (k) controls how steeply the score drops near the POI.
"""

from __future__ import annotations

import math
from typing import Callable

from livability.domain.models import DistanceCurve

SENSITIVITY_MIN = 0.1
SENSITIVITY_MAX = 10.0


def clamp_sensitivity(k: float, lo: float = SENSITIVITY_MIN, hi: float = SENSITIVITY_MAX) -> float:
    return max(lo, min(hi, float(k)))


def _linear(t: float, k: float) -> float:
    return 1.0 - t


def _log(t: float, k: float) -> float:
    return 1.0 - math.log1p(t * math.expm1(k)) / k


def _exp(t: float, k: float) -> float:
    floor = math.exp(-k)
    return (math.exp(-k * t) - floor) / (1.0 - floor)


def _power(t: float, k: float) -> float:
    return (1.0 - t) ** k


CURVES: dict[str, Callable[[float, float], float]] = {
    "linear": _linear,
    "log": _log,
    "exp": _exp,
    "power": _power,
}


def proximity(distance_m: float, max_distance_m: float, curve: DistanceCurve, sensitivity: float) -> float:
    """Proximity score for a POI `distance_m` away, zero at and beyond `max_distance_m`."""
    if max_distance_m <= 0:
        raise ValueError("max_distance_m must be > 0")
    t = min(max(distance_m, 0.0), max_distance_m) / max_distance_m
    return apply_curve(t, curve, sensitivity)


def apply_curve(t: float, curve: DistanceCurve, sensitivity: float) -> float:
    try:
        fn = CURVES[curve]
    except KeyError:
        raise ValueError(f"Unknown distance curve '{curve}'") from None
    if t <= 0.0:
        return 1.0
    if t >= 1.0:
        return 0.0
    s = fn(t, clamp_sensitivity(sensitivity))
    return max(0.0, min(1.0, s))
