"""
Score engine: distance-decay + signed generalized-mean aggregation.

For one sample point and the active factors (enabled, weight != 0):
1. nearest POI of the factor's category within `max_distance` (none => proximity 0)
2. proximity `s` from the selected distance curve
3. contribution magnitude `|c| = s * |w|`
4. positive and negative factors form separate pools; each pool is a `|w|`-weighted
   power mean of its magnitudes with exponent `lambda` (geometric mean at 0)
5. `K = M_pos - M_neg` on the natural scale [-100, 100]

Powers are only ever taken of non-negative magnitudes, so no fractional power of
a negative base can occur. The engine is pure; normalization across a batch is
a separate step (`normalize_batch`) so cached tile scores stay comparable.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from hashlib import sha256
from typing import Iterable

from livability.core.geo import GeoPoint
from livability.core.spatial_index import SpatialGridIndex
from livability.domain.models import POI, DistanceCurve, Factor, FactorBreakdown, ScorePoint, ScoringParams
from livability.scoring.curves import proximity

logger = logging.getLogger(__name__)

DEFAULT_MAGNITUDE_FLOOR = 1e-10


def config_hash(params: ScoringParams) -> str:
    """Deterministic fingerprint of everything that changes a score."""
    payload = {
        "factors": [
            {
                "id": f.id,
                "weight": float(f.weight),
                "max_distance": float(f.max_distance),
                "enabled": bool(f.enabled),
            }
            for f in sorted(params.active_factors(), key=lambda f: f.id)
        ],
        "distance_curve": params.distance_curve,
        "sensitivity": float(params.sensitivity),
        "aggregation_lambda": float(params.aggregation_lambda),
    }
    return sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()[:16]


def power_mean(
    magnitudes: list[float],
    weights: list[float],
    lam: float,
    *,
    floor: float = DEFAULT_MAGNITUDE_FLOOR,
) -> float:
    """Weighted power mean of non-negative magnitudes.

    `lam == 0` is the weighted geometric mean. For `lam <= 0` magnitudes are
    floored at `floor` so zeros stay finite.
    """
    if len(magnitudes) != len(weights):
        raise ValueError("magnitudes and weights must have the same length")
    if any(m < 0 for m in magnitudes) or any(w < 0 for w in weights):
        raise ValueError("power_mean expects non-negative magnitudes and weights")
    total = sum(weights)
    if not magnitudes or total <= 0:
        return 0.0
    if all(m == 0 for m in magnitudes):
        return 0.0

    if lam == 0:
        log_sum = sum(w * math.log(max(m, floor)) for m, w in zip(magnitudes, weights))
        return math.exp(log_sum / total)

    if lam < 0:
        magnitudes = [max(m, floor) for m in magnitudes]
    acc = sum(w * m**lam for m, w in zip(magnitudes, weights))
    return (acc / total) ** (1.0 / lam)


def aggregate(
    contributions: list[tuple[float, float]],
    lam: float,
    *,
    floor: float = DEFAULT_MAGNITUDE_FLOOR,
) -> float:
    """Combine `(weight, magnitude)` pairs into K = M_pos - M_neg."""
    pos = [(abs(w), m) for w, m in contributions if w > 0]
    neg = [(abs(w), m) for w, m in contributions if w < 0]
    m_pos = power_mean([m for _, m in pos], [w for w, _ in pos], lam, floor=floor)
    m_neg = power_mean([m for _, m in neg], [w for w, _ in neg], lam, floor=floor)
    return m_pos - m_neg


def normalize_batch(points: list[ScorePoint]) -> list[ScorePoint]:
    """Rescale values so the batch minimum maps to 0 and the maximum to 1."""
    if not points:
        return []
    lo = min(p.value for p in points)
    hi = max(p.value for p in points)
    span = hi - lo
    if span <= 0:
        return [ScorePoint(lat=p.lat, lng=p.lng, value=0.0) for p in points]
    return [ScorePoint(lat=p.lat, lng=p.lng, value=(p.value - lo) / span) for p in points]


def k_stats(values: Iterable[float]) -> dict[str, float] | None:
    vals = list(values)
    if not vals:
        return None
    mean = sum(vals) / len(vals)
    var = sum((v - mean) ** 2 for v in vals) / len(vals)
    return {"min": min(vals), "max": max(vals), "mean": mean, "stddev": math.sqrt(var)}


@dataclass(frozen=True)
class FactorIndex:
    factor: Factor
    index: SpatialGridIndex[POI] | None


class ScoreEngine:
    """Pure scoring over prepared per-factor spatial indexes."""

    def __init__(self, *, magnitude_floor: float = DEFAULT_MAGNITUDE_FLOOR, index_cell_size_m: float = 500.0):
        self._floor = float(magnitude_floor)
        self._cell_size_m = float(index_cell_size_m)

    def build_indexes(self, factors: list[Factor], pois_by_factor: dict[str, list[POI]]) -> list[FactorIndex]:
        """Index the POIs of every active factor. Inactive factors are dropped here."""
        out: list[FactorIndex] = []
        for f in factors:
            if not f.active:
                continue
            pois = pois_by_factor.get(f.id) or []
            index = (
                SpatialGridIndex(pois, get_latlng=lambda p: (p.lat, p.lng), cell_size_m=self._cell_size_m)
                if pois
                else None
            )
            out.append(FactorIndex(factor=f, index=index))
        return out

    def score_point(
        self,
        lat: float,
        lng: float,
        indexes: list[FactorIndex],
        *,
        curve: DistanceCurve,
        sensitivity: float,
        lam: float,
    ) -> float:
        if not indexes:
            raise ValueError("score_point requires at least one active factor")
        contributions: list[tuple[float, float]] = []
        for fi in indexes:
            f = fi.factor
            s = 0.0
            if fi.index is not None:
                hit = fi.index.nearest_within(lat=lat, lng=lng, radius_m=f.max_distance)
                if hit is not None:
                    s = proximity(hit[1], f.max_distance, curve, sensitivity)
            contributions.append((f.weight, s * abs(f.weight)))
        return aggregate(contributions, lam, floor=self._floor)

    def score_points(
        self,
        points: list[GeoPoint],
        indexes: list[FactorIndex],
        *,
        curve: DistanceCurve,
        sensitivity: float,
        lam: float,
    ) -> list[ScorePoint]:
        out = [
            ScorePoint(
                lat=p.lat,
                lng=p.lng,
                value=self.score_point(p.lat, p.lng, indexes, curve=curve, sensitivity=sensitivity, lam=lam),
            )
            for p in points
        ]
        if logger.isEnabledFor(logging.DEBUG):
            stats = k_stats(sp.value for sp in out)
            if stats:
                logger.debug(
                    "K stats min=%.3f max=%.3f mean=%.3f stddev=%.3f (curve=%s sensitivity=%s lambda=%s)",
                    stats["min"],
                    stats["max"],
                    stats["mean"],
                    stats["stddev"],
                    curve,
                    sensitivity,
                    lam,
                )
        return out

    def breakdown(
        self,
        lat: float,
        lng: float,
        indexes: list[FactorIndex],
        *,
        curve: DistanceCurve,
        sensitivity: float,
        lam: float,
    ) -> tuple[float, list[FactorBreakdown]]:
        """Score one location and explain each factor's part in it."""
        rows: list[FactorBreakdown] = []
        for fi in indexes:
            f = fi.factor
            distance: float | None = None
            nearby = 0
            s = 0.0
            if fi.index is not None:
                hit = fi.index.nearest_within(lat=lat, lng=lng, radius_m=f.max_distance)
                if hit is not None:
                    distance = hit[1]
                    s = proximity(distance, f.max_distance, curve, sensitivity)
                nearby = len(fi.index.query_within(lat=lat, lng=lng, radius_m=f.max_distance))
            rows.append(
                FactorBreakdown(
                    factor_id=f.id,
                    factor_name=f.name or f.id,
                    weight=f.weight,
                    max_distance=f.max_distance,
                    distance_m=distance,
                    proximity=s,
                    contribution=math.copysign(s * abs(f.weight), f.weight),
                    nearby_count=nearby,
                )
            )
        value = self.score_point(lat, lng, indexes, curve=curve, sensitivity=sensitivity, lam=lam)
        rows.sort(key=lambda r: abs(r.contribution), reverse=True)
        return value, rows
