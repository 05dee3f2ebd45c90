import math
import random

import pytest

from livability.domain.models import POI, Factor, ScorePoint, ScoringParams
from livability.scoring.curves import CURVES, apply_curve, proximity
from livability.scoring.engine import ScoreEngine, aggregate, config_hash, normalize_batch, power_mean


@pytest.mark.parametrize("curve", sorted(CURVES))
@pytest.mark.parametrize("sensitivity", [0.5, 1.0, 2.0, 3.0])
def test_curves_are_monotone_with_fixed_endpoints(curve, sensitivity):
    assert apply_curve(0.0, curve, sensitivity) == 1.0
    assert apply_curve(1.0, curve, sensitivity) == 0.0

    values = [apply_curve(i / 100, curve, sensitivity) for i in range(101)]
    for a, b in zip(values, values[1:]):
        assert a >= b - 1e-12
    assert all(0.0 <= v <= 1.0 for v in values)


def test_curve_endpoints_are_continuous():
    # Just inside the endpoints the curves stay close to 1 and 0.
    for curve in CURVES:
        assert apply_curve(1e-9, curve, 1.0) == pytest.approx(1.0, abs=1e-6)
        assert apply_curve(1 - 1e-9, curve, 1.0) == pytest.approx(0.0, abs=1e-6)


def test_proximity_is_zero_beyond_max_distance_and_rejects_unknown_curve():
    assert proximity(1500, 1000, "linear", 1.0) == 0.0
    assert proximity(250, 1000, "linear", 1.0) == pytest.approx(0.75)
    with pytest.raises(ValueError, match="Unknown distance curve"):
        apply_curve(0.5, "cubic", 1.0)


@pytest.mark.parametrize("lam", [0.5, 1.0, 2.0])
def test_aggregate_is_finite_for_mixed_sign_weights(lam):
    rng = random.Random(1234)
    for _ in range(200):
        contributions = []
        for _ in range(rng.randint(1, 8)):
            w = rng.choice([-1, 1]) * rng.uniform(1, 100)
            contributions.append((w, rng.random() * abs(w)))
        k = aggregate(contributions, lam)
        assert isinstance(k, float)
        assert math.isfinite(k)
        assert -100.0 <= k <= 100.0


def test_power_mean_special_cases():
    # Geometric mean at lambda 0.
    assert power_mean([4.0, 16.0], [1.0, 1.0], 0) == pytest.approx(8.0)
    # An all-zero pool contributes nothing, whatever lambda is.
    assert power_mean([0.0, 0.0], [1.0, 2.0], -2) == 0.0
    assert power_mean([], [], 1.0) == 0.0
    # Negative lambda floors zeros instead of dividing by zero.
    assert math.isfinite(power_mean([0.0, 10.0], [1.0, 1.0], -1))
    with pytest.raises(ValueError):
        power_mean([-1.0], [1.0], 1.0)


def test_aggregate_subtracts_avoid_pool():
    assert aggregate([(80, 80.0), (-40, 40.0)], 1.0) == pytest.approx(40.0)
    assert aggregate([(-40, 40.0)], 1.0) == pytest.approx(-40.0)


def test_config_hash_ignores_factor_order_and_inactive_factors():
    a = Factor(id="grocery", weight=80, max_distance=2000)
    b = Factor(id="parks", weight=60, max_distance=1500)
    off = Factor(id="water", weight=50, max_distance=2000, enabled=False)

    h1 = config_hash(ScoringParams(factors=[a, b]))
    h2 = config_hash(ScoringParams(factors=[b, off, a]))
    h3 = config_hash(ScoringParams(factors=[a, b], sensitivity=2.0))

    assert h1 == h2
    assert h1 != h3
    assert len(h1) == 16


def test_normalize_batch_maps_min_and_max_and_constant_batch_to_zero():
    pts = [ScorePoint(lat=0, lng=i, value=v) for i, v in enumerate([-20.0, 10.0, 40.0])]
    out = normalize_batch(pts)
    assert [p.value for p in out] == [0.0, 0.5, 1.0]

    flat = normalize_batch([ScorePoint(lat=0, lng=0, value=7.0), ScorePoint(lat=0, lng=1, value=7.0)])
    assert [p.value for p in flat] == [0.0, 0.0]


def test_engine_scores_near_poi_close_to_weight_and_explains_factors():
    engine = ScoreEngine()
    grocery = Factor(id="grocery", name="Grocery", weight=80, max_distance=1000)
    industry = Factor(id="industrial", weight=-40, max_distance=1500)
    pois = {
        "grocery": [POI(lat=52.2300, lng=21.0100, category="grocery")],
        "industrial": [],
    }
    indexes = engine.build_indexes([grocery, industry], pois)

    at_poi = engine.score_point(52.2300, 21.0100, indexes, curve="linear", sensitivity=1.0, lam=1.0)
    far = engine.score_point(52.2600, 21.0100, indexes, curve="linear", sensitivity=1.0, lam=1.0)
    assert at_poi == pytest.approx(80.0)
    assert far == 0.0

    value, rows = engine.breakdown(52.2300, 21.0100, indexes, curve="linear", sensitivity=1.0, lam=1.0)
    assert value == pytest.approx(80.0)
    assert rows[0].factor_id == "grocery"
    assert rows[0].nearby_count == 1
    assert rows[1].distance_m is None


def test_engine_requires_active_factor():
    engine = ScoreEngine()
    indexes = engine.build_indexes([Factor(id="x", weight=0, max_distance=100)], {})
    assert indexes == []
    with pytest.raises(ValueError):
        engine.score_point(0, 0, indexes, curve="log", sensitivity=1.0, lam=1.0)
