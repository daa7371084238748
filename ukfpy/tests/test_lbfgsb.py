from __future__ import annotations

import logging

import numpy as np
import pytest

from ukfpy.core.validation import BoundsError
from ukfpy.optim.lbfgsb import LBFGSB, solve


def _quadratic(center):
    center = np.asarray(center, dtype=np.float64)

    def objective(x):
        r = x - center
        return float(r @ r), 2.0 * r

    return objective


def test_interior_minimum_is_found() -> None:
    lower, upper = -5.0 * np.ones(3), 5.0 * np.ones(3)
    c = np.array([1.0, -2.0, 0.5])
    x = solve(np.zeros(3), lower, upper, _quadratic(c))
    np.testing.assert_allclose(x, c, atol=1e-5)


def test_minimum_outside_box_lands_near_the_bound() -> None:
    lower, upper = -5.0 * np.ones(2), 5.0 * np.ones(2)
    x = solve(np.zeros(2), lower, upper, _quadratic([7.0, 0.0]))
    assert x[0] <= 5.0
    assert x[0] == pytest.approx(5.0, abs=0.05)
    assert x[1] == pytest.approx(0.0, abs=1e-3)


def test_result_always_inside_bounds() -> None:
    rng = np.random.default_rng(3)
    lower = np.array([0.0, 1.0, -1.0, 0.1])
    upper = np.array([1.0, 3000.0, 1.0, 2.0])
    for _ in range(5):
        c = rng.uniform(-10, 10, size=4)
        x0 = rng.uniform(lower, upper)
        x = solve(x0, lower, upper, _quadratic(c))
        assert np.all(x >= lower) and np.all(x <= upper)


def test_starting_point_outside_box_is_clipped() -> None:
    solver = LBFGSB(np.zeros(2), np.ones(2))
    x = solver.solve(np.array([-3.0, 4.0]), _quadratic([0.25, 0.75]))
    assert np.all(x >= 0.0) and np.all(x <= 1.0)


def test_transform_round_trip_inside_box() -> None:
    solver = LBFGSB(np.array([1.0, 0.1]), np.array([3000.0, 3000.0]))
    x = np.array([1700.0, 0.5])
    np.testing.assert_allclose(solver.inv_transform(solver.transform(x)), x, rtol=1e-10)


def test_nan_maps_to_midpoint() -> None:
    solver = LBFGSB(np.array([0.0, 2.0]), np.array([1.0, 4.0]))
    out = solver.inv_transform(np.array([np.nan, 0.0]))
    np.testing.assert_allclose(out, [0.5, 3.0])


def test_mismatched_bounds_raise() -> None:
    with pytest.raises(BoundsError):
        LBFGSB(np.zeros(3), np.ones(2))


def test_mismatched_start_raises() -> None:
    with pytest.raises(BoundsError):
        solve(np.zeros(2), np.zeros(3), np.ones(3), _quadratic(np.zeros(3)))

    with pytest.raises(ValueError):
        LBFGSB(np.zeros(3), np.ones(3)).solve(np.zeros(4), _quadratic(np.zeros(3)))


def test_non_finite_gradient_returns_start(caplog) -> None:
    def objective(x):
        return 0.0, np.full_like(x, np.nan)

    x0 = np.array([0.2, 0.4])
    with caplog.at_level(logging.WARNING):
        x = solve(x0, np.zeros(2), np.ones(2), objective)
    np.testing.assert_allclose(x, x0)
    assert any("non-finite" in r.getMessage() for r in caplog.records)


def _scaled_quadratic(weights, center):
    weights = np.asarray(weights, dtype=np.float64)
    center = np.asarray(center, dtype=np.float64)

    def objective(x):
        r = x - center
        return float(weights @ (r * r)), 2.0 * weights * r

    return objective


def test_steep_quadratic_from_near_the_bound() -> None:
    x = solve(np.array([-4.9]), np.array([-5.0]), np.array([5.0]), _scaled_quadratic([50.0], [1.0]))
    assert abs(x[0] - 1.0) < 1e-6


def test_badly_scaled_quadratics_reach_interior_minimum() -> None:
    rng = np.random.default_rng(11)
    lower, upper = -5.0 * np.ones(6), 5.0 * np.ones(6)
    for _ in range(20):
        weights = rng.uniform(1.0, 100.0, size=6)
        c = rng.uniform(-4.5, 4.5, size=6)
        x0 = rng.uniform(-5.0, 5.0, size=6)
        solver = LBFGSB(lower, upper)
        x = solver.solve(x0, _scaled_quadratic(weights, c))
        assert np.max(np.abs(x - c)) < 1e-6


def test_start_close_to_the_opposite_bound() -> None:
    lower, upper = -5.0 * np.ones(3), 5.0 * np.ones(3)
    c = np.array([3.0, -3.5, 0.2])
    x0 = np.array([-5.0 + 1e-3, 5.0 - 1e-3, -5.0 + 1e-3])
    x = solve(x0, lower, upper, _scaled_quadratic([80.0, 2.0, 35.0], c))
    np.testing.assert_allclose(x, c, atol=1e-6)


def test_coordinate_started_on_a_bound_stays_there() -> None:
    x = solve(np.array([0.0, 0.5]), np.zeros(2), np.ones(2), _quadratic([0.5, 0.25]))
    assert x[0] == pytest.approx(0.0, abs=1e-12)
    assert x[1] == pytest.approx(0.25, abs=1e-6)


@pytest.mark.parametrize(
    "lower, upper",
    [(0.0, 1.0), (1.0, 3000.0), (0.1, 3000.0), (-5.0, 5.0)],
)
def test_transform_is_finite_on_the_bounds(lower, upper) -> None:
    solver = LBFGSB(np.array([lower]), np.array([upper]))
    for x in (lower, upper):
        y = solver.transform(np.array([x]))
        assert np.all(np.isfinite(y))
        back = solver.inv_transform(y)
        assert np.all(np.isfinite(back))
        assert lower <= back[0] <= upper
        assert np.all(np.isfinite(solver.jacobian(y)))
    assert solver.transform(np.array([lower]))[0] < 0 < solver.transform(np.array([upper]))[0]
