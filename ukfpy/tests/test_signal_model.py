from __future__ import annotations

import numpy as np
import pytest

from ukfpy.models import signal_model as sm
from ukfpy.tests.phantoms import single_shell, tensor_signal, tensor_state


def _random_state(seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    x = rng.uniform(0.1, 1.0, size=sm.STATE_DIM)
    for idx in (*sm.FAST_INDICES, *sm.SLOW_INDICES):
        x[list(idx)] = rng.uniform(100.0, 2000.0, size=2)
    return x


def test_state_layout() -> None:
    assert sm.STATE_DIM == 25
    assert sm.ORIENTATION_INDICES == ((0, 1, 2), (7, 8, 9), (14, 15, 16))
    assert sm.FAST_INDICES[1] == (10, 11)
    assert sm.SLOW_INDICES[2] == (19, 20)
    assert len(sm.SHAPE_INDICES) == 13
    assert sm.SHAPE_INDICES[-1] == sm.FREE_WATER_INDEX


def test_clamp_state_limits() -> None:
    x = np.zeros(sm.STATE_DIM)
    x[3], x[5], x[21], x[24] = 0.0, 0.0, 1.5, -0.2
    x[0] = -7.0
    out = sm.clamp_state(x)
    assert out[3] == 1.0
    assert out[5] == pytest.approx(0.1)
    assert out[21] == 1.0
    assert out[24] == 0.0
    assert out[0] == -7.0


def test_predict_signal_matches_single_tensor() -> None:
    bvals, bvecs = single_shell(20, n_b0=0)
    state = tensor_state((0.0, 1.0, 0.0))
    expected = tensor_signal(bvals, bvecs, (0.0, 1.0, 0.0))
    np.testing.assert_allclose(sm.predict_signal(state, bvecs, bvals), expected, rtol=1e-12)


def test_predict_signal_pure_free_water() -> None:
    bvals, bvecs = single_shell(10, n_b0=0)
    state = tensor_state(w_iso=1.0)
    np.testing.assert_allclose(sm.predict_signal(state, bvecs, bvals), np.exp(-bvals * sm.D_ISO))


def test_predict_signal_batches() -> None:
    bvals, bvecs = single_shell(12, n_b0=0)
    states = np.stack([_random_state(s) for s in range(4)])
    batch = sm.predict_signal(states, bvecs, bvals)
    assert batch.shape == (4, 12)
    np.testing.assert_allclose(batch[2], sm.predict_signal(states[2], bvecs, bvals))


def test_normalized_error_uses_first_half() -> None:
    s = np.array([1.0, 2.0, 1.0, 2.0])
    est = np.array([1.0, 1.0, 100.0, 100.0])
    assert sm.normalized_error(s, est) == pytest.approx(1.0 / 5.0)
    assert sm.normalized_error(s, s) == 0.0


def test_rtop_closed_form() -> None:
    x = tensor_state(l_par=1000.0, l_perp=250.0, w_iso=0.2)
    x[list(sm.WEIGHT_INDICES)] = (0.5, 0.3, 0.2)
    rtop_model, r1, r2, r3 = sm.rtop_from_state(x)

    det = 1000.0 * 250.0 * 1e-12
    per_unit = np.pi ** 1.5 * (0.7 / np.sqrt(det) + 0.3 / np.sqrt(det))
    assert r1 == pytest.approx(0.5 * per_unit)
    assert r2 == pytest.approx(0.3 * per_unit)
    assert r3 == pytest.approx(0.2 * per_unit)
    assert rtop_model == pytest.approx(r1 + r2 + r3 + np.pi ** 1.5 * 0.2 / np.sqrt(0.003 ** 3))


def test_rtop_clamps_a_private_copy() -> None:
    x = tensor_state()
    x[3] = -5.0
    before = x.copy()
    _, r1, _, _ = sm.rtop_from_state(x)
    assert np.isfinite(r1)
    np.testing.assert_array_equal(x, before)


def test_rtop_from_signal_sums_first_half() -> None:
    assert sm.rtop_from_signal(np.array([0.5, 0.25, 9.0, 9.0])) == pytest.approx(0.75)


def test_swap_twice_is_identity() -> None:
    x = _random_state(1)
    rng = np.random.default_rng(2)
    a = rng.normal(size=(sm.STATE_DIM, sm.STATE_DIM))
    cov = a @ a.T
    for c in (2, 3):
        x1, cov1 = sm.swap_compartments(x, cov, c)
        x2, cov2 = sm.swap_compartments(x1, cov1, c)
        np.testing.assert_array_equal(x2, x)
        np.testing.assert_array_equal(cov2, cov)


def test_swap_moves_blocks_and_cross_covariance() -> None:
    x = np.arange(sm.STATE_DIM, dtype=np.float64)
    cov = np.outer(x + 1.0, x + 1.0)
    y, cy = sm.swap_compartments(x, cov, 3)

    np.testing.assert_array_equal(y[0:7], x[14:21])
    np.testing.assert_array_equal(y[14:21], x[0:7])
    np.testing.assert_array_equal(y[7:14], x[7:14])
    assert (y[21], y[23]) == (x[23], x[21])
    assert y[22] == x[22]
    assert y[24] == x[24]

    # Cross-covariance between the new primary block and the free water follows the block.
    np.testing.assert_array_equal(cy[0:7, 24], cov[14:21, 24])
    np.testing.assert_array_equal(cy[21, 21], cov[23, 23])
    np.testing.assert_allclose(cy, cy.T)


def test_swap_rejects_primary() -> None:
    with pytest.raises(ValueError):
        sm.swap_compartments(np.zeros(sm.STATE_DIM), None, 1)


def test_uncertainties_of_diagonal_covariance() -> None:
    cov = 0.01 * np.eye(sm.STATE_DIM)
    u = sm.uncertainties(cov)
    assert u.shape == (len(sm.UNCERTAINTY_NAMES),)
    assert u[0] == pytest.approx(0.01 * np.sqrt(3))
    assert u[1] == pytest.approx(0.01 * np.sqrt(4))
    np.testing.assert_allclose(u[6:], 0.01)


def test_normalize_orientations_does_not_touch_input() -> None:
    x = tensor_state()
    x[0:3] *= 4.0
    out = sm.normalize_orientations(x)
    assert np.linalg.norm(out[0:3]) == pytest.approx(1.0)
    assert np.linalg.norm(x[0:3]) == pytest.approx(4.0)


def test_angle_between_is_axial() -> None:
    assert sm.angle_between(np.array([1.0, 0, 0]), np.array([-1.0, 0, 0])) == pytest.approx(0.0)
    assert sm.angle_between(np.array([1.0, 0, 0]), np.array([0, 2.0, 0])) == pytest.approx(90.0)
