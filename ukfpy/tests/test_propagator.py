from __future__ import annotations

import numpy as np
import pytest

from ukfpy.core.validation import NegativeFreeWaterError, OptimizationError
from ukfpy.filter.ukf import FilterModel, UnscentedKalmanFilter
from ukfpy.models import signal_model as sm
from ukfpy.tracking.propagator import Fiber, Propagator, TrackingSettings, _Diagnostics, keep_fiber
from ukfpy.tracking.seeding import SeedPointInfo
from ukfpy.tracking.signal import VolumeSignal
from ukfpy.tests.phantoms import tensor_state, tensor_volume


def _source(mask_value: float = 1.0, csf=None, shape=(12, 5, 5)) -> VolumeSignal:
    dwi, bvals, bvecs = tensor_volume(shape)
    mask = np.full(shape, mask_value)
    return VolumeSignal(dwi, bvals, bvecs, mask, (1.0, 1.0, 1.0), csf=csf)


def _propagator(source: VolumeSignal, **overrides) -> Propagator:
    params = dict(step_length=0.5, record_length=0.5, rtop1_min_stop=0.0, max_nmse=1.0, fw_thresh=0.9)
    params.update(overrides)
    model = FilterModel(source.gradients, source.b_values)
    return Propagator(source, UnscentedKalmanFilter(model), TrackingSettings(**params))


def _seed(point=(2.0, 2.0, 2.0), direction=(1.0, 0.0, 0.0)) -> SeedPointInfo:
    state = tensor_state(direction)
    rtop_model, r1, r2, r3 = sm.rtop_from_state(state)
    return SeedPointInfo(
        point=np.asarray(point, dtype=np.float64),
        start_dir=state[0:3].copy(),
        rtop1=r1, rtop2=r2, rtop3=r3, rtop_model=rtop_model, rtop_signal=1.0,
        state=state,
        covariance=0.01 * np.eye(sm.STATE_DIM),
    )


def _diag() -> _Diagnostics:
    return _Diagnostics(1.0, 1.0, 0.0, 0.0, 1.0, np.zeros(len(sm.UNCERTAINTY_NAMES)))


def test_settings_derived_counts() -> None:
    s = TrackingSettings(step_length=0.3, record_length=0.9, max_half_fiber_length=250.0)
    assert s.steps_per_record == 3
    assert s.max_length == 834
    assert TrackingSettings(step_length=1.0, record_length=0.5).steps_per_record == 1


def test_fiber_outside_mask_has_single_sample() -> None:
    fiber = _propagator(_source(mask_value=0.0)).follow(_seed())
    assert len(fiber) == 1
    assert not fiber.discarded
    assert not keep_fiber(fiber)


def test_straight_bundle_is_followed_along_x() -> None:
    fiber = _propagator(_source()).follow(_seed())
    positions = fiber.as_dict()['position']

    assert len(fiber) >= 3
    assert keep_fiber(fiber)
    assert positions[-1, 0] > 8.0
    np.testing.assert_allclose(positions[:, 1:], 2.0, atol=0.5)
    assert np.all(np.diff(positions[:, 0]) > 0)


def test_fiber_length_limit() -> None:
    fiber = _propagator(_source(), max_half_fiber_length=1.0, min_radius=0.0).follow(_seed())
    # Seed sample plus steps 1 and 2; step 3 exceeds the two-step limit.
    assert len(fiber) == 3


def test_csf_discards_fiber() -> None:
    fiber = _propagator(_source(csf=np.ones((12, 5, 5)))).follow(_seed())
    assert fiber.discarded
    assert not keep_fiber(fiber)


def test_reorder_promotes_closest_compartment() -> None:
    state = np.zeros(sm.STATE_DIM)
    state[0:3] = (0.0, 1.0, 0.0)
    state[7:10] = (-1.0, 0.0, 0.0)
    state[14:17] = (0.0, 0.0, 1.0)
    state[21:24] = (0.5, 0.3, 0.2)
    cov = np.eye(sm.STATE_DIM)

    out, out_cov = Propagator.reorder(state, cov, np.array([1.0, 0.0, 0.0]))
    np.testing.assert_allclose(out[0:3], [1.0, 0.0, 0.0])
    np.testing.assert_allclose(out[7:10], [0.0, 1.0, 0.0])
    assert (out[21], out[22]) == (0.3, 0.5)
    np.testing.assert_array_equal(out_cov, cov)


def test_reorder_third_compartment_and_flip() -> None:
    state = np.zeros(sm.STATE_DIM)
    state[0:3] = (0.0, 1.0, 0.0)
    state[7:10] = (0.0, 0.0, 1.0)
    state[14:17] = (-0.9, 0.1, 0.0)
    out, _ = Propagator.reorder(state, None, np.array([1.0, 0.0, 0.0]))
    np.testing.assert_allclose(out[0:3], [0.9, -0.1, 0.0])
    np.testing.assert_allclose(out[14:17], [0.0, 1.0, 0.0])


def test_reorder_keeps_aligned_primary() -> None:
    state = tensor_state((-1.0, 0.0, 0.0))
    out, _ = Propagator.reorder(state, None, np.array([1.0, 0.0, 0.0]))
    np.testing.assert_allclose(out[0:3], [1.0, 0.0, 0.0])
    np.testing.assert_array_equal(out[3:7], state[3:7])


def test_negative_free_water_raises() -> None:
    prop = _propagator(_source())
    state = tensor_state()
    state[sm.FREE_WATER_INDEX] = 1.01
    with pytest.raises(NegativeFreeWaterError) as err:
        prop.record(Fiber(), np.zeros(3), state, np.eye(sm.STATE_DIM), 0.0, _diag())
    assert isinstance(err.value, OptimizationError)
    assert err.value.value == pytest.approx(-0.01)


def test_slightly_negative_free_water_is_clamped() -> None:
    prop = _propagator(_source())
    state = tensor_state()
    state[sm.FREE_WATER_INDEX] = 1.00005
    fiber = Fiber()
    prop.record(fiber, np.zeros(3), state, np.eye(sm.STATE_DIM), 0.0, _diag())
    assert fiber.as_dict()['free_water'][0] == 0.0


def test_record_flags_select_columns() -> None:
    prop = _propagator(_source(), record_rtop=False, record_state=True, record_cov=True, record_uncertainties=True)
    fiber = Fiber()
    for _ in range(2):
        prop.record(fiber, np.zeros(3), tensor_state(), np.eye(sm.STATE_DIM), 0.1, _diag())
    data = fiber.as_dict()

    assert 'rtop1' not in data
    assert data['state'].shape == (2, sm.STATE_DIM)
    assert data['covariance'].shape == (2, sm.STATE_DIM ** 2)
    assert set(sm.UNCERTAINTY_NAMES) <= set(data)
    np.testing.assert_allclose(data['nmse'], [0.1, 0.1])
    assert data['position'].shape == (2, 3)


def test_fiber_columns_grow() -> None:
    fiber = Fiber()
    for i in range(200):
        fiber.append('position', [i, 0, 0])
    assert len(fiber) == 200
    np.testing.assert_array_equal(fiber.tail('position', 2)[:, 0], [198, 199])
