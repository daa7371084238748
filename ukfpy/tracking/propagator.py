"""Fiber propagation: filter, reorder, step, check the stop rules, record."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np

from ukfpy.core.logfmt import VERBOSE
from ukfpy.core.utils import curve_radius, normalized
from ukfpy.core.validation import NegativeFreeWaterError
from ukfpy.filter.ukf import UnscentedKalmanFilter
from ukfpy.models import signal_model as sm
from ukfpy.tracking.seeding import SeedPointInfo
from ukfpy.tracking.signal import VolumeSignal


FREE_WATER_TOLERANCE = -1.0e-4
CSF_THRESHOLD = 0.5
MIN_ERROR_REDUCTION = 0.001
MIN_FIBER_SAMPLES = 2


@dataclass
class TrackingSettings:
    """Step geometry, stop thresholds and record flags for one run."""
    step_length: float = 0.3
    record_length: float = 0.9
    max_half_fiber_length: float = 250.0
    min_radius: float = 0.87
    max_nmse: float = 0.15
    max_ukf_iterations: int = 5
    fw_thresh: float = 0.65
    rtop1_min_stop: float = 600.0
    record_nmse: bool = True
    record_rtop: bool = True
    record_weights: bool = True
    record_free_water: bool = True
    record_uncertainties: bool = False
    record_state: bool = False
    record_cov: bool = False

    @property
    def steps_per_record(self) -> int:
        return max(1, int(self.record_length / self.step_length))

    @property
    def max_length(self) -> int:
        return int(math.ceil(self.max_half_fiber_length / self.step_length))


class _Column:
    """Growable per-point array with geometric over-allocation."""

    def __init__(self, width: int, capacity: int = 64) -> None:
        self._data = np.empty((capacity, width), dtype=np.float64)
        self._n = 0

    def append(self, row) -> None:
        if self._n == self._data.shape[0]:
            grown = np.empty((2 * self._data.shape[0], self._data.shape[1]), dtype=np.float64)
            grown[: self._n] = self._data[: self._n]
            self._data = grown
        self._data[self._n] = row
        self._n += 1

    def __len__(self) -> int:
        return self._n

    def tail(self, k: int) -> np.ndarray:
        return self._data[max(0, self._n - k): self._n]

    def values(self) -> np.ndarray:
        out = self._data[: self._n].copy()
        return out[:, 0] if out.shape[1] == 1 else out


@dataclass
class Fiber:
    """Recorded samples of one fiber, plus the discard flag."""
    columns: Dict[str, _Column] = field(default_factory=dict)
    discarded: bool = False

    def append(self, name: str, row) -> None:
        row = np.atleast_1d(np.asarray(row, dtype=np.float64)).ravel()
        col = self.columns.get(name)
        if col is None:
            col = self.columns[name] = _Column(row.shape[0])
        col.append(row)

    def __len__(self) -> int:
        col = self.columns.get('position')
        return 0 if col is None else len(col)

    def tail(self, name: str, k: int) -> np.ndarray:
        """The last ``k`` rows recorded under ``name``."""
        col = self.columns.get(name)
        return np.zeros((0, 3)) if col is None else col.tail(k)

    def as_dict(self) -> Dict[str, np.ndarray]:
        return {name: col.values() for name, col in self.columns.items()}


@dataclass
class _Diagnostics:
    rtop_model: float
    rtop1: float
    rtop2: float
    rtop3: float
    rtop_signal: float
    uncertainties: np.ndarray


class Propagator:
    r"""Follows one fiber per call from a :class:`SeedPointInfo`.

    Each worker thread owns one propagator (and therefore one filter).

    Parameters
    ----------
    source : VolumeSignal
        Signal, mask and CSF lookups.
    ukf : UnscentedKalmanFilter
        The recursive estimator used at every step.
    settings : TrackingSettings
    """

    def __init__(self, source: VolumeSignal, ukf: UnscentedKalmanFilter, settings: TrackingSettings) -> None:
        self.source = source
        self.ukf = ukf
        self.settings = settings
        self._voxel = source.voxel()

    def loop_ukf(self, state: np.ndarray, cov: np.ndarray, signal: np.ndarray):
        """One full filter update, then refinements of the state only.

        The refinement stops once the error reduction between successive
        passes drops below 0.001; the last accepted state is returned with the
        covariance of the first update.
        """
        state, cov, nmse = self.ukf.filter(state, cov, signal)
        er = nmse
        state_prev = state
        for _ in range(int(self.settings.max_ukf_iterations)):
            state, _, nmse = self.ukf.filter(state, cov, signal)
            er_prev, er = er, nmse
            if er_prev - er < MIN_ERROR_REDUCTION:
                break
            state_prev = state
        return state_prev, cov, nmse

    @staticmethod
    def reorder(state: np.ndarray, cov: np.ndarray, old_dir: np.ndarray):
        """Flip orientations toward ``old_dir`` and promote the closest compartment to primary."""
        state = np.array(state, dtype=np.float64, copy=True)
        dots = []
        for idx in sm.ORIENTATION_INDICES:
            m = state[list(idx)]
            if np.dot(m, old_dir) < 0:
                state[list(idx)] = -m
                m = -m
            n = np.linalg.norm(m)
            dots.append(float(np.dot(m, old_dir) / n) if n > 0 else -np.inf)

        dot1, dot2, dot3 = dots
        if dot1 < dot2 and dot3 < dot2:
            state, cov = sm.swap_compartments(state, cov, 2)
        elif dot1 < dot3:
            state, cov = sm.swap_compartments(state, cov, 3)
        return state, cov

    def _diagnostics(self, state: np.ndarray, cov: np.ndarray, signal: np.ndarray) -> _Diagnostics:
        rtop_model, r1, r2, r3 = sm.rtop_from_state(state)
        return _Diagnostics(rtop_model, r1, r2, r3, sm.rtop_from_signal(signal), sm.uncertainties(cov))

    def step(self, x: np.ndarray, old_dir: np.ndarray, state: np.ndarray, cov: np.ndarray):
        """Advance one step; returns ``(x', m1, state', cov', nmse, diagnostics)``."""
        signal = self.source.interp_signal(x)
        state, cov, nmse = self.loop_ukf(state, cov, signal)
        state, cov = self.reorder(state, cov, old_dir)

        m1 = normalized(state[0:3])
        diag = self._diagnostics(state, cov, signal)
        x = x + m1 / self._voxel * self.settings.step_length
        return x, m1, state, cov, nmse, diag

    def record(self, fiber: Fiber, x, state, cov, nmse: float, diag: _Diagnostics) -> None:
        s = self.settings
        free_water = 1.0 - float(state[sm.FREE_WATER_INDEX])
        if free_water < 0.0:
            if free_water < FREE_WATER_TOLERANCE:
                raise NegativeFreeWaterError(free_water, FREE_WATER_TOLERANCE)
            free_water = 0.0

        fiber.append('position', x)
        fiber.append('cov_norm', np.linalg.norm(cov))

        if s.record_nmse:
            fiber.append('nmse', nmse)
        if s.record_rtop:
            fiber.append('rtop_model', diag.rtop_model)
            fiber.append('rtop_signal', diag.rtop_signal)
            fiber.append('rtop1', diag.rtop1)
            fiber.append('rtop2', diag.rtop2)
            fiber.append('rtop3', diag.rtop3)
        if s.record_weights:
            for name, i in zip(('w1', 'w2', 'w3', 'w_iso'), (*sm.WEIGHT_INDICES, sm.FREE_WATER_INDEX)):
                fiber.append(name, state[i])
            m = [state[list(idx)] for idx in sm.ORIENTATION_INDICES]
            fiber.append('angle_12', sm.angle_between(m[0], m[1]))
            fiber.append('angle_13', sm.angle_between(m[0], m[2]))
        if s.record_free_water:
            fiber.append('free_water', free_water)
        if s.record_uncertainties:
            for name, value in zip(sm.UNCERTAINTY_NAMES, diag.uncertainties):
                fiber.append(name, value)
        if s.record_state:
            fiber.append('state', sm.normalize_orientations(state))
        if s.record_cov:
            fiber.append('covariance', cov)

    def _stop_reason(self, fiber: Fiber, x, state, nmse: float, diag: _Diagnostics, stepnr: int) -> Optional[str]:
        s = self.settings
        if self.source.mask_value(x) <= 0:
            return 'mask'
        if self.source.csf_value(x) > CSF_THRESHOLD:
            fiber.discarded = True
            return 'csf'
        if nmse > s.max_nmse:
            return 'nmse'
        if curve_radius(fiber.tail('position', 3)) < s.min_radius:
            return 'curvature'
        if diag.rtop1 < s.rtop1_min_stop:
            return 'rtop1'
        if state[sm.FREE_WATER_INDEX] > s.fw_thresh:
            return 'free_water'
        if stepnr > s.max_length:
            return 'length'
        return None

    def follow(self, seed: SeedPointInfo) -> Fiber:
        """Track one fiber from ``seed`` until a stop condition holds."""
        fiber = Fiber()
        x = np.asarray(seed.point, dtype=np.float64).copy()
        state = np.asarray(seed.state, dtype=np.float64).copy()
        cov = np.asarray(seed.covariance, dtype=np.float64).copy()
        m1 = np.asarray(seed.start_dir, dtype=np.float64).copy()

        diag = _Diagnostics(seed.rtop_model, seed.rtop1, seed.rtop2, seed.rtop3, seed.rtop_signal, sm.uncertainties(cov))
        self.record(fiber, x, state, cov, 0.0, diag)

        steps_per_record = self.settings.steps_per_record
        stepnr = 0
        while True:
            stepnr += 1
            x, m1, state, cov, nmse, diag = self.step(x, m1, state, cov)

            reason = self._stop_reason(fiber, x, state, nmse, diag, stepnr)
            if reason is not None:
                logging.log(VERBOSE, f"Fiber stopped after {stepnr} steps ({reason})")
                break

            if (stepnr + 1) % steps_per_record == 0:
                self.record(fiber, x, state, cov, nmse, diag)

        return fiber

    __call__ = follow


def keep_fiber(fiber: Fiber) -> bool:
    """Fibers flagged discarded or with fewer than two samples are dropped."""
    return (not fiber.discarded) and len(fiber) >= MIN_FIBER_SAMPLES
