"""Seed generation: candidate points, single-tensor fit, branch detection and
the two-phase bounded refinement of the initial model state."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from ukfpy.core.logfmt import DETAIL
from ukfpy.core.progress import SharedProgress, make_progress_bar
from ukfpy.core.validation import SeedError
from ukfpy.models import signal_model as sm
from ukfpy.models.tensor import fit_tensors
from ukfpy.optim.lbfgsb import LBFGSB
from ukfpy.tracking.odf import BranchDetector
from ukfpy.tracking.signal import VolumeSignal


FD_EPS = 2.2204e-16
INITIAL_FREE_WATER = 0.05
SLOW_FRACTION = 0.7
OFFSET_RADIUS = 0.5
DETECTION_CHUNK = 10000


@dataclass(frozen=True)
class SeedPointInfo:
    """Initial position, direction, diagnostics and model state of one fiber."""
    point: np.ndarray
    start_dir: np.ndarray
    rtop1: float
    rtop2: float
    rtop3: float
    rtop_model: float
    rtop_signal: float
    state: np.ndarray
    covariance: np.ndarray


class FitPhase:
    r"""Reconstruction-error objective over a subset of the state.

    Parameters outside ``indices`` stay fixed at their values in ``state``.
    Calling the phase with the free parameters returns the normalized error
    and its one-sided finite-difference gradient, with step
    :math:`h = \sqrt{\epsilon} x` (or :math:`\sqrt{\epsilon}` when :math:`x = 0`).
    """

    def __init__(self, state, indices, signal, gradients, b_values) -> None:
        self.state = np.array(state, dtype=np.float64, copy=True)
        self.indices = np.asarray(indices, dtype=np.intp)
        self.signal = np.asarray(signal, dtype=np.float64)
        self.gradients = gradients
        self.b_values = b_values

    def expand(self, x: np.ndarray) -> np.ndarray:
        full = self.state.copy()
        full[self.indices] = x
        return full

    def value(self, x: np.ndarray) -> float:
        estimate = sm.predict_signal(self.expand(x), self.gradients, self.b_values)
        return float(sm.normalized_error(self.signal, estimate))

    def __call__(self, x: np.ndarray):
        x = np.asarray(x, dtype=np.float64)
        h = np.sqrt(FD_EPS) * x
        h[h == 0] = np.sqrt(FD_EPS)
        dx = (x + h) - x

        batch = np.repeat(self.state[None, :], x.shape[0] + 1, axis=0)
        batch[:, self.indices] = x
        k = np.arange(x.shape[0])
        batch[k + 1, self.indices[k]] += dx

        errors = sm.normalized_error(self.signal, sm.predict_signal(batch, self.gradients, self.b_values))
        return float(errors[0]), (errors[1:] - errors[0]) / dx

    def solve(self, lower, upper, **solver_kwargs) -> np.ndarray:
        """Refine the free parameters within ``[lower, upper]`` and return the full state."""
        solver = LBFGSB(lower, upper, **solver_kwargs)
        x = solver.solve(self.state[self.indices], self)
        return self.expand(x)


def _frame_from_directions(directions: np.ndarray, values: np.ndarray):
    """Three orientations and compartment weights from 1-3 detected peaks."""
    n_dirs = len(values)
    dirs = [np.asarray(d, dtype=np.float64) / np.linalg.norm(d) for d in directions]

    if n_dirs == 1:
        d = dirs[0]
        orth = np.array([-d[1], d[0], 0.0])
        if np.linalg.norm(orth) < 1e-12:
            orth = np.array([0.0, -d[2], d[1]])
        orth /= np.linalg.norm(orth)
        third = np.cross(d, orth)
        third /= np.linalg.norm(third)
        return [d, orth, third], np.array([1.0, 0.0, 0.0])

    if n_dirs == 2:
        third = np.cross(dirs[0], dirs[1])
        third /= np.linalg.norm(third)
        w = np.array([values[0], values[1], 0.0], dtype=np.float64)
        return [dirs[0], dirs[1], third], w / w.sum()

    w = np.asarray(values[:3], dtype=np.float64)
    return dirs[:3], w / w.sum()


def coarse_state(tensor_evals: np.ndarray, directions: Sequence[np.ndarray], weights: np.ndarray) -> np.ndarray:
    """Initial state from the tensor eigenvalues, the orientations and the weights."""
    l_par = float(tensor_evals[0])
    l_perp = 0.5 * float(tensor_evals[1] + tensor_evals[2])

    state = np.zeros(sm.STATE_DIM, dtype=np.float64)
    for c in range(sm.N_COMPARTMENTS):
        state[list(sm.ORIENTATION_INDICES[c])] = directions[c]
        state[list(sm.FAST_INDICES[c])] = (l_par, l_perp)
        state[list(sm.SLOW_INDICES[c])] = (SLOW_FRACTION * l_par, SLOW_FRACTION * l_perp)
    state[list(sm.WEIGHT_INDICES)] = weights
    state[sm.FREE_WATER_INDEX] = INITIAL_FREE_WATER
    return sm.clamp_state(state)


def _seed_pair(point, state, cov, rtop_signal) -> List[SeedPointInfo]:
    rtop_model, rtop1, rtop2, rtop3 = sm.rtop_from_state(state)
    twin = state.copy()
    twin[list(sm.ORIENTATION_INDICES[0])] *= -1.0
    common = dict(rtop1=rtop1, rtop2=rtop2, rtop3=rtop3, rtop_model=rtop_model, rtop_signal=rtop_signal)
    return [
        SeedPointInfo(point=point.copy(), start_dir=state[0:3].copy(), state=state, covariance=cov.copy(), **common),
        SeedPointInfo(point=point.copy(), start_dir=twin[0:3].copy(), state=twin, covariance=cov.copy(), **common),
    ]


def initialize_seed(
    point: np.ndarray,
    signal: np.ndarray,
    tensor_evals: np.ndarray,
    tensor_dir: np.ndarray,
    directions: np.ndarray,
    values: np.ndarray,
    *,
    gradients: np.ndarray,
    b_values: np.ndarray,
    p0: float = 0.01,
    solver_kwargs: Optional[dict] = None,
) -> List[SeedPointInfo]:
    """Build the seed records for one starting point.

    Returns 2, 4 or 6 records: the refined state and its reversed twin, then
    (for two or three detected branches) the same pair with compartment 2 and
    then compartment 3 promoted to primary.
    """
    solver_kwargs = solver_kwargs or {}
    point = np.asarray(point, dtype=np.float64)
    n_dirs = len(values)
    if n_dirs == 0:
        directions, values = np.asarray(tensor_dir)[None, :], np.ones(1)

    frame, weights = _frame_from_directions(directions, values)
    state = coarse_state(tensor_evals, frame, weights)

    state = FitPhase(state, sm.SHAPE_INDICES, signal, gradients, b_values).solve(
        sm.PHASE1_LOWER, sm.PHASE1_UPPER, **solver_kwargs
    )
    state = FitPhase(state, sm.WEIGHT_INDEX_ARRAY, signal, gradients, b_values).solve(
        sm.PHASE2_LOWER, sm.PHASE2_UPPER, **solver_kwargs
    )

    cov = float(p0) * np.eye(sm.STATE_DIM)
    rtop_signal = sm.rtop_from_signal(signal)

    infos = _seed_pair(point, state, cov, rtop_signal)
    if n_dirs > 1:
        state, cov = sm.swap_compartments(state, cov, 2)
        infos += _seed_pair(point, state, cov, rtop_signal)
        if n_dirs > 2:
            state, cov = sm.swap_compartments(state, cov, 3)
            infos += _seed_pair(point, state, cov, rtop_signal)
    return infos


def seed_offsets(seeds_per_voxel: float, rng: np.random.Generator) -> np.ndarray:
    """Random offsets of length 0.5 voxel, or a single zero offset."""
    if seeds_per_voxel <= 1.0:
        return np.zeros((1, 3))
    n = int(np.ceil(seeds_per_voxel))
    dirs = rng.integers(-5000, 5001, size=(n, 3)).astype(np.float64)
    norms = np.linalg.norm(dirs, axis=1, keepdims=True)
    dirs = dirs / np.where(norms > 0, norms, 1.0)
    return dirs * OFFSET_RADIUS


def candidate_points(seed_voxels: np.ndarray, seeds_per_voxel: float, rng: np.random.Generator) -> np.ndarray:
    """Seed voxels plus offsets, decimated to every n-th point when ``seeds_per_voxel < 1``."""
    offsets = seed_offsets(seeds_per_voxel, rng)
    every_n = int(1.0 / seeds_per_voxel) if seeds_per_voxel < 1.0 else 1
    points = (np.asarray(seed_voxels, dtype=np.float64)[:, None, :] + offsets[None, :, :]).reshape(-1, 3)
    counter = np.arange(1, points.shape[0] + 1)
    return points[counter % every_n == 0]


def generate_seeds(
    source: VolumeSignal,
    seed_voxels: np.ndarray,
    *,
    seeds_per_voxel: float = 1.0,
    rng: Optional[np.random.Generator] = None,
    seeding_threshold: float = 0.18,
    max_odf_threshold: float = 0.7,
    from_seed_file: bool = False,
    p0: float = 0.01,
    num_threads: int = 1,
    solver_kwargs: Optional[dict] = None,
) -> List[SeedPointInfo]:
    """Turn seed voxels into fully initialized seed records.

    Raises ``SeedError`` when no candidate survives the signal checks.
    """
    if seed_voxels is None or len(seed_voxels) == 0:
        raise SeedError(
            "No seed voxels found.\n"
            "Action: Verify the seeds file and [INPUT] labels, or the brain mask for whole-brain seeding."
        )
    rng = rng if rng is not None else np.random.default_rng(0)

    points = candidate_points(seed_voxels, seeds_per_voxel, rng)
    n_half = source.n_gradients
    signals = np.array([source.interp_signal(p) for p in points]) if len(points) else np.zeros((0, 2 * n_half))

    half = signals[:, :n_half]
    negative = np.any(half < 0, axis=1)
    invalid = ~np.all(np.isfinite(half), axis=1)
    keep = ~(negative | invalid)
    if np.any(~keep):
        logging.log(
            DETAIL,
            f"Rejected {int(np.count_nonzero(negative))} seeds with negative signal and "
            f"{int(np.count_nonzero(invalid & ~negative))} with invalid signal",
        )
    points, signals, half = points[keep], signals[keep], half[keep]

    if points.shape[0] == 0:
        raise SeedError(
            "No usable seed points remain after rejecting negative or non-finite signals.\n"
            "Action: Check the DWI normalization and the seed region."
        )

    gradients_half, bvals_half = source.half_gradients(), source.half_b_values()
    tensors = fit_tensors(half, gradients_half, bvals_half)
    logging.log(DETAIL, f"Seed tensor FA: median {float(np.median(tensors.fa)):.3f}")

    detector = BranchDetector(gradients_half, bvals_half, max_odf_threshold=max_odf_threshold)
    peaks: List = [(np.zeros((0, 3)), np.zeros(0))] * points.shape[0]
    for start in range(0, points.shape[0], DETECTION_CHUNK):
        stop = min(start + DETECTION_CHUNK, points.shape[0])
        chunk = half[start:stop]
        run = np.ones(stop - start, dtype=bool) if from_seed_file else detector.gfa(chunk) > seeding_threshold
        if np.any(run):
            found = detector.detect(chunk[run])
            for local, result in zip(np.flatnonzero(run), found):
                peaks[start + local] = result

    n_branching = sum(1 for _, v in peaks if len(v) > 1)
    logging.info(f"Initializing {points.shape[0]:,} seed points ({n_branching:,} with crossing fibers)")

    gradients, b_values = source.gradients, source.b_values

    def _init(i: int) -> List[SeedPointInfo]:
        return initialize_seed(
            points[i],
            signals[i],
            tensors.evals[i],
            tensors.principal_direction[i],
            peaks[i][0],
            peaks[i][1],
            gradients=gradients,
            b_values=b_values,
            p0=p0,
            solver_kwargs=solver_kwargs,
        )

    results: List[List[SeedPointInfo]] = [[] for _ in range(points.shape[0])]
    n_workers = max(1, min(int(num_threads), points.shape[0]))
    with SharedProgress(make_progress_bar(total=points.shape[0], desc='Seeding')) as bar:
        def _work(indices: Sequence[int]) -> None:
            for i in indices:
                results[i] = _init(i)
                bar.update(1)

        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            futures = [pool.submit(_work, range(w, points.shape[0], n_workers)) for w in range(n_workers)]
            for f in futures:
                f.result()

    seeds = [info for group in results for info in group]
    logging.info(f"Created {len(seeds):,} seed records")
    return seeds
