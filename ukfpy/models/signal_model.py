r"""Three-compartment bi-exponential diffusion model with free water.

State layout (25 entries)
-------------------------

=========  ===================================================
indices    meaning
=========  ===================================================
0-2        orientation of compartment 1
3-4        fast diffusivities (parallel, perpendicular), comp. 1
5-6        slow diffusivities (parallel, perpendicular), comp. 1
7-13       compartment 2 (same layout as 0-6)
14-20      compartment 3 (same layout as 0-6)
21-23      compartment weights w1, w2, w3
24         free-water weight w
=========  ===================================================

Diffusivities are stored in units of 1e-6 mm^2/s. For a unit gradient ``u``
and b-value ``b`` the predicted (b0-normalized) signal is

.. math::

    S(u) = (1 - w) \sum_i w_i \left(0.7 e^{-b u^T D_{i,f} u} + 0.3 e^{-b u^T D_{i,s} u}\right)
           + w e^{-b D_{iso}}

with :math:`D = \lambda_\parallel m m^T + \lambda_\perp (I - m m^T)`.
"""

from __future__ import annotations

from typing import Dict, Tuple

import numpy as np


STATE_DIM = 25
N_COMPARTMENTS = 3
COMPARTMENT_STRIDE = 7

# Offsets of the labeled blocks inside one compartment, plus the weight slots.
BLOCK_SCHEMA: Dict[str, Tuple[int, int]] = {
    'orientation': (0, 3),
    'fast': (3, 2),
    'slow': (5, 2),
}
WEIGHT_INDICES = (21, 22, 23)
FREE_WATER_INDEX = 24

ORIENTATION_INDICES = tuple(tuple(range(c * COMPARTMENT_STRIDE, c * COMPARTMENT_STRIDE + 3)) for c in range(N_COMPARTMENTS))
FAST_INDICES = tuple(tuple(range(c * COMPARTMENT_STRIDE + 3, c * COMPARTMENT_STRIDE + 5)) for c in range(N_COMPARTMENTS))
SLOW_INDICES = tuple(tuple(range(c * COMPARTMENT_STRIDE + 5, c * COMPARTMENT_STRIDE + 7)) for c in range(N_COMPARTMENTS))

# Shape parameters refined during seeding (12 diffusivities + free water).
DIFFUSIVITY_INDICES = np.array([3, 4, 5, 6, 10, 11, 12, 13, 17, 18, 19, 20], dtype=np.intp)
SHAPE_INDICES = np.append(DIFFUSIVITY_INDICES, FREE_WATER_INDEX)
WEIGHT_INDEX_ARRAY = np.array(WEIGHT_INDICES, dtype=np.intp)

W_FAST = 0.7
W_SLOW = 1.0 - W_FAST
D_ISO = 0.003                      # mm^2/s
DIFFUSIVITY_SCALE = 1.0e-6         # state units -> mm^2/s

FAST_MIN, SLOW_MIN, DIFFUSIVITY_MAX = 1.0, 0.1, 3000.0
PI_COEFF = np.pi ** 1.5


def _bounds() -> Tuple[np.ndarray, np.ndarray]:
    lo = np.full(STATE_DIM, -np.inf)
    hi = np.full(STATE_DIM, np.inf)
    for idx in FAST_INDICES:
        lo[list(idx)] = FAST_MIN
        hi[list(idx)] = DIFFUSIVITY_MAX
    for idx in SLOW_INDICES:
        lo[list(idx)] = SLOW_MIN
        hi[list(idx)] = DIFFUSIVITY_MAX
    lo[list(WEIGHT_INDICES) + [FREE_WATER_INDEX]] = 0.0
    hi[list(WEIGHT_INDICES) + [FREE_WATER_INDEX]] = 1.0
    return lo, hi


STATE_LOWER, STATE_UPPER = _bounds()

PHASE1_LOWER = STATE_LOWER[SHAPE_INDICES].copy()
PHASE1_UPPER = STATE_UPPER[SHAPE_INDICES].copy()
PHASE2_LOWER = STATE_LOWER[WEIGHT_INDEX_ARRAY].copy()
PHASE2_UPPER = STATE_UPPER[WEIGHT_INDEX_ARRAY].copy()


def clamp_state(state: np.ndarray) -> np.ndarray:
    """Clamp diffusivities and weights to their valid ranges (works on batches)."""
    return np.clip(state, STATE_LOWER, STATE_UPPER)


def normalize_orientations(state: np.ndarray) -> np.ndarray:
    """Return a copy of ``state`` with the three orientation triples at unit length."""
    out = np.array(state, dtype=np.float64, copy=True)
    for idx in ORIENTATION_INDICES:
        block = out[..., list(idx)]
        norm = np.linalg.norm(block, axis=-1, keepdims=True)
        norm = np.where(norm > 0, norm, 1.0)
        out[..., list(idx)] = block / norm
    return out


def predict_signal(states: np.ndarray, gradients: np.ndarray, b_values: np.ndarray) -> np.ndarray:
    """Evaluate the model for one state ``(25,)`` or a batch ``(k, 25)``.

    Returns an array of shape ``(M,)`` or ``(k, M)`` for ``M`` gradients.
    """
    states = np.asarray(states, dtype=np.float64)
    single = states.ndim == 1
    X = np.atleast_2d(states)
    u = np.asarray(gradients, dtype=np.float64)
    b = np.asarray(b_values, dtype=np.float64)

    w = X[:, FREE_WATER_INDEX][:, None]
    signal = np.zeros((X.shape[0], u.shape[0]), dtype=np.float64)

    for c in range(N_COMPARTMENTS):
        m = X[:, list(ORIENTATION_INDICES[c])]
        norm = np.linalg.norm(m, axis=1, keepdims=True)
        m = m / np.where(norm > 0, norm, 1.0)
        cos2 = (m @ u.T) ** 2

        f_par, f_perp = X[:, FAST_INDICES[c][0]][:, None], X[:, FAST_INDICES[c][1]][:, None]
        s_par, s_perp = X[:, SLOW_INDICES[c][0]][:, None], X[:, SLOW_INDICES[c][1]][:, None]

        adc_fast = (f_perp + (f_par - f_perp) * cos2) * DIFFUSIVITY_SCALE
        adc_slow = (s_perp + (s_par - s_perp) * cos2) * DIFFUSIVITY_SCALE

        weight = X[:, WEIGHT_INDICES[c]][:, None]
        signal += weight * (W_FAST * np.exp(-b * adc_fast) + W_SLOW * np.exp(-b * adc_slow))

    signal = (1.0 - w) * signal + w * np.exp(-b * D_ISO)
    return signal[0] if single else signal


def normalized_error(signal: np.ndarray, estimate: np.ndarray) -> np.ndarray:
    """Squared residual over the first half of the signal, normalized by its energy."""
    signal = np.asarray(signal, dtype=np.float64)
    estimate = np.asarray(estimate, dtype=np.float64)
    half = signal.shape[-1] // 2
    s = signal[..., :half]
    return np.sum((s - estimate[..., :half]) ** 2, axis=-1) / np.sum(s ** 2, axis=-1)


def rtop_from_state(state: np.ndarray) -> Tuple[float, float, float, float]:
    r"""Return-to-origin probabilities ``(rtop_model, rtop1, rtop2, rtop3)``.

    Diffusivities and weights are clamped on a private copy first.
    """
    x = clamp_state(np.asarray(state, dtype=np.float64))
    rtops = []
    for c in range(N_COMPARTMENTS):
        det_fast = x[FAST_INDICES[c][0]] * x[FAST_INDICES[c][1]] * DIFFUSIVITY_SCALE ** 2
        det_slow = x[SLOW_INDICES[c][0]] * x[SLOW_INDICES[c][1]] * DIFFUSIVITY_SCALE ** 2
        rtops.append(PI_COEFF * x[WEIGHT_INDICES[c]] * (W_FAST / np.sqrt(det_fast) + W_SLOW / np.sqrt(det_slow)))
    rtop_model = sum(rtops) + PI_COEFF * x[FREE_WATER_INDEX] / np.sqrt(D_ISO ** 3)
    return float(rtop_model), float(rtops[0]), float(rtops[1]), float(rtops[2])


def rtop_from_signal(signal: np.ndarray) -> float:
    signal = np.asarray(signal, dtype=np.float64)
    return float(np.sum(signal[: signal.shape[0] // 2]))


UNCERTAINTY_NAMES = ('Fm1', 'lmd1', 'Fm2', 'lmd2', 'Fm3', 'lmd3', 'varW1', 'varW2', 'varW3', 'varWiso')


def uncertainties(cov: np.ndarray) -> np.ndarray:
    """Frobenius norms of the per-compartment covariance blocks and the weight variances."""
    cov = np.asarray(cov, dtype=np.float64)
    out = []
    for c in range(N_COMPARTMENTS):
        o = c * COMPARTMENT_STRIDE
        out.append(np.linalg.norm(cov[o:o + 3, o:o + 3]))
        out.append(np.linalg.norm(cov[o + 3:o + 7, o + 3:o + 7]))
    out.extend(cov[i, i] for i in (*WEIGHT_INDICES, FREE_WATER_INDEX))
    return np.asarray(out, dtype=np.float64)


def swap_permutation(first: int, second: int) -> np.ndarray:
    """Index permutation exchanging two compartments (0-based) block by block.

    Every labeled block of the schema (orientation, fast and slow
    diffusivities) and the compartment weight trade places; the free-water
    weight is untouched. The permutation is its own inverse.
    """
    perm = np.arange(STATE_DIM)
    if first == second:
        return perm
    for offset, length in BLOCK_SCHEMA.values():
        a = first * COMPARTMENT_STRIDE + offset
        b = second * COMPARTMENT_STRIDE + offset
        perm[a:a + length], perm[b:b + length] = np.arange(b, b + length), np.arange(a, a + length)
    perm[WEIGHT_INDICES[first]], perm[WEIGHT_INDICES[second]] = WEIGHT_INDICES[second], WEIGHT_INDICES[first]
    return perm


def swap_compartments(state: np.ndarray, cov: np.ndarray, compartment: int) -> Tuple[np.ndarray, np.ndarray]:
    """Make ``compartment`` (1-based, 2 or 3) the primary one.

    Applies ``P x`` to the state and ``P C P^T`` to the covariance, so
    cross-covariances between compartments follow their blocks.
    """
    if compartment not in (2, 3):
        raise ValueError(f"Only compartments 2 and 3 can be swapped with the primary, got {compartment}")
    perm = swap_permutation(0, compartment - 1)
    state = np.asarray(state, dtype=np.float64)[perm]
    if cov is not None:
        cov = np.asarray(cov, dtype=np.float64)[np.ix_(perm, perm)]
    return state, cov


def angle_between(a: np.ndarray, b: np.ndarray) -> float:
    """Smallest angle in degrees between two axes (sign-insensitive)."""
    na, nb = np.linalg.norm(a), np.linalg.norm(b)
    if na == 0 or nb == 0:
        return 0.0
    cosang = abs(float(np.dot(a, b)) / (na * nb))
    return float(np.degrees(np.arccos(min(1.0, cosang))))
