"""Batched single-tensor fit used to initialize seed states.

The signal handed to the tracker is already b0-normalized, so the log-linear
model has no S0 column:

    log S_j = -b_j g_j^T D g_j
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import torch

from ukfpy.core.utils import MIN_POSITIVE_SIGNAL


def _robust_sym_eigh_3x3_batched(
    matrices: torch.Tensor,
    *,
    base_jitter: float = 1e-12,
    max_jitter: float = 1e-4,
    min_eigval: float = 1e-10,
):
    """Robust symmetric eigendecomposition for batched 3x3 matrices.

    Tries a single batched ``torch.linalg.eigh`` first; on failure each matrix
    is retried with escalating diagonal jitter, then with NumPy, and finally
    replaced by a scaled identity.

    Args:
        matrices: (N, 3, 3) batch of symmetric matrices
        base_jitter: Initial diagonal regularization
        max_jitter: Maximum diagonal regularization
        min_eigval: Eigenvalue used for non-finite inputs
    """
    if matrices.ndim != 3 or matrices.shape[-2:] != (3, 3):
        raise ValueError(f"Expected (N,3,3) tensor, got {tuple(matrices.shape)}")

    matrices64 = (0.5 * (matrices + matrices.transpose(-1, -2))).double()

    try:
        return torch.linalg.eigh(matrices64)
    except RuntimeError:
        logging.debug(f"Batched eigh failed for {matrices64.shape[0]:,} tensors; retrying per tensor.")

    n = matrices64.shape[0]
    evals = torch.empty((n, 3), dtype=torch.float64)
    evecs = torch.empty((n, 3, 3), dtype=torch.float64)
    eye = torch.eye(3, dtype=torch.float64)

    jitters = [base_jitter, 1e-10, 1e-8, 1e-6, 1e-5, max_jitter]
    for i in range(n):
        m = matrices64[i]

        if not torch.isfinite(m).all():
            evals[i] = float(min_eigval) * torch.ones(3, dtype=torch.float64)
            evecs[i] = eye
            continue

        # Jitter is relative to the tensor magnitude (diffusivities are ~1e-3).
        scale = max(float(torch.linalg.norm(m, ord="fro").item()), 1e-6)

        for j in jitters:
            try:
                w, v = torch.linalg.eigh(m + (j * scale) * eye)
            except RuntimeError:
                continue
            evals[i], evecs[i] = w, v
            break
        else:
            try:
                w_np, v_np = np.linalg.eigh(m.numpy())
                evals[i] = torch.from_numpy(w_np)
                evecs[i] = torch.from_numpy(v_np)
            except np.linalg.LinAlgError:
                evals[i] = float(min_eigval) * torch.ones(3, dtype=torch.float64)
                evecs[i] = eye

    return evals, evecs


def design_matrix(gradients: np.ndarray, b_values: np.ndarray) -> torch.Tensor:
    """B-matrix with rows ``-b [gx^2, 2gxgy, 2gxgz, gy^2, 2gygz, gz^2]``."""
    g = torch.as_tensor(np.asarray(gradients), dtype=torch.float64)
    b = torch.as_tensor(np.asarray(b_values), dtype=torch.float64)
    B = torch.stack(
        [
            g[:, 0] ** 2,
            2.0 * g[:, 0] * g[:, 1],
            2.0 * g[:, 0] * g[:, 2],
            g[:, 1] ** 2,
            2.0 * g[:, 1] * g[:, 2],
            g[:, 2] ** 2,
        ],
        dim=1,
    )
    return -b[:, None] * B


def ols_fit(A: torch.Tensor, Y: torch.Tensor) -> torch.Tensor:
    r"""
    Implements batch parallelized x = (A^{T}A)^{-1}A^{T} log(Y) via least squares.

    Non-positive samples are replaced by 1e-7 before taking the logarithm.
    """
    Y = torch.where(Y > 0, Y, torch.full_like(Y, 1e-7))

    if torch.any(torch.isnan(A)) or torch.any(torch.isinf(A)):
        raise ValueError("Design matrix A contains NaN or Inf values")
    if torch.any(torch.isnan(Y)) or torch.any(torch.isinf(Y)):
        raise ValueError("Signal Y contains NaN or Inf values")

    A64 = A.double()
    rhs = torch.log(Y.double()).T  # (n_meas, n_voxels)
    sol = torch.linalg.lstsq(A64, rhs).solution
    return sol.T


def _elements_to_tensors(x: torch.Tensor) -> torch.Tensor:
    dxx, dxy, dxz, dyy, dyz, dzz = x.unbind(dim=1)
    row0 = torch.stack([dxx, dxy, dxz], dim=1)
    row1 = torch.stack([dxy, dyy, dyz], dim=1)
    row2 = torch.stack([dxz, dyz, dzz], dim=1)
    return torch.stack([row0, row1, row2], dim=1)


@dataclass
class TensorFit:
    """Eigen-decomposed single-tensor fits for a batch of seeds.

    ``evals`` are sorted descending and expressed in state units (1e-6 mm^2/s);
    ``evecs[:, :, 0]`` is the principal direction.
    """
    evals: np.ndarray
    evecs: np.ndarray

    @property
    def principal_direction(self) -> np.ndarray:
        return self.evecs[:, :, 0]

    @property
    def fa(self) -> np.ndarray:
        ev = self.evals
        num = np.sqrt((ev[:, 0] - ev[:, 1]) ** 2 + (ev[:, 1] - ev[:, 2]) ** 2 + (ev[:, 2] - ev[:, 0]) ** 2)
        den = np.linalg.norm(ev, axis=1)
        return np.sqrt(0.5) * num / np.where(den > 0, den, 1.0)


def fit_tensors(signals: np.ndarray, gradients: np.ndarray, b_values: np.ndarray) -> TensorFit:
    """Fit one diffusion tensor per row of ``signals`` (normalized, first half only)."""
    signals = np.atleast_2d(np.asarray(signals, dtype=np.float64))
    A = design_matrix(gradients, b_values)
    Y = torch.from_numpy(signals)

    elements = ols_fit(A, Y)
    evals, evecs = _robust_sym_eigh_3x3_batched(_elements_to_tensors(elements))

    # eigh returns ascending order; flip to descending.
    evals = torch.flip(evals, dims=[1]).numpy() * 1e6
    evecs = torch.flip(evecs, dims=[2]).numpy()
    evals = np.clip(evals, MIN_POSITIVE_SIGNAL, None)
    return TensorFit(evals=evals, evecs=evecs)
