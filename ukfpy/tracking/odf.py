"""ODF-based detection of candidate branch directions at seed voxels."""

from __future__ import annotations

import logging
from typing import List, Tuple

import numpy as np
from dipy.core.gradients import gradient_table
from dipy.data import default_sphere
from dipy.direction.peaks import peak_directions
from dipy.reconst.odf import gfa
from dipy.reconst.shm import CsaOdfModel


SHELL_TOLERANCE = 150.0
MAX_SH_ORDER = 6


def _sh_order_for(n_directions: int) -> int:
    """Largest even order <= 6 whose basis size fits the number of directions."""
    order = 0
    for L in range(2, MAX_SH_ORDER + 1, 2):
        if (L + 1) * (L + 2) // 2 <= n_directions:
            order = L
    return order


class BranchDetector:
    r"""Constant-solid-angle ODF peaks on the outermost shell.

    Parameters
    ----------
    gradients : ndarray, shape (N, 3)
        Diffusion-weighted gradient directions (no b0, no antipodal copies).
    b_values : ndarray, shape (N,)
    max_odf_threshold : float
        Relative peak threshold passed to ``peak_directions``.
    min_separation_angle : float
        Peaks closer than this (degrees) are merged.
    max_peaks : int
        At most this many directions are returned per voxel.
    """

    def __init__(
        self,
        gradients: np.ndarray,
        b_values: np.ndarray,
        *,
        max_odf_threshold: float = 0.7,
        min_separation_angle: float = 25.0,
        max_peaks: int = 3,
    ) -> None:
        b_values = np.asarray(b_values, dtype=np.float64)
        gradients = np.asarray(gradients, dtype=np.float64)

        nominal_b = float(b_values.max())
        self.shell = np.abs(b_values - nominal_b) <= SHELL_TOLERANCE
        self.max_odf_threshold = float(max_odf_threshold)
        self.min_separation_angle = float(min_separation_angle)
        self.max_peaks = int(max_peaks)
        self.sphere = default_sphere

        n_dirs = int(np.count_nonzero(self.shell))
        self.sh_order = _sh_order_for(n_dirs)
        self.model = None
        if self.sh_order < 2:
            logging.warning(
                f"Only {n_dirs} directions on the b={nominal_b:g} shell; branch detection is disabled "
                f"and seeds fall back to the single-tensor direction."
            )
            return

        bvals = np.concatenate([[0.0], b_values[self.shell]])
        bvecs = np.vstack([np.zeros((1, 3)), gradients[self.shell]])
        gtab = gradient_table(bvals, bvecs=bvecs)
        self.model = CsaOdfModel(gtab, self.sh_order)
        logging.debug(f"Branch detector: b={nominal_b:g} shell, {n_dirs} directions, SH order {self.sh_order}")

    def _odfs(self, signals: np.ndarray) -> np.ndarray:
        signals = np.atleast_2d(np.asarray(signals, dtype=np.float64))
        data = np.hstack([np.ones((signals.shape[0], 1)), signals[:, self.shell]])
        return np.atleast_2d(self.model.fit(data).odf(self.sphere))

    def gfa(self, signals: np.ndarray) -> np.ndarray:
        """Generalized fractional anisotropy of each row's ODF."""
        signals = np.atleast_2d(signals)
        if self.model is None:
            return np.zeros(signals.shape[0])
        return np.atleast_1d(gfa(self._odfs(signals)))

    def detect(self, signals: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray]]:
        """Return ``(directions (k, 3), values (k,))`` per row, ``0 <= k <= max_peaks``."""
        signals = np.atleast_2d(signals)
        if self.model is None:
            return [(np.zeros((0, 3)), np.zeros(0)) for _ in range(signals.shape[0])]

        out = []
        for odf in self._odfs(signals):
            directions, values, _ = peak_directions(
                odf,
                self.sphere,
                relative_peak_threshold=self.max_odf_threshold,
                min_separation_angle=self.min_separation_angle,
            )
            k = min(self.max_peaks, len(values))
            out.append((np.asarray(directions[:k], dtype=np.float64), np.asarray(values[:k], dtype=np.float64)))
        return out
