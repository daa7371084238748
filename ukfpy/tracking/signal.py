"""Diffusion signal source sampled at continuous voxel positions."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
from scipy import ndimage

from ukfpy.core.validation import DataError


B0_THRESHOLD = 50.0


class VolumeSignal:
    r"""b0-normalized diffusion signal with mask and CSF lookups.

    Positions are continuous voxel indices ``(i, j, k)`` on the DWI grid.
    Every signal vector returned has ``2N`` entries: the ``N`` diffusion
    weighted volumes followed by the same values again for the antipodal
    gradients, matching :attr:`gradients` and :attr:`b_values`.

    Parameters
    ----------
    dwi : ndarray, shape (X, Y, Z, V)
        Raw diffusion data including b0 volumes.
    bvals : ndarray, shape (V,)
    bvecs : ndarray, shape (V, 3)
    mask : ndarray, shape (X, Y, Z)
        Brain mask; values > 0 are inside the brain.
    zooms : sequence of 3 floats
        Voxel spacing in mm.
    csf : ndarray, optional
        CSF partial-volume map on the same grid.
    sigma_signal : float
        Gaussian smoothing sigma in mm applied to the diffusion volumes.
    """

    def __init__(
        self,
        dwi: np.ndarray,
        bvals: np.ndarray,
        bvecs: np.ndarray,
        mask: np.ndarray,
        zooms: Sequence[float],
        *,
        csf: Optional[np.ndarray] = None,
        sigma_signal: float = 0.0,
    ) -> None:
        dwi = np.asarray(dwi, dtype=np.float64)
        bvals = np.asarray(bvals, dtype=np.float64).ravel()
        bvecs = np.asarray(bvecs, dtype=np.float64)

        if dwi.ndim != 4 or dwi.shape[3] != bvals.shape[0]:
            raise DataError(
                f"DWI shape {dwi.shape} does not match {bvals.shape[0]} b-values.\n"
                f"Action: Check that the .bval file belongs to this DWI."
            )

        b0 = bvals < B0_THRESHOLD
        if not np.any(b0):
            raise DataError(
                "No b0 volume found (b < 50 s/mm^2); the signal cannot be normalized.\n"
                "Action: Include at least one non-diffusion-weighted volume."
            )
        if np.all(b0):
            raise DataError("The acquisition contains no diffusion-weighted volumes.")

        self._voxel = np.asarray(zooms, dtype=np.float64)[:3]

        if sigma_signal and sigma_signal > 0:
            sigma_vox = [float(sigma_signal) / z for z in self._voxel] + [0.0]
            dwi = ndimage.gaussian_filter(dwi, sigma=sigma_vox)
            logging.debug(f"Signal smoothed with sigma={sigma_signal} mm")

        b0_mean = dwi[..., b0].mean(axis=3)
        with np.errstate(divide='ignore', invalid='ignore'):
            normalized = np.where(b0_mean[..., None] > 0, dwi[..., ~b0] / b0_mean[..., None], 0.0)

        self._data = np.ascontiguousarray(normalized)
        self._half_gradients = bvecs[~b0]
        self._half_bvals = bvals[~b0]
        self.gradients = np.vstack([self._half_gradients, -self._half_gradients])
        self.b_values = np.concatenate([self._half_bvals, self._half_bvals])

        self.mask = np.asarray(mask)
        if self.mask.shape != dwi.shape[:3]:
            raise DataError(f"Mask shape {self.mask.shape} does not match the DWI grid {dwi.shape[:3]}.")
        self.csf = None if csf is None else np.asarray(csf, dtype=np.float64)

    @property
    def shape(self) -> tuple:
        return tuple(self._data.shape[:3])

    @property
    def n_gradients(self) -> int:
        """Number of diffusion-weighted volumes (half the signal length)."""
        return int(self._half_bvals.shape[0])

    def signal_dimension(self) -> int:
        return 2 * self.n_gradients

    def voxel(self) -> np.ndarray:
        return self._voxel.copy()

    def half_gradients(self) -> np.ndarray:
        return self._half_gradients

    def half_b_values(self) -> np.ndarray:
        return self._half_bvals

    def voxel_signal(self, index: Sequence[int]) -> np.ndarray:
        """Signal of one grid voxel, doubled antipodally."""
        i, j, k = (int(v) for v in index)
        s = self._data[i, j, k]
        return np.concatenate([s, s])

    def interp_signal(self, position: Sequence[float]) -> np.ndarray:
        """Trilinear interpolation of the normalized signal at ``position``."""
        n = self.n_gradients
        coords = np.empty((4, n), dtype=np.float64)
        coords[:3] = np.asarray(position, dtype=np.float64)[:, None]
        coords[3] = np.arange(n)
        s = ndimage.map_coordinates(self._data, coords, order=1, mode='nearest')
        return np.concatenate([s, s])

    def _nearest_index(self, position: Sequence[float]):
        idx = np.rint(np.asarray(position, dtype=np.float64)).astype(int)
        if np.any(idx < 0) or np.any(idx >= np.asarray(self.shape)):
            return None
        return tuple(idx)

    def mask_value(self, position: Sequence[float]) -> float:
        """Nearest-neighbour mask value; 0 outside the volume."""
        idx = self._nearest_index(position)
        if idx is None:
            return 0.0
        return float(self.mask[idx])

    def csf_value(self, position: Sequence[float]) -> float:
        """Trilinear CSF partial volume; 0 outside the volume or without a CSF map."""
        if self.csf is None:
            return 0.0
        coords = np.asarray(position, dtype=np.float64).reshape(3, 1)
        return float(ndimage.map_coordinates(self.csf, coords, order=1, mode='constant', cval=0.0)[0])
