r"""Unscented Kalman Filter over the 25-parameter diffusion state.

The process model is the identity followed by the physical clamps of the
state; the measurement model is :func:`ukfpy.models.signal_model.predict_signal`.

References
----------
..[1] S. J. Julier and J. K. Uhlmann, "Unscented filtering and nonlinear estimation",
      Proceedings of the IEEE 92(3), 2004.
..[2] J. G. Malcolm, M. E. Shenton and Y. Rathi, "Filtered multitensor tractography",
      IEEE Transactions on Medical Imaging 29(9), 2010.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Tuple

import numpy as np
import scipy.linalg

from ukfpy.models import signal_model as sm


@dataclass
class FilterModel:
    """Noise settings and acquisition geometry shared by every filter instance.

    ``gradients`` and ``b_values`` cover the full (antipodally doubled) signal.
    """
    gradients: np.ndarray
    b_values: np.ndarray
    qm: float = 0.001
    ql: float = 10.0
    qw: float = 0.0015
    qwiso: float = 0.0015
    rs: float = 0.015
    kappa: float = 0.01
    Q: np.ndarray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.gradients = np.asarray(self.gradients, dtype=np.float64)
        self.b_values = np.asarray(self.b_values, dtype=np.float64)
        q = np.empty(sm.STATE_DIM)
        for idx in sm.ORIENTATION_INDICES:
            q[list(idx)] = self.qm
        for idx in (*sm.FAST_INDICES, *sm.SLOW_INDICES):
            q[list(idx)] = self.ql
        q[list(sm.WEIGHT_INDICES)] = self.qw
        q[sm.FREE_WATER_INDEX] = self.qwiso
        self.Q = np.diag(q)

    @property
    def signal_dim(self) -> int:
        return int(self.b_values.shape[0])

    def F(self, states: np.ndarray) -> np.ndarray:
        return sm.clamp_state(states)

    def H(self, states: np.ndarray) -> np.ndarray:
        return sm.predict_signal(states, self.gradients, self.b_values)


def _matrix_sqrt(P: np.ndarray) -> np.ndarray:
    """Lower Cholesky factor of ``P`` with escalating diagonal jitter."""
    P = 0.5 * (P + P.T)
    scale = max(float(np.max(np.abs(np.diag(P)))), 1.0)
    eye = np.eye(P.shape[0])
    for jitter in (0.0, 1e-12, 1e-10, 1e-8, 1e-6):
        try:
            return np.linalg.cholesky(P + (jitter * scale) * eye)
        except np.linalg.LinAlgError:
            continue
    # Indefinite beyond repair by jitter: clip the spectrum.
    w, v = np.linalg.eigh(P)
    logging.debug("UKF: covariance not positive definite; clipping negative eigenvalues.")
    return v @ np.diag(np.sqrt(np.clip(w, 0.0, None)))


class UnscentedKalmanFilter:
    """One filter per tracking thread; holds only scratch state."""

    def __init__(self, model: FilterModel) -> None:
        self.model = model
        n = sm.STATE_DIM
        kappa = float(model.kappa)
        self._scale = np.sqrt(n + kappa)
        self._weights = np.full(2 * n + 1, 1.0 / (2.0 * (n + kappa)))
        self._weights[0] = kappa / (n + kappa)
        self._R = float(model.rs) * np.eye(model.signal_dim)

    def sigma_points(self, x: np.ndarray, P: np.ndarray) -> np.ndarray:
        """``2n + 1`` sigma points as rows."""
        S = self._scale * _matrix_sqrt(P)
        return np.vstack([x, x + S.T, x - S.T])

    def filter(self, state: np.ndarray, cov: np.ndarray, signal: np.ndarray) -> Tuple[np.ndarray, np.ndarray, float]:
        """One predict/update cycle.

        Returns ``(state', cov', nmse)`` where ``nmse`` is the normalized
        reconstruction error of the updated state against ``signal``.
        """
        w = self._weights
        x = np.asarray(state, dtype=np.float64)
        P = np.asarray(cov, dtype=np.float64)
        z = np.asarray(signal, dtype=np.float64)

        # Predict.
        X = self.model.F(self.sigma_points(x, P))
        x_pred = w @ X
        dX = X - x_pred
        P_pred = (dX.T * w) @ dX + self.model.Q

        # Update.
        Y = self.model.H(X)
        y_pred = w @ Y
        dY = Y - y_pred
        Pyy = (dY.T * w) @ dY + self._R
        Pxy = (dX.T * w) @ dY

        K = scipy.linalg.solve(Pyy, Pxy.T, assume_a='pos').T
        x_new = x_pred + K @ (z - y_pred)
        P_new = P_pred - K @ Pyy @ K.T
        P_new = 0.5 * (P_new + P_new.T)

        nmse = float(sm.normalized_error(z, self.model.H(x_new)))
        return x_new, P_new, nmse

    __call__ = filter
