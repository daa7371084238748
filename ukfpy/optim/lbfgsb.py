r"""Box-constrained limited-memory BFGS.

The bounds are removed by the logit reparameterization

.. math::

    y = \log(x - l + \epsilon) - \log(u - x + \epsilon)

so the quasi-Newton search runs in an unconstrained space and every iterate
maps back strictly inside ``[l, u]``. Step lengths are chosen by a
More-Thuente line search enforcing the strong Wolfe conditions.

References
----------
..[1] J. J. More and D. J. Thuente, "Line search algorithms with guaranteed sufficient decrease",
      ACM Transactions on Mathematical Software 20(3), 1994.
..[2] J. Nocedal and S. J. Wright, "Numerical Optimization", 2nd ed., Springer, 2006.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Tuple

import numpy as np
from scipy.special import expit

from ukfpy.core.validation import BoundsError


EPS = 2.2204e-16

# Logit magnitude past which a coordinate counts as sitting on its bound.
SATURATED = 20.0
# Where a coordinate stranded on the wrong bound is restarted.
BACK_OFF = 5.0

Objective = Callable[[np.ndarray], Tuple[float, np.ndarray]]


@dataclass
class _Interval:
    """Interval of uncertainty tracked by the line search."""
    st_best: np.float64
    f_best: np.float64
    d_best: np.float64
    st_other: np.float64
    f_other: np.float64
    d_other: np.float64
    step: np.float64
    bracket: bool = False


def _sup_norm(a, b, c):
    return max(abs(a), abs(b), abs(c))


def _update_interval(iv: _Interval, f_step, d_step, step_min, step_max) -> int:
    """One More-Thuente update of the interval and the trial step.

    Returns the case (1-4) that was applied. ``iv.step`` holds the next trial step.
    """
    bound = False
    step = iv.step
    st_best, f_best, d_best = iv.st_best, iv.f_best, iv.d_best
    st_other, f_other, d_other = iv.st_other, iv.f_other, iv.d_other
    sgnd = d_step * np.copysign(1.0, d_best)

    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        if f_step > f_best:
            # Higher function value: the minimum is bracketed.
            info = 1
            bound = True
            theta = 3.0 * (f_best - f_step) / (step - st_best) + d_best + d_step
            s = _sup_norm(theta, d_best, d_step)
            gamma = s * np.sqrt(max(0.0, (theta / s) ** 2 - (d_best / s) * (d_step / s)))
            if step < st_best:
                gamma = -gamma
            p = (gamma - d_best) + theta
            q = ((gamma - d_best) + gamma) + d_step
            r = p / q
            step_c = st_best + r * (step - st_best)
            step_q = st_best + ((d_best / ((f_best - f_step) / (step - st_best) + d_best)) / 2.0) * (step - st_best)
            if abs(step_c - st_best) < abs(step_q - st_best):
                step_f = step_c
            else:
                step_f = step_c + (step_q - step_c) / 2.0
            iv.bracket = True

        elif sgnd < 0.0:
            # Derivatives of opposite sign: the minimum is bracketed.
            info = 2
            theta = 3.0 * (f_best - f_step) / (step - st_best) + d_best + d_step
            s = _sup_norm(theta, d_best, d_step)
            gamma = s * np.sqrt(max(0.0, (theta / s) ** 2 - (d_best / s) * (d_step / s)))
            if step > st_best:
                gamma = -gamma
            p = (gamma - d_step) + theta
            q = ((gamma - d_step) + gamma) + d_best
            r = p / q
            step_c = step + r * (st_best - step)
            step_q = step + (d_step / (d_step - d_best)) * (st_best - step)
            step_f = step_c if abs(step_c - step) > abs(step_q - step) else step_q
            iv.bracket = True

        elif abs(d_step) < abs(d_best):
            # Same sign, decreasing magnitude.
            info = 3
            bound = True
            theta = 3.0 * (f_best - f_step) / (step - st_best) + d_best + d_step
            s = _sup_norm(theta, d_best, d_step)
            gamma = s * np.sqrt(max(0.0, (theta / s) ** 2 - (d_best / s) * (d_step / s)))
            if step > st_best:
                gamma = -gamma
            p = (gamma - d_step) + theta
            q = (gamma + (d_best - d_step)) + gamma
            r = p / q
            if r < 0.0 and gamma != 0.0:
                step_c = step + r * (st_best - step)
            elif step > st_best:
                step_c = step_max
            else:
                step_c = step_min
            step_q = step + (d_step / (d_step - d_best)) * (st_best - step)
            if iv.bracket:
                step_f = step_c if abs(step - step_c) < abs(step - step_q) else step_q
            else:
                step_f = step_c if abs(step - step_c) > abs(step - step_q) else step_q

        else:
            # Same sign, non-decreasing magnitude.
            info = 4
            if iv.bracket:
                theta = 3.0 * (f_step - f_other) / (st_other - step) + d_other + d_step
                s = _sup_norm(theta, d_other, d_step)
                gamma = s * np.sqrt(max(0.0, (theta / s) ** 2 - (d_other / s) * (d_step / s)))
                if step > st_other:
                    gamma = -gamma
                p = (gamma - d_step) + theta
                q = ((gamma - d_step) + gamma) + d_other
                r = p / q
                step_f = step + r * (st_other - step)
            elif step > st_best:
                step_f = step_max
            else:
                step_f = step_min

    if f_step > f_best:
        iv.st_other, iv.f_other, iv.d_other = step, f_step, d_step
    else:
        if sgnd < 0.0:
            iv.st_other, iv.f_other, iv.d_other = st_best, f_best, d_best
        iv.st_best, iv.f_best, iv.d_best = step, f_step, d_step

    step_f = max(step_min, min(step_max, step_f))
    iv.step = np.float64(step_f)

    if iv.bracket and bound:
        if iv.st_other > iv.st_best:
            iv.step = min(iv.st_best + 0.66 * (iv.st_other - iv.st_best), iv.step)
        else:
            iv.step = max(iv.st_best + 0.66 * (iv.st_other - iv.st_best), iv.step)

    return info


class LBFGSB:
    r"""Limited-memory BFGS minimizer over the box ``[lower, upper]``.

    Parameters
    ----------
    lower, upper : array_like
        Box bounds of equal length.
    m : int
        Number of curvature pairs kept for the two-loop recursion.
    tol : float
        Stop when the gradient norm or the step norm falls to this value.
    max_iter : int
        Maximum number of quasi-Newton iterations.
    max_logit_step : float
        Largest move of any single coordinate per iteration, in the
        reparameterized space.

    Coordinates that start on a bound stay there: the reparameterized
    gradient vanishes on the bounds. A coordinate that reaches a bound during
    the search while its gradient still points into the box is moved back to
    ``+-BACK_OFF`` once, so vanishing gradients there are not taken as
    convergence.
    """

    def __init__(
        self,
        lower,
        upper,
        *,
        m: int = 10,
        tol: float = 1e-12,
        max_iter: int = 2000,
        wolfe1: float = 1e-4,
        wolfe2: float = 0.9,
        max_line_search_iter: int = 100,
        step_max: float = 10.0,
        x_tol: float = 1e-4,
        extra_delta: float = 4.0,
        max_logit_step: float = 5.0,
    ) -> None:
        self.lower = np.asarray(lower, dtype=np.float64).ravel()
        self.upper = np.asarray(upper, dtype=np.float64).ravel()
        if self.lower.shape != self.upper.shape:
            raise BoundsError(
                f"Lower and upper bounds differ in size: {self.lower.shape[0]} vs {self.upper.shape[0]}"
            )
        if np.any(self.lower >= self.upper):
            raise BoundsError("Every lower bound must be strictly below its upper bound.")
        self.m = int(m)
        self.tol = float(tol)
        self.max_iter = int(max_iter)
        self.wolfe1 = float(wolfe1)
        self.wolfe2 = float(wolfe2)
        self.max_line_search_iter = int(max_line_search_iter)
        self.step_min = 0.0
        self.step_max = float(step_max)
        self.x_tol = float(x_tol)
        self.extra_delta = float(extra_delta)
        self.max_logit_step = float(max_logit_step)
        self.n_iter = 0

    # ------------------------------------------------------------------ #
    # Reparameterization
    # ------------------------------------------------------------------ #

    def transform(self, x: np.ndarray) -> np.ndarray:
        """Map bounded parameters to the unconstrained search space."""
        x = np.asarray(x, dtype=np.float64)
        return np.log(x - self.lower + EPS) - np.log(self.upper - x + EPS)

    def inv_transform(self, y: np.ndarray) -> np.ndarray:
        """Map unconstrained parameters back into ``[lower + EPS, upper - EPS]``."""
        y = np.asarray(y, dtype=np.float64)
        out = (self.lower + EPS) * expit(-y) + (self.upper - EPS) * expit(y)
        nan = np.isnan(y)
        if np.any(nan):
            out[nan] = 0.5 * (self.lower[nan] + self.upper[nan])
        return out

    def jacobian(self, y: np.ndarray) -> np.ndarray:
        """Derivative of ``inv_transform`` with respect to ``y``."""
        y = np.asarray(y, dtype=np.float64)
        return expit(y) * expit(-y) * (self.upper - self.lower)

    def _evaluate(self, y: np.ndarray, objective: Objective) -> Tuple[np.float64, np.ndarray]:
        value, grad = objective(self.inv_transform(y))
        grad = np.asarray(grad, dtype=np.float64).ravel() * self.jacobian(y)
        return np.float64(value), grad

    # ------------------------------------------------------------------ #
    # Search direction and step length
    # ------------------------------------------------------------------ #

    @staticmethod
    def _two_loop(g: np.ndarray, history: Deque[Tuple[np.ndarray, np.ndarray]]) -> np.ndarray:
        """Approximate ``H g`` from the stored (s, y) pairs, newest first."""
        q = g.copy()
        alpha = np.empty(len(history))
        rho = np.empty(len(history))
        for i, (s, y) in enumerate(history):
            rho[i] = 1.0 / y.dot(s)
            alpha[i] = rho[i] * s.dot(q)
            q -= alpha[i] * y

        s0, y0 = history[0]
        r = q * (s0.dot(y0) / y0.dot(y0))

        for i in range(len(history) - 1, -1, -1):
            s, y = history[i]
            beta = rho[i] * y.dot(r)
            r += (alpha[i] - beta) * s
        return r

    def _line_search(
        self,
        x0: np.ndarray,
        f_init: np.float64,
        g_init: np.ndarray,
        direction: np.ndarray,
        objective: Objective,
        step0: float = 1.0,
    ) -> Tuple[np.ndarray, np.float64, np.ndarray]:
        """Strong-Wolfe line search along ``direction`` starting from ``x0``.

        The trial step starts at ``step0`` and never moves a coordinate by
        more than ``max_logit_step``.
        """
        dgrad_init = np.float64(g_init.dot(direction))
        if dgrad_init >= 0:
            # Not a descent direction; stay put so the driver terminates.
            return x0, f_init, g_init

        step_min = self.step_min
        step_max = min(self.step_max, self.max_logit_step / np.max(np.abs(direction)))
        dgrad_test = self.wolfe1 * dgrad_init
        width = step_max - step_min
        width_old = 2.0 * width
        stage_1 = True
        infoc = 1

        iv = _Interval(
            st_best=np.float64(0.0), f_best=f_init, d_best=dgrad_init,
            st_other=np.float64(0.0), f_other=f_init, d_other=dgrad_init,
            step=np.float64(min(step0, step_max)),
        )

        it = 0
        while True:
            it += 1

            if iv.bracket:
                st_min = min(iv.st_best, iv.st_other)
                st_max = max(iv.st_best, iv.st_other)
            else:
                st_min = iv.st_best
                st_max = iv.step + self.extra_delta * (iv.step - iv.st_best)

            iv.step = np.float64(min(max(iv.step, step_min), step_max))

            if ((iv.bracket and (iv.step <= st_min or iv.step >= st_max))
                    or it >= self.max_line_search_iter - 1
                    or infoc == 0
                    or (iv.bracket and st_max - st_min <= self.x_tol * st_max)):
                iv.step = iv.st_best

            x = x0 + iv.step * direction
            f_step, g = self._evaluate(x, objective)
            dgrad = np.float64(g.dot(direction))
            armijo = f_init + iv.step * dgrad_test

            info = 0
            if (iv.bracket and (iv.step <= st_min or iv.step >= st_max)) or infoc == 0:
                info = 6
            if iv.step == step_max and f_step <= armijo and dgrad <= dgrad_test:
                info = 5
            if iv.step == step_min and (f_step > armijo or dgrad >= dgrad_test):
                info = 4
            if it >= self.max_line_search_iter:
                info = 3
            if iv.bracket and st_max - st_min <= self.x_tol * st_max:
                info = 2
            if f_step <= armijo and abs(dgrad) <= self.wolfe2 * (-dgrad_init):
                info = 1

            if info != 0:
                return x, f_step, g

            if stage_1 and f_step <= armijo and dgrad >= min(self.wolfe1, self.wolfe2) * dgrad_init:
                stage_1 = False

            if stage_1 and f_step <= iv.f_best and f_step > armijo:
                # Work on the modified function psi(a) = f(a) - f(0) - c1 a f'(0).
                iv.f_best -= iv.st_best * dgrad_test
                iv.f_other -= iv.st_other * dgrad_test
                iv.d_best -= dgrad_test
                iv.d_other -= dgrad_test
                infoc = _update_interval(
                    iv, f_step - iv.step * dgrad_test, dgrad - dgrad_test, st_min, st_max
                )
                iv.f_best += iv.st_best * dgrad_test
                iv.f_other += iv.st_other * dgrad_test
                iv.d_best += dgrad_test
                iv.d_other += dgrad_test
            else:
                infoc = _update_interval(iv, f_step, dgrad, st_min, st_max)

            if iv.bracket:
                if abs(iv.st_other - iv.st_best) >= 0.66 * width_old:
                    iv.step = iv.st_best + 0.5 * (iv.st_other - iv.st_best)
                width_old = width
                width = abs(iv.st_other - iv.st_best)

    @staticmethod
    def _stranded(y: np.ndarray, g: np.ndarray) -> np.ndarray:
        """Coordinates on a bound whose gradient still points into the box."""
        return ((y >= SATURATED) & (g > 0)) | ((y <= -SATURATED) & (g < 0))

    # ------------------------------------------------------------------ #
    # Driver
    # ------------------------------------------------------------------ #

    def solve(self, x0, objective: Objective) -> np.ndarray:
        """Minimize ``objective`` starting from ``x0``.

        ``objective(x)`` receives a point inside the box and returns
        ``(value, gradient)`` with the gradient taken in the bounded space.
        The returned point lies inside ``[lower, upper]``.
        """
        x0 = np.asarray(x0, dtype=np.float64).ravel()
        if x0.shape != self.lower.shape:
            raise BoundsError(
                f"Initial point has {x0.shape[0]} entries but the bounds have {self.lower.shape[0]}."
            )
        x0 = np.clip(x0, self.lower, self.upper)
        self.n_iter = 0

        x = self.transform(x0)
        f, g = self._evaluate(x, objective)
        if not np.all(np.isfinite(g)):
            logging.warning("L-BFGS-B: non-finite gradient at the initial point; returning it unchanged.")
            return x0
        if np.linalg.norm(g) <= self.tol:
            return x0

        settled = np.abs(x) >= SATURATED
        history: Deque[Tuple[np.ndarray, np.ndarray]] = deque(maxlen=self.m)
        direction = -g

        while self.n_iter < self.max_iter:
            self.n_iter += 1

            # Without curvature pairs the direction is the raw gradient; scale the first trial by its norm.
            step0 = 1.0 if history else min(1.0, 1.0 / np.linalg.norm(g))
            x_new, f_new, g_new = self._line_search(x, f, g, direction, objective, step0)

            if not (np.all(np.isfinite(g_new)) and np.all(np.isfinite(x_new))):
                logging.warning(
                    f"L-BFGS-B: non-finite gradient at iteration {self.n_iter}; reverting to the last finite iterate."
                )
                break

            s = x_new - x
            y = g_new - g
            x, f, g = x_new, f_new, g_new

            stranded = self._stranded(x, g) & ~settled
            if np.any(stranded):
                settled |= stranded
                x_back = x.copy()
                x_back[stranded] = np.copysign(BACK_OFF, x[stranded])
                f_back, g_back = self._evaluate(x_back, objective)
                if not np.all(np.isfinite(g_back)):
                    logging.warning(
                        f"L-BFGS-B: non-finite gradient at iteration {self.n_iter}; reverting to the last finite iterate."
                    )
                    break
                x, f, g = x_back, f_back, g_back
                history.clear()
                direction = -g
                continue

            if np.linalg.norm(g) <= self.tol or np.linalg.norm(s) <= self.tol:
                break

            if y.dot(s) > 0:
                history.appendleft((s, y))

            direction = -self._two_loop(g, history) if history else -g

        return np.clip(self.inv_transform(x), self.lower, self.upper)


def solve(x0, lower, upper, objective: Objective, **kwargs) -> np.ndarray:
    """Functional entry point: ``LBFGSB(lower, upper, **kwargs).solve(x0, objective)``."""
    x0 = np.asarray(x0, dtype=np.float64).ravel()
    lower = np.asarray(lower, dtype=np.float64).ravel()
    upper = np.asarray(upper, dtype=np.float64).ravel()
    if not (x0.shape == lower.shape == upper.shape):
        raise BoundsError(
            "Initial point and bounds must have the same length.\n"
            f"x0: {x0.shape[0]}, lower: {lower.shape[0]}, upper: {upper.shape[0]}"
        )
    return LBFGSB(lower, upper, **kwargs).solve(x0, objective)
