from __future__ import annotations

import math
from typing import List, Sequence

import numpy as np


MIN_POSITIVE_SIGNAL = 1.0e-6


def partition(num_workers: int, num_items: int) -> List[List[int]]:
    r"""Strided round-robin assignment of item indices to workers.

    Worker ``i`` receives ``[i, i + T, i + 2T, ...]`` for ``T = num_workers``.
    The lists are disjoint, cover ``range(num_items)`` exactly once and their
    lengths differ by at most one.

    Parameters
    ----------
    num_workers : int
        Number of worker lists to build (>= 1).
    num_items : int
        Number of independent items (>= 0).
    """
    num_workers = int(num_workers)
    num_items = int(num_items)
    if num_workers < 1:
        raise ValueError(f"num_workers must be >= 1, got {num_workers}")
    if num_items < 0:
        raise ValueError(f"num_items must be >= 0, got {num_items}")
    return [list(range(worker, num_items, num_workers)) for worker in range(num_workers)]


def curve_radius(positions: Sequence[np.ndarray]) -> float:
    """Radius of curvature estimated from the last three recorded positions.

    Returns 1.0 when fewer than three positions are available and 0.0 when the
    estimate is degenerate (NaN).
    """
    if len(positions) < 3:
        return 1.0

    p0 = np.asarray(positions[-3], dtype=np.float64)
    p1 = np.asarray(positions[-2], dtype=np.float64)
    p2 = np.asarray(positions[-1], dtype=np.float64)

    v1 = p1 - p0
    v2 = p2 - p1
    n1 = float(np.linalg.norm(v1))
    n2 = float(np.linalg.norm(v2))

    with np.errstate(divide='ignore', invalid='ignore'):
        v1 = v1 / n1
        v2 = v2 / n2
        curv = float(np.linalg.norm((v2 - v1) / (n1 + n2)))

    if math.isnan(curv):
        return 0.0
    if curv == 0.0:
        return math.inf
    return 1.0 / curv


def normalized(v: np.ndarray) -> np.ndarray:
    n = float(np.linalg.norm(v))
    if n == 0.0:
        return np.asarray(v, dtype=np.float64).copy()
    return np.asarray(v, dtype=np.float64) / n


def sanitize_run_tag(raw: str | None) -> str | None:
    """Keep run tags filesystem-friendly (alphanumerics, '-' and '_')."""
    if raw is None or str(raw).strip() == '':
        return None
    tag = ''.join((c if (c.isalnum() or c in {'-', '_'}) else '_') for c in str(raw).strip()).strip('_')
    return tag or None
