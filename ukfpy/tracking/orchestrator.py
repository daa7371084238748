"""Parallel fiber tracking over a fixed pool of worker threads."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

import psutil

from ukfpy.core.logfmt import STATUS
from ukfpy.core.progress import SharedProgress, make_progress_bar
from ukfpy.core.utils import partition
from ukfpy.filter.ukf import FilterModel, UnscentedKalmanFilter
from ukfpy.tracking.propagator import Fiber, Propagator, TrackingSettings, keep_fiber
from ukfpy.tracking.seeding import SeedPointInfo
from ukfpy.tracking.signal import VolumeSignal


def resolve_num_threads(requested: Optional[int], num_seeds: int) -> int:
    """Worker count: the requested number (or the CPU count), never more than the seeds."""
    n = int(requested) if requested else int(psutil.cpu_count(logical=True) or 1)
    return max(1, min(n, int(num_seeds)))


def track_fibers(
    source: VolumeSignal,
    seeds: Sequence[SeedPointInfo],
    model: FilterModel,
    settings: TrackingSettings,
    *,
    num_threads: Optional[int] = None,
) -> List[Fiber]:
    """Follow every seed and return the kept fibers in seed order.

    Worker ``i`` follows the seeds ``i, i + T, i + 2T, ...`` with its own
    filter and writes into its own output slots. An exception raised in any
    worker propagates to the caller once the pool has shut down.
    """
    n_seeds = len(seeds)
    if n_seeds == 0:
        return []

    n_workers = resolve_num_threads(num_threads, n_seeds)
    assignments = partition(n_workers, n_seeds)
    fibers: List[Optional[Fiber]] = [None] * n_seeds
    logging.info(f"Tracking {n_seeds:,} seeds on {n_workers} thread(s)")

    with SharedProgress(make_progress_bar(total=n_seeds, desc='Tracking')) as bar:
        def _work(indices: List[int]) -> None:
            propagator = Propagator(source, UnscentedKalmanFilter(model), settings)
            for i in indices:
                fibers[i] = propagator.follow(seeds[i])
                bar.update(1)

        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            futures = [pool.submit(_work, indices) for indices in assignments]
            for f in futures:
                f.result()

    kept = [f for f in fibers if f is not None and keep_fiber(f)]
    n_discarded = sum(1 for f in fibers if f is not None and f.discarded)
    logging.log(STATUS, f"Kept {len(kept):,} of {n_seeds:,} fibers ({n_discarded:,} discarded in CSF)")
    return kept
