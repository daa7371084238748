"""Progress reporting for the seeding and tracking loops.

Both loops advance one bar from several worker threads, so bars are handed
to the workers wrapped in :class:`SharedProgress`.
"""

from __future__ import annotations

import os
import sys
import threading
from typing import Optional

from tqdm import tqdm


SEED_BAR_FORMAT = "{desc:<9}|{bar:60}| {n_fmt}/{total_fmt} seeds [{elapsed} < {remaining}, {rate_fmt}]"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

_forced: Optional[bool] = None


def set_progress_enabled(enabled: Optional[bool]) -> None:
    """Force progress bars on or off for the rest of the process.

    ``None`` removes the override. The runner turns bars off in quiet mode.
    """
    global _forced
    _forced = enabled


def _env_flag(name: str) -> Optional[bool]:
    value = os.environ.get(name, "").strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return None


def is_progress_enabled(explicit: Optional[bool] = None) -> bool:
    """Resolve the bar switch: argument, then override, then UKFPY_PROGRESS, then TTY."""
    for choice in (explicit, _forced, _env_flag("UKFPY_PROGRESS")):
        if choice is not None:
            return bool(choice)
    try:
        return bool(sys.stderr.isatty())
    except (AttributeError, ValueError):
        return False


def make_progress_bar(*, total: int, desc: str, enabled: Optional[bool] = None) -> tqdm:
    return tqdm(
        total=int(total),
        desc=str(desc),
        ascii=True,
        bar_format=SEED_BAR_FORMAT,
        disable=not is_progress_enabled(enabled),
        mininterval=0.5,
    )


class SharedProgress:
    """A tqdm bar several workers may advance; closed on leaving the ``with`` block."""

    def __init__(self, bar: tqdm) -> None:
        self._bar = bar
        self._lock = threading.Lock()

    def update(self, n: int = 1) -> None:
        with self._lock:
            self._bar.update(n)

    def close(self) -> None:
        self._bar.close()

    def __enter__(self) -> "SharedProgress":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
