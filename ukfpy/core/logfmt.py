from __future__ import annotations

import logging
from typing import Optional


# Output modes map onto these levels:
# STATUS: run milestones, still shown in quiet mode
# DETAIL: per-stage counts and checks (verbose)
# VERBOSE: per-fiber events (debug output only)
STATUS = 25
DETAIL = 15
VERBOSE = 12

_MODE_LEVELS = {
    'quiet': STATUS,
    'standard': logging.INFO,
    'verbose': DETAIL,
    'debug': logging.DEBUG,
}

for _level, _name in ((STATUS, 'STATUS'), (DETAIL, 'DETAIL'), (VERBOSE, 'VERBOSE')):
    logging.addLevelName(_level, _name)


def level_for_output_mode(output_mode: str) -> int:
    """Map an output mode (quiet | standard | verbose | debug) to a logging level."""
    return _MODE_LEVELS.get(str(output_mode), logging.INFO)


def log_banner(title: str, *, logger: Optional[logging.Logger] = None, level: int = logging.INFO) -> None:
    """Frame a pipeline stage in the log."""
    lg = logger or logging.getLogger()
    border = "# " + ("=" * 60) + " #"
    lg.log(level, border)
    lg.log(level, f"# {str(title).center(60)} #")
    lg.log(level, border)


def log_section(title: str, *, logger: Optional[logging.Logger] = None, level: int = logging.INFO) -> None:
    lg = logger or logging.getLogger()
    lg.log(level, f" -- {title} " + "-" * max(0, 40 - len(str(title))))
