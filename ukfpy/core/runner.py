from __future__ import annotations

import configparser
import logging
import time

from ukfpy.configs.paths import resolve_config_path
from ukfpy.core.validation import BoundsError, ConfigurationError, DataError, OptimizationError


FATAL_ERRORS = (ConfigurationError, DataError, OptimizationError, BoundsError, OSError)


def read_config(cfg_path: str, *, output_mode: str | None = None) -> configparser.ConfigParser:
    """Read an INI file (or a shipped template by name) and record where it came from."""
    resolved = resolve_config_path(cfg_path)
    input_cfg_file = configparser.ConfigParser()
    if not input_cfg_file.read(resolved):
        raise ConfigurationError(
            f"Configuration file could not be read: {cfg_path}\n"
            f"Check the path, or pass the name of a shipped template such as 'UKF_Template.ini'."
        )

    if not input_cfg_file.has_section('DEBUG'):
        input_cfg_file.add_section('DEBUG')
    input_cfg_file.set('DEBUG', 'cfg_source', str(resolved))
    if output_mode is not None:
        input_cfg_file.set('DEBUG', 'output_mode', str(output_mode))
    return input_cfg_file


def run(cfg_dct) -> int:
    """Entrypoint used by the CLI to run a tractography from a config path.

    Returns 0 on success and 1 when the run failed; on failure no tractogram
    is written and the cause is logged.
    """
    from ukfpy.core.tractography import UKFTractography

    start = time.time()
    try:
        input_cfg_file = read_config(cfg_dct['cfg_path'], output_mode=cfg_dct.get('output_mode', None))
        UKFTractography(input_cfg_file).__call__()
    except FATAL_ERRORS as e:
        logging.error(f"✗ Tractography failed ({type(e).__name__}):\n{e}")
        return 1
    end = time.time()
    logging.info(f"Total Runtime: {round(end-start,4)} sec")
    return 0
