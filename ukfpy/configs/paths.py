from __future__ import annotations

import importlib.resources as resources
from pathlib import Path
from typing import Optional


def get_configs_dir() -> Path:
    """Return the on-disk directory containing shipped config templates.

    Works for editable installs and installed wheels.
    """
    return Path(resources.files("ukfpy.configs"))


def _norm_path_str(p: str) -> str:
    return str(p).replace("\\", "/")


def resolve_config_path(raw: str) -> str:
    """Resolve a config path, falling back to the shipped templates by file name.

    If `raw` exists on disk, it is returned unchanged.
    """

    if not raw:
        return raw

    if Path(raw).exists():
        return raw

    candidate = get_configs_dir() / Path(_norm_path_str(raw)).name
    if candidate.exists():
        return str(candidate)

    return raw


def resolve_input_path(raw: str, *, cfg_source: Optional[str] = None) -> str:
    """Resolve an input file path (DWI, mask, seeds, ...).

    Handles:
    - absolute or working-directory paths (returned if they exist)
    - paths relative to the config file location (`cfg_source`)
    """

    if not raw:
        return raw

    if Path(raw).exists():
        return raw

    if cfg_source:
        rel_candidate = (Path(cfg_source).resolve().parent / _norm_path_str(raw)).resolve()
        if rel_candidate.exists():
            return str(rel_candidate)

    return raw
