"""Packaged configuration templates.

Use `get_configs_dir()` to locate the shipped `*.ini` files on disk.
"""

from __future__ import annotations

from .paths import get_configs_dir, resolve_config_path, resolve_input_path

__all__ = [
    "get_configs_dir",
    "resolve_config_path",
    "resolve_input_path",
]
