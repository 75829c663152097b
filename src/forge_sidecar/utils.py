"""Environment helpers for child processes."""

from __future__ import annotations

import os
from typing import Mapping

from .paths import SidecarPaths

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
    "OPENCODE_CONFIG",
    "OPENCODE_CONFIG_CONTENT",
}

CLIENT_NAME = "forge-sidecar"


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a copy of the current environment without interpreter and opencode overrides."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def sidecar_environment(paths: SidecarPaths, additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Environment for the ``opencode serve`` process, isolated under the state dir."""

    state_dir = str(paths.state_dir)
    data_dir = paths.data_dir
    env = sanitize_environment(
        {
            "HOME": state_dir,
            "OPENCODE_CONFIG_DIR": str(paths.config_dir),
            "XDG_CONFIG_HOME": str(data_dir / "config"),
            "XDG_DATA_HOME": str(data_dir / "share"),
            "XDG_STATE_HOME": str(data_dir / "state"),
            "XDG_CACHE_HOME": str(data_dir / "cache"),
            "OPENCODE_CLIENT": CLIENT_NAME,
            "OPENCODE_AUTO_SHARE": "false",
            "OPENCODE_DISABLE_AUTOUPDATE": "true",
            "OPENCODE_DISABLE_LSP_DOWNLOAD": "true",
        }
    )
    if additional:
        env.update(additional)
    return env


__all__ = ["CLIENT_NAME", "sanitize_environment", "sidecar_environment"]
