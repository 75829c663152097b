"""Companion bridge runtime selection."""

from __future__ import annotations

import enum
import importlib.util
import logging
import shutil
import sys
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)

BRIDGE_MODULE = "forge_sidecar.bridge"


class CompanionRuntime(str, enum.Enum):
    """Runtime able to host the companion bridge process."""

    PYTHON = "python"
    NODE = "node"
    BUN = "bun"
    NONE = "none"

    @property
    def available(self) -> bool:
        return self is not CompanionRuntime.NONE


def _python_bridge_available() -> bool:
    return importlib.util.find_spec("fastmcp") is not None


@lru_cache(maxsize=None)
def detect_companion_runtime(bridge_script: str | None = None) -> CompanionRuntime:
    """Return the first usable runtime; the answer is cached per script."""

    candidates: list[tuple[CompanionRuntime, bool]] = []
    if bridge_script and Path(bridge_script).is_file():
        candidates.append((CompanionRuntime.NODE, shutil.which("node") is not None))
        candidates.append((CompanionRuntime.BUN, shutil.which("bun") is not None))
    candidates.append((CompanionRuntime.PYTHON, _python_bridge_available()))

    for runtime, usable in candidates:
        if usable:
            logger.info("Companion runtime selected", extra={"runtime": runtime.value})
            return runtime
    logger.info("No companion runtime available; using remote registration")
    return CompanionRuntime.NONE


def bridge_command(runtime: CompanionRuntime, bridge_script: str | None = None) -> list[str]:
    """Command line that starts the companion bridge under ``runtime``."""

    if runtime is CompanionRuntime.PYTHON:
        return [sys.executable, "-m", BRIDGE_MODULE]
    if runtime in (CompanionRuntime.NODE, CompanionRuntime.BUN):
        if not bridge_script:
            raise ValueError(f"{runtime.value} runtime requires a bridge script")
        return [runtime.value, str(bridge_script)]
    raise ValueError("No companion runtime available")


__all__ = ["BRIDGE_MODULE", "CompanionRuntime", "bridge_command", "detect_companion_runtime"]
