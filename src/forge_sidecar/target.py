"""Host platform detection for opencode release selection."""

from __future__ import annotations

import logging
import platform
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

TARGET_PATTERN = re.compile(r"^opencode-(linux|darwin|windows)-(x64|arm64)(-baseline)?(-musl)?$")

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "i686-64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv8": "arm64",
    "armv8l": "arm64",
}


class UnsupportedPlatformError(RuntimeError):
    """Raised when the host architecture has no opencode release."""


class HostProbe(Protocol):
    """Source of raw host facts used by :class:`PlatformResolver`."""

    def system(self) -> str:
        ...

    def machine(self) -> str:
        ...

    def exists(self, path: str) -> bool:
        ...

    def read_text(self, path: str) -> str | None:
        ...

    def run(self, *args: str) -> str | None:
        ...


class SystemProbe:
    """Reads facts from the running host."""

    def system(self) -> str:
        return platform.system()

    def machine(self) -> str:
        return platform.machine()

    def exists(self, path: str) -> bool:
        return Path(path).exists()

    def read_text(self, path: str) -> str | None:
        try:
            return Path(path).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None

    def run(self, *args: str) -> str | None:
        try:
            completed = subprocess.run(
                list(args),
                capture_output=True,
                text=True,
                timeout=5,
                check=False,
            )
        except (OSError, subprocess.SubprocessError):
            return None
        # musl's ldd prints its banner on stderr and exits non-zero
        return (completed.stdout or "") + (completed.stderr or "")


@dataclass(frozen=True, slots=True)
class Target:
    """Platform triple plus the variant flags of an opencode release."""

    os: str
    arch: str
    baseline: bool = False
    musl: bool = False

    @property
    def identifier(self) -> str:
        parts = ["opencode", self.os, self.arch]
        if self.baseline:
            parts.append("baseline")
        if self.musl:
            parts.append("musl")
        return "-".join(parts)

    @property
    def archive_extension(self) -> str:
        return "tar.gz" if self.os == "linux" else "zip"

    @property
    def archive_name(self) -> str:
        return f"{self.identifier}.{self.archive_extension}"

    @property
    def binary_name(self) -> str:
        return "opencode.exe" if self.os == "windows" else "opencode"

    def as_dict(self) -> dict[str, object]:
        return {
            "target": self.identifier,
            "os": self.os,
            "arch": self.arch,
            "baseline": self.baseline,
            "musl": self.musl,
        }


def classify_os(system: str) -> str:
    lowered = system.strip().lower()
    if lowered.startswith("darwin"):
        return "darwin"
    if lowered.startswith(("windows", "win32", "cygwin", "msys", "mingw")):
        return "windows"
    return "linux"


def normalize_arch(machine: str) -> str:
    lowered = machine.strip().lower()
    try:
        return _ARCH_ALIASES[lowered]
    except KeyError as exc:
        raise UnsupportedPlatformError(f"Unsupported CPU architecture: {machine!r}") from exc


class PlatformResolver:
    """Computes the release :class:`Target` for a host."""

    def __init__(self, probe: HostProbe | None = None) -> None:
        self._probe = probe or SystemProbe()

    def resolve(self) -> Target:
        os_name = classify_os(self._probe.system())
        arch = normalize_arch(self._probe.machine())

        if os_name == "darwin" and arch == "x64" and self._is_rosetta():
            logger.info("Rosetta translation detected; selecting arm64 build")
            arch = "arm64"

        musl = os_name == "linux" and self._is_musl()
        baseline = arch == "x64" and self._is_baseline(os_name)
        return Target(os=os_name, arch=arch, baseline=baseline, musl=musl)

    def _is_rosetta(self) -> bool:
        output = self._probe.run("sysctl", "-n", "sysctl.proc_translated")
        return output is not None and output.strip() == "1"

    def _is_musl(self) -> bool:
        if self._probe.exists("/etc/alpine-release"):
            return True
        output = self._probe.run("ldd", "--version")
        return output is not None and "musl" in output.lower()

    def _is_baseline(self, os_name: str) -> bool:
        if os_name == "linux":
            cpuinfo = self._probe.read_text("/proc/cpuinfo")
            if not cpuinfo:
                return False
            for line in cpuinfo.splitlines():
                key, _, value = line.partition(":")
                if key.strip() == "flags":
                    return "avx2" not in value.split()
            return False
        if os_name == "darwin":
            output = self._probe.run("sysctl", "-n", "machdep.cpu.leaf7_features")
            if not output or not output.strip():
                return False
            return "AVX2" not in output.upper().split()
        return False


__all__ = [
    "HostProbe",
    "PlatformResolver",
    "SystemProbe",
    "TARGET_PATTERN",
    "Target",
    "UnsupportedPlatformError",
    "classify_os",
    "normalize_arch",
]
