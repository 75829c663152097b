"""Async runner for one-shot opencode CLI invocations."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path

from ..utils import sanitize_environment

_VERSION_PATTERN = re.compile(r"\bv?(\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.\-]+)?)\b")


class OpenCodeRunnerError(RuntimeError):
    """Base class for opencode runner errors."""


class OpenCodeNotFoundError(OpenCodeRunnerError):
    """Raised when the opencode executable does not exist."""


@dataclass(slots=True)
class ExecutionResult:
    """Holds the outcome of an opencode CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def parse_version(output: str) -> str | None:
    """Extract the first semantic version from CLI output."""

    match = _VERSION_PATTERN.search(output)
    return match.group(1) if match else None


class OpenCodeRunner:
    """Execute opencode CLI commands asynchronously."""

    def __init__(self, executable: Path, *, timeout: float = 10.0) -> None:
        candidate = Path(executable)
        if not candidate.is_file():
            raise OpenCodeNotFoundError(f"opencode executable not found at {candidate}")
        self._executable_path = candidate
        self._timeout = timeout

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def version(self) -> ExecutionResult:
        return await self._invoke("--version")

    async def _invoke(self, *args: str) -> ExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise OpenCodeRunnerError(f"{' '.join(cmd)} timed out after {self._timeout}s")
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return ExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)

    async def detect_version(self) -> str | None:
        """Ask the binary for its version; ``None`` when it cannot say."""

        try:
            result = await self.version()
        except (OSError, OpenCodeRunnerError):
            return None
        if not result.ok:
            return None
        return parse_version(result.stdout) or parse_version(result.stderr)


__all__ = [
    "ExecutionResult",
    "OpenCodeNotFoundError",
    "OpenCodeRunner",
    "OpenCodeRunnerError",
    "parse_version",
]
