"""opencode binary acquisition."""

from .archive import ArchiveError, extract_binary
from .manager import BinaryInstallError, BinaryManager, InstalledBinary
from .runner import ExecutionResult, OpenCodeNotFoundError, OpenCodeRunner, OpenCodeRunnerError, parse_version

__all__ = [
    "ArchiveError",
    "BinaryInstallError",
    "BinaryManager",
    "ExecutionResult",
    "InstalledBinary",
    "OpenCodeNotFoundError",
    "OpenCodeRunner",
    "OpenCodeRunnerError",
    "extract_binary",
    "parse_version",
]
