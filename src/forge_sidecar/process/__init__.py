"""Sidecar process state, handles and supervision."""

from .handle import (
    FakeProcessHandle,
    PosixProcessHandle,
    ProcessHandle,
    WindowsProcessHandle,
    default_process_handle,
)
from .lock import LockHeldError, StartLock
from .state import FileStateStore, MemoryStateStore, StateStore
from .supervisor import (
    BinaryNotInstalledError,
    ConfigWriteError,
    HealthCheckTimeoutError,
    HealthReport,
    ProcessSupervisor,
    ServerStatus,
    SpawnError,
    StartInProgressError,
    StartResult,
    SupervisorError,
    SupervisorState,
)

__all__ = [
    "BinaryNotInstalledError",
    "ConfigWriteError",
    "FakeProcessHandle",
    "FileStateStore",
    "HealthCheckTimeoutError",
    "HealthReport",
    "LockHeldError",
    "MemoryStateStore",
    "PosixProcessHandle",
    "ProcessHandle",
    "ProcessSupervisor",
    "ServerStatus",
    "SpawnError",
    "StartInProgressError",
    "StartLock",
    "StartResult",
    "StateStore",
    "SupervisorError",
    "SupervisorState",
    "WindowsProcessHandle",
    "default_process_handle",
]
