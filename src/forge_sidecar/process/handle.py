"""OS-specific spawning, liveness and termination of the sidecar process."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Iterable, Mapping, Protocol, Sequence

logger = logging.getLogger(__name__)


class ProcessHandle(Protocol):
    """Spawns a detached process and tracks it by pid only."""

    def spawn_detached(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        log_path: Path,
    ) -> int:
        ...

    def is_alive(self, pid: int) -> bool:
        ...

    def terminate(self, pid: int, *, force: bool = False) -> None:
        ...


class PosixProcessHandle:
    """Session-detached child processes on Linux and macOS."""

    def spawn_detached(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        log_path: Path,
    ) -> int:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("ab") as log:
            process = subprocess.Popen(
                list(command),
                cwd=str(cwd),
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                close_fds=True,
            )
        return process.pid

    def _reap(self, pid: int) -> bool:
        """Collect ``pid`` if it is our exited child; True when it was reaped."""

        try:
            reaped, _ = os.waitpid(pid, os.WNOHANG)
        except ChildProcessError:
            return False
        return reaped == pid

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        if self._reap(pid):
            return False

        proc_entry = Path(f"/proc/{pid}")
        if sys.platform.startswith("linux") and Path("/proc/self").exists():
            if not proc_entry.exists():
                return False
            try:
                stat = (proc_entry / "stat").read_text(encoding="utf-8")
            except OSError:
                return proc_entry.exists()
            # field 3, after the parenthesised command name
            state = stat.rsplit(")", 1)[-1].split()[:1]
            return state != ["Z"]

        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def terminate(self, pid: int, *, force: bool = False) -> None:
        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return
        self._reap(pid)


class WindowsProcessHandle:
    """Detached processes on Windows, managed through tasklist/taskkill."""

    def spawn_detached(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        log_path: Path,
    ) -> int:
        flags = (
            getattr(subprocess, "DETACHED_PROCESS", 0)
            | getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
            | getattr(subprocess, "CREATE_NO_WINDOW", 0)
        )
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("ab") as log:
            process = subprocess.Popen(
                list(command),
                cwd=str(cwd),
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                creationflags=flags,
                close_fds=True,
            )
        return process.pid

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            completed = subprocess.run(
                ["tasklist", "/FI", f"PID eq {pid}", "/NH", "/FO", "CSV"],
                capture_output=True,
                text=True,
                timeout=10,
                check=False,
            )
        except (OSError, subprocess.SubprocessError):
            return False
        return f'"{pid}"' in completed.stdout

    def terminate(self, pid: int, *, force: bool = False) -> None:
        command = ["taskkill", "/PID", str(pid), "/T"]
        if force:
            command.append("/F")
        try:
            subprocess.run(command, capture_output=True, timeout=10, check=False)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("taskkill failed", extra={"pid": pid, "error": str(exc)})


class FakeProcessHandle:
    """Test double that simulates processes without touching the OS."""

    def __init__(
        self,
        *,
        pids: Iterable[int] | None = None,
        ignore_graceful: bool = False,
        spawn_error: OSError | None = None,
    ) -> None:
        self._next_pids = list(pids or [])
        self._next_default = 4242
        self._ignore_graceful = ignore_graceful
        self._spawn_error = spawn_error
        self.alive: set[int] = set()
        self.spawned: list[dict[str, object]] = []
        self.signals: list[tuple[int, bool]] = []

    def spawn_detached(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        log_path: Path,
    ) -> int:
        if self._spawn_error is not None:
            raise self._spawn_error
        if self._next_pids:
            pid = self._next_pids.pop(0)
        else:
            pid = self._next_default
            self._next_default += 1
        self.spawned.append({"command": list(command), "cwd": cwd, "env": dict(env), "log_path": log_path})
        if pid > 0:
            self.alive.add(pid)
        return pid

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def terminate(self, pid: int, *, force: bool = False) -> None:
        self.signals.append((pid, force))
        if force or not self._ignore_graceful:
            self.alive.discard(pid)


def default_process_handle() -> ProcessHandle:
    if os.name == "nt":
        return WindowsProcessHandle()
    return PosixProcessHandle()


__all__ = [
    "FakeProcessHandle",
    "PosixProcessHandle",
    "ProcessHandle",
    "WindowsProcessHandle",
    "default_process_handle",
]
