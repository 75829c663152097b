"""Advisory lock file serializing sidecar starts."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)


class LockHeldError(RuntimeError):
    """Raised when another caller holds the start lock."""


class StartLock:
    """Exclusive-create lock file; a lock older than ``stale_after`` seconds is broken."""

    def __init__(
        self,
        path: Path,
        *,
        stale_after: float,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._path = Path(path)
        self._stale_after = stale_after
        self._clock = clock or time.time
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def is_locked(self) -> bool:
        try:
            age = self._clock() - self._path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age < self._stale_after

    def acquire(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            except FileExistsError:
                if self.is_locked():
                    raise LockHeldError(f"{self._path} is held by another start")
                logger.warning("Breaking stale start lock", extra={"path": str(self._path)})
                self._path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            self._held = True
            return
        raise LockHeldError(f"{self._path} is held by another start")

    def release(self) -> None:
        if self._held:
            self._path.unlink(missing_ok=True)
            self._held = False

    def __enter__(self) -> "StartLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


__all__ = ["LockHeldError", "StartLock"]
