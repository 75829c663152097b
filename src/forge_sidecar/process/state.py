"""Durable key/value state shared by independent request handlers."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Protocol

PID_KEY = "pid"
PORT_KEY = "port"
ACTIVITY_KEY = "activity"
STARTED_AT_KEY = "started_at"
FINGERPRINT_KEY = "config_fingerprint"
AUTO_SHUTDOWN_KEY = "auto_shutdown"
PROVIDER_KEYS_KEY = "provider_keys"

_FILE_NAMES = {
    PID_KEY: "server.pid",
    PORT_KEY: "server.port",
    ACTIVITY_KEY: "last_activity",
}


class StateStore(Protocol):
    """Minimal string key/value store used for supervisor and activity state."""

    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class FileStateStore:
    """One small file per key under the state directory."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, key: str) -> Path:
        return self._directory / _FILE_NAMES.get(key, f"{key}.state")

    def get(self, key: str) -> str | None:
        try:
            value = self.path_for(key).read_text(encoding="utf-8").strip()
        except (FileNotFoundError, NotADirectoryError):
            return None
        return value or None

    def set(self, key: str, value: str) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        target = self.path_for(key)
        fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}-", dir=self._directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
            os.replace(temp_name, target)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)


class MemoryStateStore:
    """In-process store for tests and embedding."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def snapshot(self) -> dict[str, str]:
        return dict(self._values)


def read_int(store: StateStore, key: str) -> int | None:
    """Parse an integer value; garbage is treated as absent."""

    raw = store.get(key)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


__all__ = [
    "ACTIVITY_KEY",
    "AUTO_SHUTDOWN_KEY",
    "FINGERPRINT_KEY",
    "FileStateStore",
    "MemoryStateStore",
    "PID_KEY",
    "PORT_KEY",
    "PROVIDER_KEYS_KEY",
    "STARTED_AT_KEY",
    "StateStore",
    "read_int",
]
