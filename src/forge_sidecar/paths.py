"""Filesystem layout of the sidecar state directory."""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class SidecarPaths:
    """Locations of every durable file the sidecar owns."""

    state_dir: Path
    binary_name: str = "opencode"

    @property
    def install_dir(self) -> Path:
        return self.state_dir / "bin"

    @property
    def binary_path(self) -> Path:
        return self.install_dir / self.binary_name

    @property
    def version_file(self) -> Path:
        return self.install_dir / ".version"

    @property
    def config_dir(self) -> Path:
        return self.state_dir / "config"

    @property
    def config_file(self) -> Path:
        return self.config_dir / "opencode.json"

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "server.pid"

    @property
    def port_file(self) -> Path:
        return self.state_dir / "server.port"

    @property
    def log_file(self) -> Path:
        return self.state_dir / "server.log"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / "start.lock"

    @property
    def data_dir(self) -> Path:
        return self.state_dir / "data"

    def ensure(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.config_dir.mkdir(parents=True, exist_ok=True)

    def read_or_create_secret(self, name: str) -> str:
        """Return a random secret persisted under the state dir, creating it once."""

        path = self.state_dir / f".{name}"
        if path.exists():
            value = path.read_text(encoding="utf-8").strip()
            if value:
                return value
        self.state_dir.mkdir(parents=True, exist_ok=True)
        value = secrets.token_hex(32)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(value)
        return value


__all__ = ["SidecarPaths"]
