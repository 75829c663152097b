"""Download, install and remove the opencode binary."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import httpx

from ..config import SidecarSettings
from ..paths import SidecarPaths
from ..target import PlatformResolver, Target
from .archive import ArchiveError, extract_binary
from .runner import OpenCodeNotFoundError, OpenCodeRunner

logger = logging.getLogger(__name__)


class BinaryInstallError(RuntimeError):
    """Raised when the opencode binary cannot be installed or removed."""


@dataclass(slots=True)
class InstalledBinary:
    """An opencode executable present in the install directory."""

    os: str
    arch: str
    baseline: bool
    musl: bool
    install_path: Path
    installed_version: str | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "os": self.os,
            "arch": self.arch,
            "baseline": self.baseline,
            "musl": self.musl,
            "install_path": str(self.install_path),
            "installed_version": self.installed_version,
        }


def _default_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(follow_redirects=True, timeout=httpx.Timeout(300.0, connect=10.0))


class BinaryManager:
    """Manage the lifecycle of the platform-specific opencode executable."""

    def __init__(
        self,
        settings: SidecarSettings,
        *,
        target: Target | None = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        runner_factory: Callable[[Path], OpenCodeRunner] | None = None,
    ) -> None:
        self._settings = settings
        self._target = target or PlatformResolver().resolve()
        self._paths = SidecarPaths(Path(settings.state_dir), binary_name=self._target.binary_name)
        self._client_factory = client_factory or _default_client_factory
        self._runner_factory = runner_factory or OpenCodeRunner

    @property
    def target(self) -> Target:
        return self._target

    @property
    def paths(self) -> SidecarPaths:
        return self._paths

    @property
    def binary_path(self) -> Path:
        return self._paths.binary_path

    def is_installed(self) -> bool:
        path = self._paths.binary_path
        return path.is_file() and os.access(path, os.X_OK)

    def installed_version(self) -> str | None:
        try:
            value = self._paths.version_file.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return value or None

    def installed(self) -> InstalledBinary | None:
        if not self.is_installed():
            return None
        return InstalledBinary(
            os=self._target.os,
            arch=self._target.arch,
            baseline=self._target.baseline,
            musl=self._target.musl,
            install_path=self._paths.binary_path,
            installed_version=self.installed_version(),
        )

    def download_url(self, version: str | None = None) -> str:
        version = (version or self._settings.opencode_version).lstrip("v")
        base = self._settings.release_base_url.rstrip("/")
        return f"{base}/v{version}/{self._target.archive_name}"

    def platform_info(self) -> dict[str, Any]:
        return {
            **self._target.as_dict(),
            "binary_path": str(self._paths.binary_path),
            "download_url": self.download_url(),
        }

    async def download(self, version: str | None = None) -> InstalledBinary:
        """Fetch and install the given (default: pinned) opencode release."""

        version = (version or self._settings.opencode_version).lstrip("v")
        url = self.download_url(version)
        install_dir = self._paths.install_dir
        extension = self._target.archive_extension

        logger.info(
            "Downloading opencode release",
            extra={"url": url, "version": version, "target": self._target.identifier},
        )

        try:
            install_dir.mkdir(parents=True, exist_ok=True)
            # the marker must never outlive the binary it describes
            self._paths.version_file.unlink(missing_ok=True)
            fd, temp_name = tempfile.mkstemp(prefix="opencode-", suffix=f".{extension}")
            os.close(fd)
        except OSError as exc:
            raise BinaryInstallError(f"Cannot prepare install directory {install_dir}: {exc}") from exc

        archive = Path(temp_name)
        try:
            await self._fetch(url, archive)
            try:
                binary = await asyncio.to_thread(
                    extract_binary, archive, extension, self._target.binary_name, install_dir
                )
            except ArchiveError as exc:
                raise BinaryInstallError(str(exc)) from exc

            if os.name != "nt":
                binary.chmod(0o755)

            installed_version = await self._resolve_version(binary, version)
            self._paths.version_file.write_text(installed_version, encoding="utf-8")
        except OSError as exc:
            raise BinaryInstallError(f"Failed to install opencode: {exc}") from exc
        finally:
            archive.unlink(missing_ok=True)

        logger.info(
            "Installed opencode",
            extra={"version": installed_version, "path": str(binary)},
        )
        return InstalledBinary(
            os=self._target.os,
            arch=self._target.arch,
            baseline=self._target.baseline,
            musl=self._target.musl,
            install_path=binary,
            installed_version=installed_version,
        )

    async def _fetch(self, url: str, destination: Path) -> None:
        try:
            async with self._client_factory() as client:
                async with client.stream("GET", url) as response:
                    if response.status_code != 200:
                        raise BinaryInstallError(
                            f"Release download failed with HTTP {response.status_code}: {url}"
                        )
                    with destination.open("wb") as handle:
                        async for chunk in response.aiter_bytes():
                            handle.write(chunk)
        except httpx.HTTPError as exc:
            raise BinaryInstallError(f"Failed to download {url}: {exc}") from exc

    async def _resolve_version(self, binary: Path, pinned: str) -> str:
        try:
            reported = await self._runner_factory(binary).detect_version()
        except (OSError, OpenCodeNotFoundError) as exc:
            logger.debug("Version self-report unavailable", extra={"error": str(exc)})
            reported = None

        if reported is None:
            return pinned
        if reported != pinned:
            logger.warning(
                "opencode reports a different version than requested",
                extra={"reported": reported, "requested": pinned},
            )
        return reported

    def cleanup(self) -> None:
        """Remove the install directory and everything in it."""

        install_dir = self._paths.install_dir
        if not install_dir.exists():
            return
        try:
            for entry in install_dir.iterdir():
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            install_dir.rmdir()
        except OSError as exc:
            raise BinaryInstallError(f"Failed to remove {install_dir}: {exc}") from exc
        logger.info("Removed opencode install", extra={"path": str(install_dir)})

    async def latest_release(self) -> str | None:
        """Return the newest published release version, or ``None`` if unknown."""

        try:
            async with self._client_factory() as client:
                response = await client.get(
                    self._settings.release_api_url,
                    headers={"Accept": "application/vnd.github+json"},
                    timeout=10.0,
                )
                response.raise_for_status()
                tag = response.json()["tag_name"]
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Release check failed", extra={"error": str(exc)})
            return None
        return str(tag).lstrip("v") or None

    async def check_for_update(self) -> dict[str, Any]:
        latest = await self.latest_release()
        installed = self.installed_version()
        return {
            "installed": installed,
            "pinned": self._settings.opencode_version,
            "latest": latest,
            "update_available": bool(latest and installed and latest != installed),
        }


__all__ = ["BinaryInstallError", "BinaryManager", "InstalledBinary"]
