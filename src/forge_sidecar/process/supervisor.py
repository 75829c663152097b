"""Start/stop/status state machine for the opencode sidecar process."""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import socket
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx

from ..agents import RosterLoadError
from ..binary import BinaryManager
from ..config import SidecarSettings
from ..generator import (
    REGISTRATION_NAME,
    ConfigGenerationError,
    SidecarConfig,
    config_fingerprint,
    write_config,
)
from ..utils import sidecar_environment
from .handle import ProcessHandle, default_process_handle
from .lock import LockHeldError, StartLock
from .state import (
    ACTIVITY_KEY,
    FINGERPRINT_KEY,
    PID_KEY,
    PORT_KEY,
    STARTED_AT_KEY,
    FileStateStore,
    StateStore,
    read_int,
)

if TYPE_CHECKING:
    from ..activity import ActivityMonitor

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"
GRACE_PERIOD = 0.5
RESTART_PAUSE = 0.3
HEALTH_REQUEST_TIMEOUT = 2.0
REGISTRATION_TIMEOUT = 5.0


class SupervisorError(RuntimeError):
    """Base class for sidecar lifecycle errors."""


class BinaryNotInstalledError(SupervisorError):
    """Raised when start is requested before the binary was downloaded."""


class ConfigWriteError(SupervisorError):
    """Raised when the sidecar config cannot be generated or written."""


class SpawnError(SupervisorError):
    """Raised when the sidecar process could not be launched."""


class HealthCheckTimeoutError(SupervisorError):
    """Raised when the sidecar never reported healthy within the startup timeout."""


class StartInProgressError(SupervisorError):
    """Raised when another caller is already starting the sidecar."""


class SupervisorState(str, enum.Enum):
    NOT_RUNNING = "not_running"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    START_FAILED = "start_failed"


@dataclass(slots=True)
class ServerStatus:
    """Snapshot of the sidecar as seen from the durable state files."""

    state: SupervisorState
    running: bool
    pid: int | None
    port: int | None
    url: str | None
    binary: bool
    version: str | None
    started_at: int | None = None

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["state"] = self.state.value
        return payload


@dataclass(slots=True)
class StartResult:
    status: str
    url: str | None
    port: int | None
    version: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class HealthReport:
    healthy: bool
    version: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def port_in_use(port: int, host: str = LOOPBACK) -> bool:
    """True when something accepts a TCP connection on ``port``."""

    try:
        with socket.create_connection((host, port), timeout=0.1):
            return True
    except OSError:
        return False


def _default_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=HEALTH_REQUEST_TIMEOUT)


class ProcessSupervisor:
    """Owns the sidecar process lifecycle; all state lives in the injected store."""

    def __init__(
        self,
        settings: SidecarSettings,
        *,
        binaries: BinaryManager,
        config_source: Callable[[], SidecarConfig],
        store: StateStore | None = None,
        handle: ProcessHandle | None = None,
        activity: "ActivityMonitor | None" = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        port_probe: Callable[[int], bool] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._settings = settings
        self._binaries = binaries
        self._paths = binaries.paths
        self._config_source = config_source
        self._store = store or FileStateStore(self._paths.state_dir)
        self._handle = handle or default_process_handle()
        self._activity = activity
        self._client_factory = client_factory or _default_client_factory
        self._port_probe = port_probe or port_in_use
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.time
        self._lock = StartLock(self._paths.lock_file, stale_after=settings.startup_timeout * 2 + 5)

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def binaries(self) -> BinaryManager:
        return self._binaries

    def attach_activity(self, activity: "ActivityMonitor") -> None:
        self._activity = activity

    # -- status -----------------------------------------------------------------

    def status(self) -> ServerStatus:
        pid = read_int(self._store, PID_KEY)
        port = read_int(self._store, PORT_KEY)
        running = pid is not None and self._handle.is_alive(pid)
        starting = self._lock.is_locked()

        if pid is not None and not running and not starting:
            logger.info("Clearing stale sidecar state", extra={"pid": pid})
            self._clear_state()
            pid = port = None

        if starting:
            state = SupervisorState.STARTING
        elif running:
            state = SupervisorState.RUNNING
        else:
            state = SupervisorState.NOT_RUNNING

        return ServerStatus(
            state=state,
            running=running,
            pid=pid,
            port=port,
            url=f"http://{LOOPBACK}:{port}" if running and port else None,
            binary=self._binaries.is_installed(),
            version=self._binaries.installed_version(),
            started_at=read_int(self._store, STARTED_AT_KEY),
        )

    def server_url(self) -> str | None:
        return self.status().url

    def config_fingerprint(self) -> str | None:
        return self._store.get(FINGERPRINT_KEY)

    def config_changed(self) -> bool | None:
        """Whether a restart would apply a different config; None when unknown."""

        applied = self.config_fingerprint()
        if applied is None:
            return None
        try:
            current = config_fingerprint(self._config_source())
        except (ConfigGenerationError, RosterLoadError) as exc:
            logger.warning("Cannot compare sidecar config", extra={"error": str(exc)})
            return None
        return current != applied

    # -- start ------------------------------------------------------------------

    async def start(self, config: SidecarConfig | None = None) -> StartResult:
        """Start the sidecar, or report that it is already running."""

        current = self.status()
        if current.state is SupervisorState.RUNNING:
            return StartResult("already_running", current.url, current.port, current.version)

        if not self._binaries.is_installed():
            raise BinaryNotInstalledError("opencode binary is not installed; download it first")

        try:
            self._lock.acquire()
        except LockHeldError as exc:
            raise StartInProgressError("start already in progress") from exc

        try:
            current = self.status()
            if current.running:
                return StartResult("already_running", current.url, current.port, current.version)
            return await self._start_locked(config)
        finally:
            self._lock.release()

    async def _start_locked(self, config: SidecarConfig | None) -> StartResult:
        self._paths.ensure()
        port = self.find_available_port()

        try:
            config = config or self._config_source()
            write_config(config, self._paths.config_file)
        except (ConfigGenerationError, RosterLoadError, OSError) as exc:
            raise ConfigWriteError(f"Failed to write sidecar config: {exc}") from exc

        command = [
            str(self._binaries.binary_path),
            "serve",
            f"--port={port}",
            f"--hostname={LOOPBACK}",
        ]
        try:
            pid = self._handle.spawn_detached(
                command,
                cwd=self._paths.state_dir,
                env=sidecar_environment(self._paths),
                log_path=self._paths.log_file,
            )
        except OSError as exc:
            self._clear_state()
            raise SpawnError(f"Failed to start opencode server: {exc}") from exc

        if pid <= 0:
            self._clear_state()
            raise SpawnError("Failed to start opencode server: no process id")

        self._store.set(PID_KEY, str(pid))
        self._store.set(PORT_KEY, str(port))
        self._store.set(STARTED_AT_KEY, str(int(self._clock())))
        logger.info("Spawned opencode", extra={"pid": pid, "port": port})

        health = await self.wait_for_health(port, pid=pid)
        if not health.healthy:
            logger.error(
                "opencode failed its health check",
                extra={
                    "pid": pid,
                    "port": port,
                    "error": health.error,
                    "state": SupervisorState.START_FAILED.value,
                },
            )
            await self.stop()
            raise HealthCheckTimeoutError(health.error or "Server failed health check")

        self._store.set(FINGERPRINT_KEY, config_fingerprint(config))
        await self._register(port, config)
        self._stamp_activity()

        url = f"http://{LOOPBACK}:{port}"
        return StartResult("started", url, port, health.version or self._binaries.installed_version())

    def find_available_port(self) -> int:
        base = self._settings.default_port
        scan = self._settings.port_scan_range
        for offset in range(scan):
            candidate = base + offset
            if not self._port_probe(candidate):
                return candidate
        fallback = base + random.randint(scan, scan + 899)
        logger.warning("No free port in scan range; using random port", extra={"port": fallback})
        return fallback

    async def wait_for_health(self, port: int, *, pid: int | None = None) -> HealthReport:
        """Poll the health endpoint until healthy or the startup timeout elapses."""

        url = f"http://{LOOPBACK}:{port}/global/health"
        deadline = time.monotonic() + self._settings.startup_timeout
        last_error: str | None = None

        async with self._client_factory() as client:
            while True:
                if pid is not None and not self._handle.is_alive(pid):
                    return HealthReport(False, error="opencode exited during startup")
                try:
                    response = await client.get(url, timeout=HEALTH_REQUEST_TIMEOUT)
                    if response.status_code == 200:
                        payload = response.json()
                        if isinstance(payload, dict) and payload.get("healthy") is True:
                            return HealthReport(True, version=payload.get("version"))
                        last_error = "Server reported unhealthy"
                    else:
                        last_error = f"Health endpoint returned HTTP {response.status_code}"
                except (httpx.HTTPError, ValueError) as exc:
                    last_error = str(exc) or exc.__class__.__name__

                if time.monotonic() >= deadline:
                    break
                await self._sleep(self._settings.health_interval)

        timeout = self._settings.startup_timeout
        return HealthReport(False, error=f"Health check timed out after {timeout:g}s: {last_error}")

    async def health(self) -> HealthReport:
        port = read_int(self._store, PORT_KEY)
        if port is None:
            return HealthReport(False, error="not running")
        url = f"http://{LOOPBACK}:{port}/global/health"
        try:
            async with self._client_factory() as client:
                response = await client.get(url, timeout=HEALTH_REQUEST_TIMEOUT)
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            return HealthReport(False, error=str(exc))
        healthy = isinstance(payload, dict) and payload.get("healthy") is True
        return HealthReport(healthy, version=payload.get("version") if healthy else None)

    async def _register(self, port: int, config: SidecarConfig) -> None:
        registration = config.mcp_registration
        if registration is None:
            logger.info("No host registration configured; skipping MCP registration")
            return
        url = f"http://{LOOPBACK}:{port}/mcp/add"
        body = {"name": REGISTRATION_NAME, "config": registration.model_dump()}
        try:
            async with self._client_factory() as client:
                response = await client.post(url, json=body, timeout=REGISTRATION_TIMEOUT)
        except httpx.HTTPError as exc:
            logger.warning("Failed to register host MCP", extra={"error": str(exc)})
            return
        if response.status_code >= 400:
            logger.warning(
                "Host MCP registration rejected",
                extra={"status": response.status_code, "body": response.text[:500]},
            )

    # -- stop -------------------------------------------------------------------

    async def stop(self) -> bool:
        """Stop the sidecar; returns True when a live process was signaled."""

        pid = read_int(self._store, PID_KEY)
        if pid is None:
            self._clear_state()
            return False

        signaled = False
        if self._handle.is_alive(pid):
            logger.info("Stopping opencode", extra={"pid": pid, "state": SupervisorState.STOPPING.value})
            self._handle.terminate(pid, force=False)
            signaled = True
            await self._sleep(GRACE_PERIOD)
            if self._handle.is_alive(pid):
                logger.warning("opencode ignored SIGTERM; killing", extra={"pid": pid})
                self._handle.terminate(pid, force=True)
                await self._sleep(GRACE_PERIOD)

        self._clear_state()
        return signaled

    async def restart(self, config: SidecarConfig | None = None) -> StartResult:
        await self.stop()
        await self._sleep(RESTART_PAUSE)
        return await self.start(config)

    async def restart_if_running(self) -> StartResult | None:
        if not self.status().running:
            return None
        return await self.restart()

    # -- helpers ----------------------------------------------------------------

    def _stamp_activity(self) -> None:
        if self._activity is not None:
            self._activity.record_activity()
        else:
            self._store.set(ACTIVITY_KEY, str(int(self._clock())))

    def _clear_state(self) -> None:
        for key in (PID_KEY, PORT_KEY, STARTED_AT_KEY, FINGERPRINT_KEY):
            self._store.delete(key)
        if self._activity is not None:
            self._activity.clear()
        else:
            self._store.delete(ACTIVITY_KEY)


__all__ = [
    "BinaryNotInstalledError",
    "ConfigWriteError",
    "HealthCheckTimeoutError",
    "HealthReport",
    "ProcessSupervisor",
    "ServerStatus",
    "SpawnError",
    "StartInProgressError",
    "StartResult",
    "SupervisorError",
    "SupervisorState",
    "port_in_use",
]
