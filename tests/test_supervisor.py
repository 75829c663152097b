from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from forge_sidecar.activity import ActivityMonitor
from forge_sidecar.agents import RosterLoader
from forge_sidecar.binary import BinaryManager
from forge_sidecar.config import SidecarSettings
from forge_sidecar.generator import ConfigGenerator, RemoteRegistration
from forge_sidecar.process import (
    BinaryNotInstalledError,
    ConfigWriteError,
    FakeProcessHandle,
    HealthCheckTimeoutError,
    MemoryStateStore,
    ProcessSupervisor,
    SpawnError,
    StartInProgressError,
    SupervisorState,
)
from forge_sidecar.process.state import ACTIVITY_KEY, PID_KEY, PORT_KEY
from forge_sidecar.target import Target


class Upstream:
    """Mock opencode HTTP surface."""

    def __init__(self, *, healthy: bool = True, warmup_polls: int = 0) -> None:
        self.healthy = healthy
        self.warmup_polls = warmup_polls
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/global/health":
            if not self.healthy or self.warmup_polls > 0:
                self.warmup_polls -= 1
                return httpx.Response(503)
            return httpx.Response(200, json={"healthy": True, "version": "1.1.13"})
        if request.url.path == "/mcp/add":
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404)

    def factory(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


async def _no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def _install_binary(state_dir: Path) -> None:
    binary = state_dir / "bin" / "opencode"
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_text("#!/bin/sh\necho opencode 1.1.13\n", encoding="utf-8")
    binary.chmod(0o755)
    (state_dir / "bin" / ".version").write_text("1.1.13", encoding="utf-8")


def _config(registration=None):
    return ConfigGenerator().generate(RosterLoader().load_all(), {}, registration=registration)


def _supervisor(
    tmp_path: Path,
    *,
    installed: bool = True,
    handle: FakeProcessHandle | None = None,
    upstream: Upstream | None = None,
    busy_ports: set[int] | None = None,
    config_source=None,
    store: MemoryStateStore | None = None,
    activity: ActivityMonitor | None = None,
    sleep=None,
) -> ProcessSupervisor:
    state_dir = tmp_path / "state"
    settings = SidecarSettings(state_dir=state_dir, startup_timeout=0.1, health_interval=0.01)
    if installed:
        _install_binary(state_dir)
    busy = busy_ports or set()
    return ProcessSupervisor(
        settings,
        binaries=BinaryManager(settings, target=Target("linux", "x64")),
        config_source=config_source or _config,
        store=store or MemoryStateStore(),
        handle=handle or FakeProcessHandle(),
        activity=activity,
        client_factory=(upstream or Upstream()).factory,
        port_probe=lambda port: port in busy,
        sleep=sleep or _no_sleep,
        clock=lambda: 1_000.0,
    )


def test_start_spawns_and_reports_running(tmp_path: Path) -> None:
    handle = FakeProcessHandle(pids=[321])
    upstream = Upstream()
    supervisor = _supervisor(tmp_path, handle=handle, upstream=upstream)

    result = asyncio.run(supervisor.start())

    assert result.status == "started"
    assert result.port == 4096
    assert result.url == "http://127.0.0.1:4096"
    assert result.version == "1.1.13"
    command = handle.spawned[0]["command"]
    assert command[1:] == ["serve", "--port=4096", "--hostname=127.0.0.1"]
    assert handle.spawned[0]["env"]["HOME"] == str(tmp_path / "state")

    status = supervisor.status()
    assert status.state is SupervisorState.RUNNING
    assert status.pid == 321
    assert supervisor.store.get(ACTIVITY_KEY) == "1000"
    config = json.loads((tmp_path / "state" / "config" / "opencode.json").read_text(encoding="utf-8"))
    assert config["default_agent"] == "site-manager"
    assert not (tmp_path / "state" / "start.lock").exists()


def test_second_start_is_already_running(tmp_path: Path) -> None:
    handle = FakeProcessHandle()
    supervisor = _supervisor(tmp_path, handle=handle)

    asyncio.run(supervisor.start())
    second = asyncio.run(supervisor.start())

    assert second.status == "already_running"
    assert len(handle.spawned) == 1


def test_start_skips_busy_ports(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path, busy_ports={4096, 4097})
    result = asyncio.run(supervisor.start())
    assert result.port == 4098


def test_start_registers_host_mcp(tmp_path: Path) -> None:
    upstream = Upstream()
    registration = RemoteRegistration.bearer("https://site.test/mcp", "tok")
    supervisor = _supervisor(tmp_path, upstream=upstream, config_source=lambda: _config(registration))

    asyncio.run(supervisor.start())

    posts = [request for request in upstream.requests if request.url.path == "/mcp/add"]
    assert len(posts) == 1
    body = json.loads(posts[0].content)
    assert body["name"] == "host"
    assert body["config"]["url"] == "https://site.test/mcp"


def test_start_requires_binary(tmp_path: Path) -> None:
    handle = FakeProcessHandle()
    supervisor = _supervisor(tmp_path, installed=False, handle=handle)

    with pytest.raises(BinaryNotInstalledError):
        asyncio.run(supervisor.start())

    assert handle.spawned == []


def test_spawn_failure_leaves_no_state(tmp_path: Path) -> None:
    store = MemoryStateStore()
    handle = FakeProcessHandle(spawn_error=OSError("exec format error"))
    supervisor = _supervisor(tmp_path, handle=handle, store=store)

    with pytest.raises(SpawnError):
        asyncio.run(supervisor.start())

    assert store.get(PID_KEY) is None
    assert supervisor.status().running is False


def test_config_failure_is_reported(tmp_path: Path) -> None:
    def broken():
        return ConfigGenerator().generate({}, {})

    handle = FakeProcessHandle()
    supervisor = _supervisor(tmp_path, handle=handle, config_source=broken)

    with pytest.raises(ConfigWriteError):
        asyncio.run(supervisor.start())

    assert handle.spawned == []


def test_health_timeout_stops_process(tmp_path: Path) -> None:
    store = MemoryStateStore()
    handle = FakeProcessHandle(pids=[555])
    supervisor = _supervisor(tmp_path, handle=handle, store=store, upstream=Upstream(healthy=False))

    with pytest.raises(HealthCheckTimeoutError):
        asyncio.run(supervisor.start())

    assert (555, False) in handle.signals
    assert 555 not in handle.alive
    assert store.get(PID_KEY) is None
    assert store.get(PORT_KEY) is None
    assert supervisor.status().running is False


def test_concurrent_start_fails_fast(tmp_path: Path) -> None:
    handle = FakeProcessHandle()
    supervisor = _supervisor(tmp_path, handle=handle)
    lock = tmp_path / "state" / "start.lock"
    lock.write_text("999", encoding="utf-8")

    assert supervisor.status().state is SupervisorState.STARTING
    with pytest.raises(StartInProgressError):
        asyncio.run(supervisor.start())

    assert handle.spawned == []
    assert lock.exists()


def test_stop_without_process_sends_no_signal(tmp_path: Path) -> None:
    handle = FakeProcessHandle()
    supervisor = _supervisor(tmp_path, handle=handle)

    assert asyncio.run(supervisor.stop()) is False
    assert handle.signals == []


def test_stop_escalates_to_kill(tmp_path: Path) -> None:
    handle = FakeProcessHandle(pids=[777], ignore_graceful=True)
    store = MemoryStateStore()
    supervisor = _supervisor(tmp_path, handle=handle, store=store)
    asyncio.run(supervisor.start())

    assert asyncio.run(supervisor.stop()) is True

    assert handle.signals == [(777, False), (777, True)]
    assert store.get(PID_KEY) is None
    assert store.get(ACTIVITY_KEY) is None


def test_dead_pid_is_cleaned_not_an_error(tmp_path: Path) -> None:
    store = MemoryStateStore({PID_KEY: "999", PORT_KEY: "4100"})
    supervisor = _supervisor(tmp_path, store=store)

    status = supervisor.status()

    assert status.running is False
    assert status.state is SupervisorState.NOT_RUNNING
    assert status.url is None
    assert store.get(PID_KEY) is None
    assert store.get(PORT_KEY) is None


def test_restart_spawns_new_process(tmp_path: Path) -> None:
    handle = FakeProcessHandle(pids=[10, 11])
    supervisor = _supervisor(tmp_path, handle=handle)
    asyncio.run(supervisor.start())

    result = asyncio.run(supervisor.restart())

    assert result.status == "started"
    assert supervisor.status().pid == 11
    assert (10, False) in handle.signals


def test_restart_if_running_is_noop_when_stopped(tmp_path: Path) -> None:
    handle = FakeProcessHandle()
    supervisor = _supervisor(tmp_path, handle=handle)
    assert asyncio.run(supervisor.restart_if_running()) is None
    assert handle.spawned == []


def test_idle_check_during_startup_leaves_process_alone(tmp_path: Path) -> None:
    store = MemoryStateStore()
    handle = FakeProcessHandle(pids=[321])
    activity = ActivityMonitor(store, clock=lambda: 50_000.0)
    observed: list[tuple[SupervisorState, bool]] = []
    supervisor = None

    async def idle_tick(_seconds: float) -> None:
        state = supervisor.status().state
        observed.append((state, await activity.check_and_stop_if_inactive(supervisor)))

    supervisor = _supervisor(
        tmp_path,
        handle=handle,
        store=store,
        activity=activity,
        upstream=Upstream(warmup_polls=1),
        sleep=idle_tick,
    )

    result = asyncio.run(supervisor.start())

    assert observed == [(SupervisorState.STARTING, False)]
    assert result.status == "started"
    assert handle.signals == []
    assert supervisor.status().state is SupervisorState.RUNNING


def test_config_changed_tracks_generated_config(tmp_path: Path) -> None:
    credentials: dict[str, str] = {}

    def source():
        return ConfigGenerator().generate(RosterLoader().load_all(), credentials)

    supervisor = _supervisor(tmp_path, config_source=source)
    assert supervisor.config_changed() is None

    asyncio.run(supervisor.start())
    assert supervisor.config_changed() is False

    credentials["anthropic"] = "sk-ant-1"
    assert supervisor.config_changed() is True

    asyncio.run(supervisor.stop())
    assert supervisor.config_changed() is None


def test_health_reads_running_sidecar(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path)
    assert asyncio.run(supervisor.health()).healthy is False

    asyncio.run(supervisor.start())

    report = asyncio.run(supervisor.health())
    assert report.as_dict() == {"healthy": True, "version": "1.1.13", "error": None}
