from __future__ import annotations

import io
import json
import tarfile
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from forge_sidecar.binary import BinaryManager
from forge_sidecar.config import SidecarSettings
from forge_sidecar.generator import CompanionRuntime, SettingsConfigSource
from forge_sidecar.process import FakeProcessHandle, MemoryStateStore
from forge_sidecar.process.state import PID_KEY, PORT_KEY
from forge_sidecar.providers import ProviderKeyStore
from forge_sidecar.server import build_services, create_app
from forge_sidecar.target import Target

ADMIN = {"X-Sidecar-Admin-Key": "admin-key"}
SSE_BODY = b"event: message\ndata: one\n\nevent: message\ndata: two\n\n"


def _tarball() -> bytes:
    buffer = io.BytesIO()
    data = b"#!/bin/sh\necho opencode 1.1.13\n"
    with tarfile.open(fileobj=buffer, mode="w:gz") as bundle:
        info = tarfile.TarInfo("opencode")
        info.size = len(data)
        bundle.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class Upstream:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        path = request.url.path
        if host == "api.github.com":
            return httpx.Response(200, json={"tag_name": "v1.2.0"})
        if host == "github.com":
            return httpx.Response(200, content=_tarball())
        if path == "/global/health":
            return httpx.Response(200, json={"healthy": True, "version": "1.1.13"})
        if path == "/event":
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=SSE_BODY)
        if path == "/session" and request.method == "POST":
            return httpx.Response(201, json={"id": "ses_1", "echo": request.content.decode()})
        if path == "/session":
            return httpx.Response(200, json=[{"id": "ses_1"}])
        return httpx.Response(404, json={"error": "not found"})

    def factory(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class StubRunner:
    async def detect_version(self) -> str | None:
        return "1.1.13"


class Harness:
    def __init__(self, tmp_path: Path, *, running: bool = False) -> None:
        self.settings = SidecarSettings(
            state_dir=tmp_path / "state",
            working_directory=tmp_path / "site",
            admin_key="admin-key",
            auth_secret="s3cret",
            startup_timeout=1.0,
            idle_check_interval=3600,
        )
        self.upstream = Upstream()
        self.store = MemoryStateStore()
        self.handle = FakeProcessHandle()
        self.providers = ProviderKeyStore(self.store)
        if running:
            self.store.set(PID_KEY, "4242")
            self.store.set(PORT_KEY, "4096")
            self.handle.alive.add(4242)
        binaries = BinaryManager(
            self.settings,
            target=Target("linux", "x64"),
            client_factory=self.upstream.factory,
            runner_factory=lambda _path: StubRunner(),
        )
        self.services = build_services(
            self.settings,
            binaries=binaries,
            store=self.store,
            handle=self.handle,
            client_factory=self.upstream.factory,
            config_source=SettingsConfigSource(
                self.settings,
                runtime=CompanionRuntime.NONE,
                credentials=self.providers.keys,
            ),
            providers=self.providers,
        )
        self.app = create_app(services=self.services)

    def proxied(self) -> list[httpx.Request]:
        return [request for request in self.upstream.requests if request.url.port == 4096]


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    return Harness(tmp_path)


@pytest.fixture
def running(tmp_path: Path) -> Harness:
    return Harness(tmp_path, running=True)


def test_control_routes_require_admin_key(harness: Harness) -> None:
    with TestClient(harness.app) as client:
        missing = client.get("/opencode/status")
        wrong = client.get("/opencode/status", headers={"X-Sidecar-Admin-Key": "nope"})

    assert missing.status_code == 401
    assert missing.json() == {"error": "unauthorized"}
    assert wrong.status_code == 403


def test_status_reports_not_running(harness: Harness) -> None:
    with TestClient(harness.app) as client:
        response = client.get("/opencode/status", headers=ADMIN)

    payload = response.json()
    assert response.status_code == 200
    assert payload["running"] is False
    assert payload["state"] == "not_running"
    assert payload["binary"] is False
    assert payload["platform"]["target"] == "opencode-linux-x64"


def test_start_without_binary_is_bad_request(harness: Harness) -> None:
    with TestClient(harness.app) as client:
        response = client.post("/opencode/start", headers=ADMIN)

    assert response.status_code == 400
    assert "not installed" in response.json()["error"]
    assert harness.handle.spawned == []


def test_download_start_stop_cleanup(harness: Harness) -> None:
    with TestClient(harness.app) as client:
        downloaded = client.post("/opencode/download", headers=ADMIN)
        started = client.post("/opencode/start", headers=ADMIN)
        again = client.post("/opencode/start", headers=ADMIN)
        stopped = client.post("/opencode/stop", headers=ADMIN)
        cleaned = client.post("/opencode/cleanup", headers=ADMIN)

    assert downloaded.status_code == 200
    assert downloaded.json()["installed_version"] == "1.1.13"
    assert started.status_code == 200
    assert started.json()["status"] == "started"
    assert again.json()["status"] == "already_running"
    assert len(harness.handle.spawned) == 1
    assert stopped.json() == {"success": True, "stopped": True}
    assert cleaned.status_code == 200
    assert not harness.services.binaries.is_installed()


def test_auto_start_downloads_when_missing(harness: Harness) -> None:
    with TestClient(harness.app) as client:
        response = client.post("/opencode/auto-start", headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["status"] == "started"
    assert harness.services.binaries.is_installed()


def test_start_in_progress_is_conflict(harness: Harness) -> None:
    with TestClient(harness.app) as client:
        client.post("/opencode/download", headers=ADMIN)
        harness.services.binaries.paths.lock_file.write_text("1", encoding="utf-8")
        response = client.post("/opencode/start", headers=ADMIN)

    assert response.status_code == 409
    assert response.json() == {"error": "start already in progress"}


def test_session_token_opens_proxy(running: Harness) -> None:
    with TestClient(running.app) as client:
        issued = client.post("/opencode/session-token", headers=ADMIN).json()
        proxy_url = urlparse(issued["proxy_url"])
        token = parse_qs(proxy_url.query)["_token"][0]
        response = client.get("/opencode/proxy/session", params={"_token": token})

    assert proxy_url.path == "/opencode/proxy/"
    assert token == issued["token"]
    assert response.status_code == 200
    assert response.json() == [{"id": "ses_1"}]


def test_proxy_rejects_unauthenticated_calls(running: Harness) -> None:
    with TestClient(running.app) as client:
        response = client.get("/opencode/proxy/session", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 401
    assert response.json() == {"error": "unauthorized"}
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert running.proxied() == []


@pytest.mark.parametrize("path", ["session", "deeply/nested/thing", ""])
def test_preflight_needs_no_auth(running: Harness, path: str) -> None:
    with TestClient(running.app) as client:
        response = client.options(f"/opencode/proxy/{path}", headers={"Origin": "https://evil.test"})

    assert response.status_code == 204
    assert response.content == b""
    assert response.headers["access-control-allow-origin"] == "https://app.opencode.ai"
    assert "Authorization" in response.headers["access-control-allow-headers"]
    assert running.proxied() == []


def test_proxy_without_server_is_unavailable(harness: Harness) -> None:
    with TestClient(harness.app) as client:
        response = client.get("/opencode/proxy/session", headers=ADMIN)

    assert response.status_code == 503
    assert "error" in response.json()
    assert harness.upstream.requests == []


def test_proxy_forwards_body_and_strips_internal_params(running: Harness) -> None:
    token = running.services.signer.issue("9")
    with TestClient(running.app) as client:
        response = client.post(
            "/opencode/proxy/session?_token=" + token + "&limit=5&rest_route=/x",
            content=b'{"title":"hi"}',
            headers={"Content-Type": "application/json"},
        )

    assert response.status_code == 201
    assert response.json()["echo"] == '{"title":"hi"}'
    forwarded = running.proxied()[-1]
    assert forwarded.url.path == "/session"
    assert dict(forwarded.url.params) == {"limit": "5"}
    assert forwarded.headers["x-opencode-directory"] == str(running.settings.working_directory)
    assert forwarded.headers["content-type"] == "application/json"
    assert running.services.activity.last_activity() is not None


def test_proxy_streams_server_sent_events(running: Harness) -> None:
    token = running.services.signer.issue("9")
    with TestClient(running.app) as client:
        response = client.get(
            "/opencode/proxy/event",
            headers={"Authorization": f"Bearer {token}", "Accept": "text/event-stream"},
        )

    assert response.status_code == 200
    assert response.content == SSE_BODY
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-accel-buffering"] == "no"
    assert response.headers["access-control-allow-origin"] == "https://app.opencode.ai"


def test_proxy_relays_upstream_errors(running: Harness) -> None:
    with TestClient(running.app) as client:
        response = client.get("/opencode/proxy/missing", headers=ADMIN)

    assert response.status_code == 404
    assert response.json() == {"error": "not found"}


def test_auto_shutdown_policy_round_trip(harness: Harness) -> None:
    with TestClient(harness.app) as client:
        saved = client.post("/opencode/auto-shutdown", headers=ADMIN, json={"enabled": False, "threshold": 10})
        fetched = client.get("/opencode/auto-shutdown", headers=ADMIN)

    assert saved.json()["threshold"] == 300
    assert fetched.json()["enabled"] is False
    assert fetched.json()["threshold"] == 300
    assert fetched.json()["activity"]["auto_shutdown_enabled"] is False


def test_agents_and_update_routes(harness: Harness) -> None:
    with TestClient(harness.app) as client:
        agents = client.get("/opencode/agents", headers=ADMIN).json()["agents"]
        update = client.get("/opencode/update", headers=ADMIN).json()

    assert [agent["id"] for agent in agents][0] == "site-manager"
    assert update["latest"] == "1.2.0"


def test_activity_route(running: Harness) -> None:
    with TestClient(running.app) as client:
        payload = client.get("/opencode/activity", headers=ADMIN).json()

    assert payload["threshold"] == 1800
    assert payload["auto_shutdown_enabled"] is True


def test_provider_keys_are_masked_and_applied_by_restart(harness: Harness) -> None:
    key = "sk-ant-api03-abcdefgh1234"
    config_path = harness.settings.state_dir / "config" / "opencode.json"
    with TestClient(harness.app) as client:
        client.post("/opencode/download", headers=ADMIN)
        client.post("/opencode/start", headers=ADMIN)
        saved = client.post("/opencode/providers/anthropic", headers=ADMIN, json={"key": key})
        listed = client.get("/opencode/providers", headers=ADMIN).json()
        applied = json.loads(config_path.read_text(encoding="utf-8"))
        deleted = client.delete("/opencode/providers/anthropic", headers=ADMIN)

    assert saved.json() == {"success": True, "provider": "anthropic", "restarted": True}
    assert listed["has_any_key"] is True
    assert listed["providers"]["anthropic"]["configured"] is True
    assert listed["providers"]["anthropic"]["masked_key"] == "sk-ant-a*************1234"
    assert key not in json.dumps(listed)
    assert applied["provider"]["anthropic"]["options"]["apiKey"] == key
    assert deleted.json()["restarted"] is True
    assert len(harness.handle.spawned) == 3
    assert "provider" not in json.loads(config_path.read_text(encoding="utf-8"))


def test_provider_change_while_stopped_does_not_start(harness: Harness) -> None:
    with TestClient(harness.app) as client:
        saved = client.post("/opencode/providers/google", headers=ADMIN, json={"key": "AIza-1"})
        missing = client.delete("/opencode/providers/openai", headers=ADMIN)

    assert saved.json()["restarted"] is False
    assert missing.json() == {"success": True, "provider": "openai", "restarted": False}
    assert harness.handle.spawned == []
    assert harness.providers.keys() == {"google": "AIza-1"}


def test_provider_routes_reject_bad_input(harness: Harness) -> None:
    with TestClient(harness.app) as client:
        unknown = client.post("/opencode/providers/acme", headers=ADMIN, json={"key": "k"})
        blank = client.post("/opencode/providers/openai", headers=ADMIN, json={"key": "  "})
        anonymous = client.get("/opencode/providers")

    assert unknown.status_code == 404
    assert unknown.json() == {"error": "Unknown provider 'acme'"}
    assert blank.status_code == 400
    assert anonymous.status_code == 401


def test_status_reports_health_and_pending_config(harness: Harness) -> None:
    with TestClient(harness.app) as client:
        client.post("/opencode/download", headers=ADMIN)
        client.post("/opencode/start", headers=ADMIN)
        fresh = client.get("/opencode/status", headers=ADMIN).json()
        harness.providers.set_key("openai", "sk-new")
        stale = client.get("/opencode/status", headers=ADMIN).json()

    assert fresh["state"] == "running"
    assert fresh["health"] == {"healthy": True, "version": "1.1.13", "error": None}
    assert fresh["config_changed"] is False
    assert stale["config_changed"] is True
