"""FastAPI control surface and authenticated proxy for the opencode sidecar."""

from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from . import __version__
from .activity import ActivityMonitor, IdleWatcher
from .agents import RosterLoadError
from .auth import AuthFailure, Caller, CallerAuthenticator, TOKEN_QUERY_PARAM, TokenSigner
from .binary import BinaryInstallError, BinaryManager
from .config import MAX_IDLE_THRESHOLD, SidecarSettings, get_settings
from .generator import SettingsConfigSource
from .paths import SidecarPaths
from .process import (
    BinaryNotInstalledError,
    FileStateStore,
    ProcessHandle,
    ProcessSupervisor,
    StartInProgressError,
    StateStore,
    SupervisorError,
    SupervisorState,
)
from .providers import ProviderKeyError, ProviderKeyStore, UnknownProviderError
from .proxy import CorsPolicy, RequestProxy, error_response

logger = logging.getLogger(__name__)

BRIDGE_SUBJECT = "sidecar-bridge"
PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"]


def configure_logging(level: str) -> None:
    """Configure root logging for the sidecar server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


class ApiError(Exception):
    """Error surfaced to HTTP callers as ``{"error": message}``."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


_SUPERVISOR_STATUS: tuple[tuple[type[SupervisorError], int], ...] = (
    (BinaryNotInstalledError, 400),
    (StartInProgressError, 409),
)


def _supervisor_status_code(exc: SupervisorError) -> int:
    for error_type, status_code in _SUPERVISOR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@dataclass(slots=True)
class SidecarServices:
    """Everything the HTTP layer needs, wired once per app."""

    settings: SidecarSettings
    binaries: BinaryManager
    supervisor: ProcessSupervisor
    activity: ActivityMonitor
    signer: TokenSigner
    authenticator: CallerAuthenticator
    proxy: RequestProxy
    config_source: SettingsConfigSource
    providers: ProviderKeyStore
    cors: CorsPolicy
    watcher: IdleWatcher


def build_services(
    settings: SidecarSettings,
    *,
    binaries: BinaryManager | None = None,
    store: StateStore | None = None,
    handle: ProcessHandle | None = None,
    client_factory: Callable[[], httpx.AsyncClient] | None = None,
    config_source: SettingsConfigSource | None = None,
    providers: ProviderKeyStore | None = None,
    clock: Callable[[], float] | None = None,
) -> SidecarServices:
    """Assemble the sidecar components from settings."""

    binaries = binaries or BinaryManager(settings)
    paths: SidecarPaths = binaries.paths
    store = store or FileStateStore(paths.state_dir)

    secret = settings.auth_secret or paths.read_or_create_secret("secret")
    admin_key = settings.admin_key or paths.read_or_create_secret("admin-key")
    signer = TokenSigner(secret, ttl=settings.token_ttl, clock=clock)
    providers = providers or ProviderKeyStore(store, defaults=settings.provider_keys)

    config_source = config_source or SettingsConfigSource(
        settings,
        token_factory=lambda: signer.issue(BRIDGE_SUBJECT, ttl=MAX_IDLE_THRESHOLD),
        credentials=providers.keys,
    )
    activity = ActivityMonitor.from_settings(settings, store, clock=clock)
    supervisor = ProcessSupervisor(
        settings,
        binaries=binaries,
        config_source=config_source,
        store=store,
        handle=handle,
        activity=activity,
        client_factory=client_factory,
        clock=clock,
    )
    proxy = RequestProxy(
        supervisor,
        activity,
        working_directory=settings.working_directory,
        client_factory=client_factory,
    )
    return SidecarServices(
        settings=settings,
        binaries=binaries,
        supervisor=supervisor,
        activity=activity,
        signer=signer,
        authenticator=CallerAuthenticator(signer, admin_key),
        proxy=proxy,
        config_source=config_source,
        providers=providers,
        cors=CorsPolicy(allowed_origins=settings.allowed_origins),
        watcher=IdleWatcher(activity, supervisor, interval=settings.idle_check_interval),
    )


class DownloadRequest(BaseModel):
    version: Optional[str] = None


class AutoShutdownUpdate(BaseModel):
    enabled: Optional[bool] = None
    threshold: Optional[int] = None


class ProviderKeyUpdate(BaseModel):
    key: str


def _services(request: Request) -> SidecarServices:
    return request.app.state.services


def require_admin(request: Request) -> Caller:
    try:
        return _services(request).authenticator.admin(request.headers)
    except AuthFailure as exc:
        raise ApiError(exc.status_code, exc.message) from None


def create_app(
    settings: Optional[SidecarSettings] = None,
    *,
    services: SidecarServices | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application with control and proxy routes."""

    settings = settings or (services.settings if services else get_settings())
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.watcher.start()
        logger.info(
            "Idle watcher started",
            extra={
                "interval": settings.idle_check_interval,
                "threshold": services.activity.threshold,
                "enabled": services.activity.enabled,
            },
        )
        try:
            yield
        finally:
            await services.watcher.stop()

    app = FastAPI(title="forge-sidecar", version=__version__, lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(ApiError)
    async def _api_error(_request: Request, exc: ApiError) -> JSONResponse:
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(SupervisorError)
    async def _supervisor_error(_request: Request, exc: SupervisorError) -> JSONResponse:
        logger.error("Sidecar operation failed", extra={"error": str(exc)})
        return error_response(_supervisor_status_code(exc), str(exc))

    @app.exception_handler(BinaryInstallError)
    async def _install_error(_request: Request, exc: BinaryInstallError) -> JSONResponse:
        logger.error("Binary install failed", extra={"error": str(exc)})
        return error_response(500, f"Cannot install opencode: {exc}")

    @app.exception_handler(UnknownProviderError)
    async def _unknown_provider(_request: Request, exc: UnknownProviderError) -> JSONResponse:
        return error_response(404, str(exc))

    @app.exception_handler(ProviderKeyError)
    async def _provider_key_error(_request: Request, exc: ProviderKeyError) -> JSONResponse:
        return error_response(400, str(exc))

    @app.exception_handler(RosterLoadError)
    async def _roster_error(_request: Request, exc: RosterLoadError) -> JSONResponse:
        return error_response(500, str(exc))

    def _activity_payload() -> dict[str, Any]:
        return services.activity.status(services.supervisor.status().running)

    @app.get("/opencode/status")
    async def status(_caller: Caller = Depends(require_admin)) -> dict[str, Any]:
        current = services.supervisor.status()
        payload = {
            **current.as_dict(),
            "platform": services.binaries.platform_info(),
            "activity": services.activity.status(current.running),
        }
        if current.state is SupervisorState.RUNNING:
            payload["health"] = (await services.supervisor.health()).as_dict()
            payload["config_changed"] = services.supervisor.config_changed()
        return payload

    @app.post("/opencode/download")
    async def download(
        body: Optional[DownloadRequest] = None,
        _caller: Caller = Depends(require_admin),
    ) -> dict[str, Any]:
        installed = await services.binaries.download(body.version if body else None)
        return {"success": True, **installed.as_dict()}

    @app.post("/opencode/start")
    async def start(_caller: Caller = Depends(require_admin)) -> dict[str, Any]:
        result = await services.supervisor.start()
        return {"success": True, **result.as_dict()}

    @app.post("/opencode/stop")
    async def stop(_caller: Caller = Depends(require_admin)) -> dict[str, Any]:
        stopped = await services.supervisor.stop()
        return {"success": True, "stopped": stopped}

    @app.post("/opencode/cleanup")
    async def cleanup(_caller: Caller = Depends(require_admin)) -> dict[str, Any]:
        await services.supervisor.stop()
        services.binaries.cleanup()
        return {"success": True}

    @app.post("/opencode/restart")
    async def restart(_caller: Caller = Depends(require_admin)) -> dict[str, Any]:
        result = await services.supervisor.restart()
        return {"success": True, **result.as_dict()}

    @app.post("/opencode/auto-start")
    async def auto_start(_caller: Caller = Depends(require_admin)) -> dict[str, Any]:
        if not services.binaries.is_installed():
            await services.binaries.download()
        result = await services.supervisor.start()
        return {
            "success": True,
            **result.as_dict(),
            "binary": services.binaries.platform_info(),
            "activity": _activity_payload(),
        }

    @app.post("/opencode/session-token")
    async def session_token(request: Request, _caller: Caller = Depends(require_admin)) -> dict[str, Any]:
        token = services.signer.issue("admin")
        proxy_url = str(request.url_for("proxy_request", path=""))
        return {
            "token": token,
            "expires_in": services.signer.ttl,
            "proxy_url": f"{proxy_url}?{urlencode({TOKEN_QUERY_PARAM: token})}",
        }

    @app.get("/opencode/activity")
    async def activity(_caller: Caller = Depends(require_admin)) -> dict[str, Any]:
        return _activity_payload()

    @app.get("/opencode/auto-shutdown")
    async def get_auto_shutdown(_caller: Caller = Depends(require_admin)) -> dict[str, Any]:
        return {
            "enabled": services.activity.enabled,
            "threshold": services.activity.threshold,
            "activity": _activity_payload(),
        }

    @app.post("/opencode/auto-shutdown")
    async def save_auto_shutdown(
        body: AutoShutdownUpdate,
        _caller: Caller = Depends(require_admin),
    ) -> dict[str, Any]:
        policy = services.activity.update_policy(enabled=body.enabled, threshold=body.threshold)
        return {"success": True, **policy, "activity": _activity_payload()}

    @app.get("/opencode/agents")
    async def agents(_caller: Caller = Depends(require_admin)) -> dict[str, Any]:
        return {"agents": services.config_source.roster_for_display()}

    @app.get("/opencode/providers")
    async def list_providers(_caller: Caller = Depends(require_admin)) -> dict[str, Any]:
        return services.providers.describe()

    async def _apply_provider_change(provider_id: str) -> dict[str, Any]:
        restarted = await services.supervisor.restart_if_running()
        return {"success": True, "provider": provider_id, "restarted": restarted is not None}

    @app.post("/opencode/providers/{provider_id}")
    async def save_provider(
        provider_id: str,
        body: ProviderKeyUpdate,
        _caller: Caller = Depends(require_admin),
    ) -> dict[str, Any]:
        services.providers.set_key(provider_id, body.key)
        return await _apply_provider_change(provider_id)

    @app.delete("/opencode/providers/{provider_id}")
    async def delete_provider(provider_id: str, _caller: Caller = Depends(require_admin)) -> dict[str, Any]:
        if not services.providers.delete_key(provider_id):
            return {"success": True, "provider": provider_id, "restarted": False}
        return await _apply_provider_change(provider_id)

    @app.get("/opencode/update")
    async def update(_caller: Caller = Depends(require_admin)) -> dict[str, Any]:
        return await services.binaries.check_for_update()

    @app.api_route("/opencode/proxy/{path:path}", methods=PROXY_METHODS, name="proxy_request")
    async def proxy_request(path: str, request: Request) -> Response:
        cors_headers = services.cors.headers_for(request.headers.get("origin"))
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=cors_headers)

        try:
            services.authenticator.caller(request.headers, request.query_params)
        except AuthFailure as exc:
            response: Response = error_response(exc.status_code, exc.message)
        else:
            response = await services.proxy.forward(request, path)
        response.headers.update(cors_headers)
        return response

    return app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the forge sidecar control server")
    parser.add_argument("--host", default=None, help="Bind address (default: FORGE_HOST)")
    parser.add_argument("--port", default=None, type=int, help="Bind port (default: FORGE_PORT)")
    parser.add_argument("--state-dir", default=None, type=Path, help="Override FORGE_STATE_DIR")
    parser.add_argument(
        "--log-level",
        default=None,
        type=str.upper,
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Override FORGE_LOG_LEVEL",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Entry point for running the sidecar control server via CLI."""

    args = build_parser().parse_args(argv)
    settings = get_settings()
    updates: dict[str, Any] = {}
    if args.state_dir is not None:
        updates["state_dir"] = args.state_dir.expanduser().resolve()
    if args.log_level:
        updates["log_level"] = args.log_level
    if updates:
        settings = settings.model_copy(update=updates)
    configure_logging(settings.log_level)

    host = args.host or settings.host
    port = args.port or settings.port
    app = create_app(settings)
    logger.info(
        "Launching forge sidecar",
        extra={
            "version": __version__,
            "bind": f"{host}:{port}",
            "state_dir": str(settings.state_dir),
            "opencode_version": settings.opencode_version,
        },
    )

    import uvicorn

    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


__all__ = [
    "ApiError",
    "SidecarServices",
    "build_parser",
    "build_services",
    "configure_logging",
    "create_app",
    "main",
]


if __name__ == "__main__":
    main()
