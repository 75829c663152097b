"""Forwarding of caller requests to the local opencode server."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Callable, Mapping

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.requests import Request

from .auth import TOKEN_QUERY_PARAM
from .config import DEFAULT_ALLOWED_ORIGINS

if TYPE_CHECKING:
    from .activity import ActivityMonitor
    from .process.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

CANONICAL_ORIGIN = "https://app.opencode.ai"
DIRECTORY_HEADER = "X-Opencode-Directory"
INTERNAL_QUERY_PARAMS = frozenset({TOKEN_QUERY_PARAM, "path", "rest_route"})
BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
STANDARD_TIMEOUT = 120.0
STREAM_CONNECT_TIMEOUT = 10.0


@dataclass(frozen=True)
class CorsPolicy:
    """CORS headers for the proxy route."""

    allowed_origins: tuple[str, ...] = DEFAULT_ALLOWED_ORIGINS
    canonical_origin: str = CANONICAL_ORIGIN
    methods: tuple[str, ...] = ("GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS")
    headers: tuple[str, ...] = ("Content-Type", "Accept", "Authorization", DIRECTORY_HEADER)
    max_age: int = 86400
    _allowed: frozenset[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        origins = {origin.rstrip("/") for origin in self.allowed_origins}
        origins.add(self.canonical_origin)
        object.__setattr__(self, "_allowed", frozenset(origins))

    def allow_origin(self, origin: str | None) -> str:
        if origin and origin.rstrip("/") in self._allowed:
            return origin
        return self.canonical_origin

    def headers_for(self, origin: str | None) -> dict[str, str]:
        return {
            "Access-Control-Allow-Origin": self.allow_origin(origin),
            "Access-Control-Allow-Methods": ", ".join(self.methods),
            "Access-Control-Allow-Headers": ", ".join(self.headers),
            "Access-Control-Max-Age": str(self.max_age),
            "Vary": "Origin",
        }


def is_event_stream(accept: str | None) -> bool:
    return "text/event-stream" in (accept or "").lower()


def forwarded_query(params: Mapping[str, str] | object) -> list[tuple[str, str]]:
    """Query pairs minus the parameters that only mean something to this proxy."""

    items = params.multi_items() if hasattr(params, "multi_items") else list(dict(params).items())
    return [(key, value) for key, value in items if key not in INTERNAL_QUERY_PARAMS]


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _default_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(STANDARD_TIMEOUT))


def _default_stream_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(None, connect=STREAM_CONNECT_TIMEOUT))


class RequestProxy:
    """Relays standard and Server-Sent-Events requests to the sidecar."""

    def __init__(
        self,
        supervisor: "ProcessSupervisor",
        activity: "ActivityMonitor",
        *,
        working_directory: Path,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        stream_client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._activity = activity
        self._working_directory = str(working_directory)
        self._client_factory = client_factory or _default_client_factory
        self._stream_client_factory = stream_client_factory or client_factory or _default_stream_client_factory

    def _upstream_headers(self, request: Request) -> dict[str, str]:
        headers = {
            "Accept": request.headers.get("accept") or "*/*",
            DIRECTORY_HEADER: self._working_directory,
        }
        content_type = request.headers.get("content-type")
        if content_type:
            headers["Content-Type"] = content_type
        last_event_id = request.headers.get("last-event-id")
        if last_event_id:
            headers["Last-Event-ID"] = last_event_id
        return headers

    async def forward(self, request: Request, path: str) -> Response:
        base_url = self._supervisor.server_url()
        if base_url is None:
            return error_response(503, "OpenCode server is not running")

        target = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
        method = request.method.upper()
        params = forwarded_query(request.query_params)
        headers = self._upstream_headers(request)
        body = await request.body() if method in BODY_METHODS else b""

        if is_event_stream(request.headers.get("accept")):
            return await self._stream(method, target, params, headers, body)
        return await self._standard(method, target, params, headers, body)

    async def _standard(
        self,
        method: str,
        target: str,
        params: list[tuple[str, str]],
        headers: dict[str, str],
        body: bytes,
    ) -> Response:
        try:
            async with self._client_factory() as client:
                upstream = await client.request(
                    method,
                    target,
                    params=params,
                    headers=headers,
                    content=body or None,
                )
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            logger.warning("opencode unreachable", extra={"target": target, "error": str(exc)})
            return error_response(503, "OpenCode server is not reachable")
        except httpx.HTTPError as exc:
            logger.warning("Upstream request failed", extra={"target": target, "error": str(exc)})
            return error_response(502, f"Upstream request failed: {exc}")

        if upstream.status_code < 400:
            self._activity.record_activity()
        response_headers = {}
        content_type = upstream.headers.get("content-type")
        if content_type:
            response_headers["Content-Type"] = content_type
        return Response(content=upstream.content, status_code=upstream.status_code, headers=response_headers)

    async def _stream(
        self,
        method: str,
        target: str,
        params: list[tuple[str, str]],
        headers: dict[str, str],
        body: bytes,
    ) -> Response:
        client = self._stream_client_factory()
        upstream_request = client.build_request(
            method,
            target,
            params=params,
            headers=headers,
            content=body or None,
        )
        try:
            upstream = await client.send(upstream_request, stream=True)
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            await client.aclose()
            logger.warning("opencode unreachable", extra={"target": target, "error": str(exc)})
            return error_response(503, "OpenCode server is not reachable")
        except httpx.HTTPError as exc:
            await client.aclose()
            logger.warning("Upstream stream failed", extra={"target": target, "error": str(exc)})
            return error_response(502, f"Upstream request failed: {exc}")

        if upstream.status_code < 400:
            self._activity.record_activity()

        async def relay() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.aiter_bytes():
                    yield chunk
            except httpx.HTTPError as exc:
                # sidecar went away mid-stream
                logger.info("Upstream stream closed", extra={"target": target, "error": str(exc)})
            finally:
                await upstream.aclose()
                await client.aclose()

        return StreamingResponse(
            relay(),
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type", "text/event-stream"),
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )


__all__ = [
    "CANONICAL_ORIGIN",
    "CorsPolicy",
    "DIRECTORY_HEADER",
    "INTERNAL_QUERY_PARAMS",
    "RequestProxy",
    "error_response",
    "forwarded_query",
    "is_event_stream",
]
