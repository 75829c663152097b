"""Tool registration for the host-ability bridge."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import quote

import httpx
from fastmcp import FastMCP

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 60.0


class HostApiError(RuntimeError):
    """Raised when the host ability API rejects or fails a call."""


class HostApiClient:
    """Thin bearer-authenticated client for the host ability endpoints."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("Host API URL must not be empty")
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=REQUEST_TIMEOUT))

    @property
    def base_url(self) -> str:
        return self._base_url

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _call(self, method: str, path: str, *, body: Any = None) -> Any:
        url = f"{self._base_url}{path}"
        try:
            async with self._client_factory() as client:
                response = await client.request(method, url, headers=self._headers(), json=body)
        except httpx.HTTPError as exc:
            raise HostApiError(f"Host API unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise HostApiError(f"Host API returned HTTP {response.status_code}: {response.text[:300]}")
        try:
            return response.json()
        except ValueError as exc:
            raise HostApiError("Host API returned a non-JSON body") from exc

    async def list_abilities(self) -> Any:
        return await self._call("GET", "/abilities")

    async def run_ability(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        return await self._call("POST", f"/abilities/{quote(name, safe='/')}/run", body=arguments or {})


@dataclass(slots=True)
class ToolHandles:
    list_abilities: Any
    run_ability: Any


def register_tools(server: FastMCP, *, client: HostApiClient) -> ToolHandles:
    """Register the bridge's MCP tools on the server."""

    async def _list_abilities() -> dict[str, Any]:
        """List the abilities the host exposes to agents."""

        abilities = await client.list_abilities()
        return {"abilities": abilities}

    async def _run_ability(name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a host ability by name with JSON arguments."""

        if not name or not name.strip():
            raise ValueError("Ability name must not be empty")
        logger.info("Running host ability", extra={"ability": name})
        result = await client.run_ability(name.strip(), arguments)
        return {"ability": name.strip(), "result": result}

    tool_list = server.tool(
        name="list_abilities",
        description="List the abilities registered on the host site.",
    )(_list_abilities)

    tool_run = server.tool(
        name="run_ability",
        description="Execute a host ability with the given arguments and return its result.",
    )(_run_ability)

    return ToolHandles(list_abilities=tool_list, run_ability=tool_run)


__all__ = ["HostApiClient", "HostApiError", "ToolHandles", "register_tools"]
