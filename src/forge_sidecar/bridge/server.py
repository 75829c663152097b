"""FastMCP bootstrap for the companion bridge started by opencode."""

from __future__ import annotations

import logging
import os
from typing import Optional

from fastmcp import FastMCP

from .. import __version__
from ..server import configure_logging
from .tools import HostApiClient, register_tools

logger = logging.getLogger(__name__)

HOST_API_URL_ENV = "FORGE_HOST_API_URL"
HOST_TOKEN_ENV = "FORGE_HOST_TOKEN"


def create_bridge(client: Optional[HostApiClient] = None) -> FastMCP:
    """Instantiate the bridge server with the host ability tools."""

    if client is None:
        url = os.environ.get(HOST_API_URL_ENV)
        if not url:
            raise RuntimeError(f"{HOST_API_URL_ENV} is not set")
        client = HostApiClient(url, os.environ.get(HOST_TOKEN_ENV, ""))

    server = FastMCP(
        name="Forge host bridge",
        version=__version__,
        instructions="Exposes the host site's abilities to opencode agents.",
    )
    handles = register_tools(server, client=client)
    setattr(server, "host_client", client)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for the stdio bridge."""

    configure_logging(os.environ.get("FORGE_LOG_LEVEL", "WARNING").upper())
    server = create_bridge()
    logger.info(
        "Launching host bridge",
        extra={"version": __version__, "host_api": server.host_client.base_url},
    )
    server.run()


__all__ = ["HOST_API_URL_ENV", "HOST_TOKEN_ENV", "create_bridge", "main"]
