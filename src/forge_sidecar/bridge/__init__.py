"""Companion MCP bridge exposing host abilities to the sidecar."""

from .tools import HostApiClient, HostApiError, ToolHandles, register_tools

__all__ = ["HostApiClient", "HostApiError", "ToolHandles", "register_tools"]
