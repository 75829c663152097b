"""Sidecar configuration generation."""

from .builder import (
    AgentEntry,
    ConfigGenerationError,
    ConfigGenerator,
    LocalRegistration,
    REGISTRATION_NAME,
    RemoteRegistration,
    SCHEMA_URL,
    SettingsConfigSource,
    SidecarConfig,
    build_registration,
    config_fingerprint,
    mask_secrets,
    write_config,
)
from .permissions import CATCH_ALL, READ_ONLY_COMMANDS, PermissionPolicy
from .runtime import CompanionRuntime, bridge_command, detect_companion_runtime

__all__ = [
    "AgentEntry",
    "CATCH_ALL",
    "CompanionRuntime",
    "ConfigGenerationError",
    "ConfigGenerator",
    "LocalRegistration",
    "PermissionPolicy",
    "READ_ONLY_COMMANDS",
    "REGISTRATION_NAME",
    "RemoteRegistration",
    "SCHEMA_URL",
    "SettingsConfigSource",
    "SidecarConfig",
    "bridge_command",
    "build_registration",
    "config_fingerprint",
    "detect_companion_runtime",
    "mask_secrets",
    "write_config",
]
