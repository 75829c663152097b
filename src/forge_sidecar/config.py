"""Configuration management for the forge sidecar."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

MIN_IDLE_THRESHOLD = 300
MAX_IDLE_THRESHOLD = 86400

DEFAULT_ALLOWED_ORIGINS = ("https://app.opencode.ai", "http://localhost:3000")


def clamp_idle_threshold(value: int) -> int:
    """Clamp an idle threshold (seconds) into the supported window."""

    return max(MIN_IDLE_THRESHOLD, min(MAX_IDLE_THRESHOLD, int(value)))


def _split_list(value, *, separator: str = ","):
    if value is None or value == "":
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(item).strip() for item in value if str(item).strip())
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(separator) if part.strip())
    raise TypeError("expected a list or a separated string")


class SidecarSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    state_dir: Path = Field(default=Path("~/.forge-sidecar"), validation_alias="FORGE_STATE_DIR")
    opencode_version: str = Field(default="1.1.13", validation_alias="FORGE_OPENCODE_VERSION")
    release_base_url: str = Field(
        default="https://github.com/sst/opencode/releases/download",
        validation_alias="FORGE_RELEASE_BASE_URL",
    )
    release_api_url: str = Field(
        default="https://api.github.com/repos/sst/opencode/releases/latest",
        validation_alias="FORGE_RELEASE_API_URL",
    )
    default_port: int = Field(default=4096, validation_alias="FORGE_DEFAULT_PORT")
    port_scan_range: int = Field(default=100, validation_alias="FORGE_PORT_SCAN_RANGE")
    startup_timeout: float = Field(default=10.0, validation_alias="FORGE_STARTUP_TIMEOUT")
    health_interval: float = Field(default=0.25, validation_alias="FORGE_HEALTH_INTERVAL")
    auth_secret: str | None = Field(default=None, validation_alias="FORGE_AUTH_SECRET")
    token_ttl: int = Field(default=3600, validation_alias="FORGE_TOKEN_TTL")
    admin_key: str | None = Field(default=None, validation_alias="FORGE_ADMIN_KEY")
    allowed_origins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_ALLOWED_ORIGINS, validation_alias="FORGE_ALLOWED_ORIGINS"
    )
    working_directory: Path = Field(default=Path("."), validation_alias="FORGE_WORKING_DIRECTORY")
    idle_threshold: int = Field(default=1800, validation_alias="FORGE_IDLE_THRESHOLD")
    auto_shutdown: bool = Field(default=True, validation_alias="FORGE_AUTO_SHUTDOWN")
    idle_check_interval: float = Field(default=300.0, validation_alias="FORGE_IDLE_CHECK_INTERVAL")
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(), validation_alias="FORGE_PROFILE_PATHS"
    )
    provider_keys: dict[str, str] = Field(default_factory=dict, validation_alias="FORGE_PROVIDER_KEYS")
    agent_models: dict[str, str] = Field(default_factory=dict, validation_alias="FORGE_AGENT_MODELS")
    capabilities: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), validation_alias="FORGE_CAPABILITIES"
    )
    host_api_url: str | None = Field(default=None, validation_alias="FORGE_HOST_API_URL")
    host_mcp_url: str | None = Field(default=None, validation_alias="FORGE_HOST_MCP_URL")
    host_mcp_user: str | None = Field(default=None, validation_alias="FORGE_HOST_MCP_USER")
    host_mcp_password: str | None = Field(default=None, validation_alias="FORGE_HOST_MCP_PASSWORD")
    bridge_script: Path | None = Field(default=None, validation_alias="FORGE_BRIDGE_SCRIPT")
    log_level: str = Field(default="INFO", validation_alias="FORGE_LOG_LEVEL")
    host: str = Field(default="127.0.0.1", validation_alias="FORGE_HOST")
    port: int = Field(default=8765, validation_alias="FORGE_PORT")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "FORGE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("opencode_version")
    @classmethod
    def _strip_version_prefix(cls, value: str) -> str:
        normalized = value.strip()
        if normalized.startswith("v"):
            normalized = normalized[1:]
        if not normalized:
            raise ValueError("FORGE_OPENCODE_VERSION must not be empty")
        return normalized

    @field_validator("allowed_origins", "capabilities", mode="before")
    @classmethod
    def _parse_list(cls, value):
        return _split_list(value)

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if isinstance(value, str):
            return tuple(Path(part) for part in _split_list(value, separator=os.pathsep))
        return tuple(Path(str(item)) for item in _split_list(value))

    @field_validator("capabilities")
    @classmethod
    def _lowercase_capabilities(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(item.lower() for item in value)

    @field_validator("idle_threshold")
    @classmethod
    def _clamp_idle_threshold(cls, value: int) -> int:
        return clamp_idle_threshold(value)

    @field_validator("default_port", "port")
    @classmethod
    def _validate_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError("ports must be between 1 and 65535")
        return value

    @field_validator("port_scan_range", "token_ttl")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value

    @field_validator("startup_timeout", "health_interval", "idle_check_interval")
    @classmethod
    def _validate_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("intervals and timeouts must be positive")
        return value


@lru_cache(maxsize=1)
def get_settings() -> SidecarSettings:
    """Return cached settings instance."""

    settings = SidecarSettings()
    settings.state_dir = settings.state_dir.expanduser().resolve()
    settings.working_directory = settings.working_directory.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    return settings


__all__ = [
    "DEFAULT_ALLOWED_ORIGINS",
    "MAX_IDLE_THRESHOLD",
    "MIN_IDLE_THRESHOLD",
    "SidecarSettings",
    "clamp_idle_threshold",
    "get_settings",
]
