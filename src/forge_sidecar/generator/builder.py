"""Build and materialize the opencode.json document for each sidecar start."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Annotated, Any, Callable, Iterable, Literal, Mapping, Union

from pydantic import BaseModel, Field

from ..agents import AgentProfile, RosterLoader, recommended_model, resolve_model
from ..config import SidecarSettings
from .permissions import PermissionPolicy
from .runtime import CompanionRuntime, bridge_command, detect_companion_runtime

logger = logging.getLogger(__name__)

SCHEMA_URL = "https://opencode.ai/config.json"
REGISTRATION_NAME = "host"


class ConfigGenerationError(RuntimeError):
    """Raised when the roster cannot produce a usable sidecar config."""


class AgentEntry(BaseModel):
    """One agent as rendered into the sidecar config."""

    id: str
    mode: Literal["primary", "subagent"]
    model: str
    description: str
    prompt: str
    color: str

    def to_document(self) -> dict[str, str]:
        return {
            "mode": self.mode,
            "model": self.model,
            "description": self.description,
            "prompt": self.prompt,
            "color": self.color,
        }


class LocalRegistration(BaseModel):
    """Companion bridge spawned by the sidecar itself."""

    type: Literal["local"] = "local"
    command: list[str]
    environment: dict[str, str] = Field(default_factory=dict)


class RemoteRegistration(BaseModel):
    """Host MCP endpoint reached over HTTP."""

    type: Literal["remote"] = "remote"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def bearer(cls, url: str, token: str) -> "RemoteRegistration":
        return cls(url=url, headers={"Authorization": f"Bearer {token}"})

    @classmethod
    def basic(cls, url: str, username: str, password: str) -> "RemoteRegistration":
        encoded = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        return cls(url=url, headers={"Authorization": f"Basic {encoded}"})


Registration = Annotated[Union[LocalRegistration, RemoteRegistration], Field(discriminator="type")]


class SidecarConfig(BaseModel):
    """Fully resolved configuration for one sidecar start."""

    default_agent: str
    agents: list[AgentEntry]
    providers: dict[str, str] = Field(default_factory=dict)
    permissions: PermissionPolicy = Field(default_factory=PermissionPolicy)
    mcp_registration: Registration | None = None

    def to_document(self) -> dict[str, Any]:
        document: dict[str, Any] = {
            "$schema": SCHEMA_URL,
            "default_agent": self.default_agent,
            "agent": {agent.id: agent.to_document() for agent in self.agents},
            "permission": self.permissions.to_document(),
        }
        if self.providers:
            document["provider"] = {
                provider_id: {"options": {"apiKey": api_key}}
                for provider_id, api_key in sorted(self.providers.items())
            }
        if self.mcp_registration is not None:
            document["mcp"] = {REGISTRATION_NAME: self.mcp_registration.model_dump()}
        return document


def _configured(credentials: Mapping[str, str]) -> dict[str, str]:
    return {provider: key for provider, key in credentials.items() if provider and key}


def _profiles(roster: Mapping[str, AgentProfile] | Iterable[AgentProfile]) -> list[AgentProfile]:
    if isinstance(roster, Mapping):
        return list(roster.values())
    return list(roster)


class ConfigGenerator:
    """Turns the agent roster and provider credentials into a :class:`SidecarConfig`."""

    def generate(
        self,
        roster: Mapping[str, AgentProfile] | Iterable[AgentProfile],
        credentials: Mapping[str, str],
        policy: PermissionPolicy | None = None,
        *,
        capabilities: Iterable[str] = (),
        pins: Mapping[str, str] | None = None,
        registration: LocalRegistration | RemoteRegistration | None = None,
    ) -> SidecarConfig:
        providers = _configured(credentials)
        active = set(capabilities)
        entries: list[AgentEntry] = []
        for profile in _profiles(roster):
            if not profile.is_available(active):
                logger.debug(
                    "Skipping agent with inactive capability",
                    extra={"agent": profile.id, "requires": profile.requires},
                )
                continue
            entries.append(
                AgentEntry(
                    id=profile.id,
                    mode=profile.mode,
                    model=resolve_model(profile, providers, pins),
                    description=profile.description,
                    prompt=profile.prompt.strip(),
                    color=profile.color,
                )
            )

        primaries = [entry.id for entry in entries if entry.mode == "primary"]
        if len(primaries) != 1:
            raise ConfigGenerationError(
                f"Roster must contain exactly one primary agent, found {len(primaries)}: {primaries}"
            )

        # primary first, then subagents in roster order
        entries.sort(key=lambda entry: entry.mode != "primary")
        return SidecarConfig(
            default_agent=primaries[0],
            agents=entries,
            providers=providers,
            permissions=policy or PermissionPolicy(),
            mcp_registration=registration,
        )

    def roster_for_display(
        self,
        roster: Mapping[str, AgentProfile] | Iterable[AgentProfile],
        credentials: Mapping[str, str],
        *,
        capabilities: Iterable[str] = (),
        pins: Mapping[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        providers = _configured(credentials)
        active = set(capabilities)
        pins = pins or {}
        result = []
        for profile in _profiles(roster):
            if not profile.is_available(active):
                continue
            recommended = recommended_model(profile, providers)
            current = pins.get(profile.id) or None
            result.append(
                {
                    "id": profile.id,
                    "name": profile.name,
                    "description": profile.description,
                    "color": profile.color,
                    "mode": profile.mode,
                    "current_model": current,
                    "effective_model": current or recommended,
                    "recommended_model": recommended,
                    "recommendations": list(profile.recommendations),
                }
            )
        result.sort(key=lambda entry: entry["mode"] != "primary")
        return result


def build_registration(
    settings: SidecarSettings,
    token: str,
    runtime: CompanionRuntime | None = None,
) -> LocalRegistration | RemoteRegistration | None:
    """Pick local bridge or remote endpoint registration for the host API."""

    script = str(settings.bridge_script) if settings.bridge_script else None
    if runtime is None:
        runtime = detect_companion_runtime(script)

    if runtime.available and settings.host_api_url:
        return LocalRegistration(
            command=bridge_command(runtime, script),
            environment={
                "FORGE_HOST_API_URL": settings.host_api_url,
                "FORGE_HOST_TOKEN": token,
            },
        )
    if settings.host_mcp_url:
        if settings.host_mcp_user and settings.host_mcp_password:
            return RemoteRegistration.basic(
                settings.host_mcp_url, settings.host_mcp_user, settings.host_mcp_password
            )
        return RemoteRegistration.bearer(settings.host_mcp_url, token)
    return None


class SettingsConfigSource:
    """Produces a fresh :class:`SidecarConfig` from settings on every call."""

    def __init__(
        self,
        settings: SidecarSettings,
        *,
        loader: RosterLoader | None = None,
        generator: ConfigGenerator | None = None,
        token_factory: Callable[[], str] | None = None,
        policy: PermissionPolicy | None = None,
        runtime: CompanionRuntime | None = None,
        credentials: Callable[[], Mapping[str, str]] | None = None,
    ) -> None:
        self._settings = settings
        self._credentials = credentials or (lambda: settings.provider_keys)
        self._loader = loader or RosterLoader(settings.profile_paths)
        self._generator = generator or ConfigGenerator()
        self._token_factory = token_factory
        self._policy = policy
        self._runtime = runtime

    def __call__(self) -> SidecarConfig:
        registration = None
        if self._token_factory is not None:
            registration = build_registration(self._settings, self._token_factory(), self._runtime)
        return self._generator.generate(
            self._loader.load_all(),
            self._credentials(),
            self._policy,
            capabilities=self._settings.capabilities,
            pins=self._settings.agent_models,
            registration=registration,
        )

    def roster_for_display(self) -> list[dict[str, Any]]:
        return self._generator.roster_for_display(
            self._loader.load_all(),
            self._credentials(),
            capabilities=self._settings.capabilities,
            pins=self._settings.agent_models,
        )


def write_config(config: SidecarConfig, path: Path) -> Path:
    """Write ``config`` to ``path`` so readers only ever see a complete file."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(config.to_document(), indent=2)
    fd, temp_name = tempfile.mkstemp(prefix=".opencode-", suffix=".json", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(temp_name, 0o600)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise
    return path


def config_fingerprint(config: SidecarConfig) -> str:
    """Stable hash of the config, ignoring short-lived registration credentials."""

    document = config.to_document()
    document.pop("mcp", None)
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def mask_secrets(document: dict[str, Any]) -> dict[str, Any]:
    """Copy of a rendered document with API keys and credentials redacted."""

    masked = json.loads(json.dumps(document))
    for provider in masked.get("provider", {}).values():
        options = provider.get("options", {})
        if "apiKey" in options:
            options["apiKey"] = "***"
    for registration in masked.get("mcp", {}).values():
        for key in ("environment", "headers"):
            if key in registration:
                registration[key] = {name: "***" for name in registration[key]}
    return masked


__all__ = [
    "AgentEntry",
    "ConfigGenerationError",
    "ConfigGenerator",
    "LocalRegistration",
    "REGISTRATION_NAME",
    "RemoteRegistration",
    "SCHEMA_URL",
    "SettingsConfigSource",
    "SidecarConfig",
    "build_registration",
    "config_fingerprint",
    "mask_secrets",
    "write_config",
]
