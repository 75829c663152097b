"""Agent roster models and model selection."""

from __future__ import annotations

import re
from typing import Any, Iterable, Literal, Mapping

from pydantic import BaseModel, Field, field_validator

DEFAULT_PROVIDER = "opencode"
DEFAULT_MODEL = "opencode/big-pickle"

_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")


class AgentProfile(BaseModel):
    """Declarative description of one agent handed to the sidecar."""

    id: str = Field(..., description="Unique identifier, used as the agent key in the sidecar config.")
    name: str = Field(..., description="Display name for the agent.")
    description: str = Field(..., description="One-line summary the sidecar shows when delegating.")
    mode: Literal["primary", "subagent"] = Field(
        default="subagent",
        description="Whether this agent is the default entry point or a delegate.",
    )
    color: str = Field(default="#3858E9", description="Hex color used by sidecar clients.")
    prompt: str = Field(..., description="System prompt for the agent.")
    recommendations: list[str] = Field(
        default_factory=list,
        description="Ranked provider/model identifiers, best first.",
    )
    requires: str | None = Field(
        default=None,
        description="Host capability that must be active for this agent to be included.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Agent id must not be empty")
        return normalized

    @field_validator("color")
    @classmethod
    def _validate_color(cls, value: str) -> str:
        if not _COLOR_PATTERN.match(value):
            raise ValueError("Agent color must be a #RRGGBB hex string")
        return value.upper()

    @field_validator("recommendations", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError("recommendations must be a sequence of provider/model strings")

    @field_validator("recommendations")
    @classmethod
    def _validate_models(cls, value: list[str]) -> list[str]:
        for model in value:
            if "/" not in model:
                raise ValueError(f"Model '{model}' must be in provider/model form")
        return value

    @field_validator("requires")
    @classmethod
    def _normalize_requires(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        return normalized or None

    def is_available(self, capabilities: Iterable[str]) -> bool:
        return self.requires is None or self.requires in set(capabilities)


def provider_of(model: str) -> str:
    return model.split("/", 1)[0]


def recommended_model(profile: AgentProfile, configured_providers: Iterable[str]) -> str:
    """First recommendation whose provider is usable, else the zero-config default."""

    configured = set(configured_providers)
    for model in profile.recommendations:
        provider = provider_of(model)
        if provider == DEFAULT_PROVIDER or provider in configured:
            return model
    return DEFAULT_MODEL


def resolve_model(
    profile: AgentProfile,
    configured_providers: Iterable[str],
    pins: Mapping[str, str] | None = None,
) -> str:
    """Return the model an agent will run with: operator pin, then recommendation."""

    pinned = (pins or {}).get(profile.id)
    if pinned:
        return pinned
    return recommended_model(profile, configured_providers)


__all__ = [
    "AgentProfile",
    "DEFAULT_MODEL",
    "DEFAULT_PROVIDER",
    "provider_of",
    "recommended_model",
    "resolve_model",
]
