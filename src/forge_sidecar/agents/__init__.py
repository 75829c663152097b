"""Agent roster models and loader exports."""

from .loader import BUNDLED_ROSTER, RosterLoadError, RosterLoader
from .models import (
    DEFAULT_MODEL,
    DEFAULT_PROVIDER,
    AgentProfile,
    provider_of,
    recommended_model,
    resolve_model,
)

__all__ = [
    "AgentProfile",
    "BUNDLED_ROSTER",
    "DEFAULT_MODEL",
    "DEFAULT_PROVIDER",
    "RosterLoadError",
    "RosterLoader",
    "provider_of",
    "recommended_model",
    "resolve_model",
]
