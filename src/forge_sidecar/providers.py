"""Operator-managed provider API keys layered over the environment configuration."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .process.state import PROVIDER_KEYS_KEY, StateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProviderInfo:
    id: str
    name: str
    models: tuple[str, ...]


SUPPORTED_PROVIDERS: dict[str, ProviderInfo] = {
    info.id: info
    for info in (
        ProviderInfo(
            "anthropic",
            "Anthropic (Claude)",
            ("anthropic/claude-opus-4-5", "anthropic/claude-sonnet-4-5", "anthropic/claude-haiku-4-5"),
        ),
        ProviderInfo(
            "google",
            "Google (Gemini)",
            ("google/gemini-3-pro-high", "google/gemini-3-pro", "google/gemini-3-flash"),
        ),
        ProviderInfo("openai", "OpenAI", ("openai/gpt-4o",)),
    )
}


class ProviderKeyError(ValueError):
    """Raised when a provider key update is rejected."""


class UnknownProviderError(ProviderKeyError):
    """Raised for provider ids outside :data:`SUPPORTED_PROVIDERS`."""


def mask_key(key: str) -> str:
    """Keep the first eight and last four characters of long keys; hide short ones entirely."""

    if len(key) <= 12:
        return "*" * len(key)
    return key[:8] + "*" * (len(key) - 12) + key[-4:]


class ProviderKeyStore:
    """Keys saved at runtime win over keys from ``FORGE_PROVIDER_KEYS``."""

    def __init__(self, store: StateStore, *, defaults: Mapping[str, str] | None = None) -> None:
        self._store = store
        self._defaults = {provider: key for provider, key in (defaults or {}).items() if key}

    def _saved(self) -> dict[str, str]:
        raw = self._store.get(PROVIDER_KEYS_KEY)
        if not raw:
            return {}
        try:
            saved = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring unreadable provider key state")
            return {}
        if not isinstance(saved, dict):
            return {}
        return {str(provider): key for provider, key in saved.items() if isinstance(key, str) and key}

    def _write(self, saved: Mapping[str, str]) -> None:
        if saved:
            self._store.set(PROVIDER_KEYS_KEY, json.dumps(dict(sorted(saved.items()))))
        else:
            self._store.delete(PROVIDER_KEYS_KEY)

    def keys(self) -> dict[str, str]:
        return {**self._defaults, **self._saved()}

    def has_any_key(self) -> bool:
        return bool(self.keys())

    def set_key(self, provider: str, key: str) -> None:
        if provider not in SUPPORTED_PROVIDERS:
            raise UnknownProviderError(f"Unknown provider '{provider}'")
        key = key.strip()
        if not key:
            raise ProviderKeyError("API key must not be empty")
        saved = self._saved()
        saved[provider] = key
        self._write(saved)
        logger.info("Provider key saved", extra={"provider": provider})

    def delete_key(self, provider: str) -> bool:
        """Forget a saved key; returns False when none was saved."""

        if provider not in SUPPORTED_PROVIDERS:
            raise UnknownProviderError(f"Unknown provider '{provider}'")
        saved = self._saved()
        if saved.pop(provider, None) is None:
            return False
        self._write(saved)
        logger.info("Provider key deleted", extra={"provider": provider})
        return True

    def describe(self) -> dict[str, Any]:
        saved = self._saved()
        keys = self.keys()
        providers = {}
        for provider_id, info in SUPPORTED_PROVIDERS.items():
            key = keys.get(provider_id)
            if provider_id in saved:
                source = "saved"
            elif key:
                source = "environment"
            else:
                source = None
            providers[provider_id] = {
                "id": provider_id,
                "name": info.name,
                "models": list(info.models),
                "configured": bool(key),
                "masked_key": mask_key(key) if key else None,
                "source": source,
            }
        has_any = bool(keys)
        return {"providers": providers, "has_any_key": has_any, "use_opencode": not has_any}


__all__ = [
    "ProviderInfo",
    "ProviderKeyError",
    "ProviderKeyStore",
    "SUPPORTED_PROVIDERS",
    "UnknownProviderError",
    "mask_key",
]
