from __future__ import annotations

import json
import stat
from pathlib import Path

import pytest

from forge_sidecar.process import FileStateStore, MemoryStateStore
from forge_sidecar.process.state import PROVIDER_KEYS_KEY
from forge_sidecar.providers import (
    ProviderKeyError,
    ProviderKeyStore,
    UnknownProviderError,
    mask_key,
)


def test_mask_key_keeps_prefix_and_suffix() -> None:
    assert mask_key("sk-ant-api03-abcdefgh1234") == "sk-ant-a*************1234"
    assert mask_key("short-key") == "*********"


def test_saved_keys_override_environment_keys() -> None:
    providers = ProviderKeyStore(MemoryStateStore(), defaults={"openai": "sk-env", "google": ""})

    providers.set_key("openai", "  sk-saved  ")
    providers.set_key("anthropic", "sk-ant-1")

    assert providers.keys() == {"openai": "sk-saved", "anthropic": "sk-ant-1"}


def test_delete_falls_back_to_environment_key() -> None:
    store = MemoryStateStore()
    providers = ProviderKeyStore(store, defaults={"openai": "sk-env"})
    providers.set_key("openai", "sk-saved")

    assert providers.delete_key("openai") is True
    assert providers.delete_key("openai") is False
    assert providers.keys() == {"openai": "sk-env"}
    assert store.get(PROVIDER_KEYS_KEY) is None


def test_rejects_unknown_provider_and_blank_key() -> None:
    providers = ProviderKeyStore(MemoryStateStore())

    with pytest.raises(UnknownProviderError):
        providers.set_key("acme", "key")
    with pytest.raises(UnknownProviderError):
        providers.delete_key("acme")
    with pytest.raises(ProviderKeyError):
        providers.set_key("google", "   ")
    assert providers.has_any_key() is False


def test_describe_masks_keys_and_reports_source() -> None:
    providers = ProviderKeyStore(MemoryStateStore(), defaults={"openai": "sk-proj-0123456789abcd"})
    providers.set_key("anthropic", "sk-ant-api03-abcdefgh1234")

    described = providers.describe()

    assert described["has_any_key"] is True
    assert described["use_opencode"] is False
    anthropic = described["providers"]["anthropic"]
    assert anthropic["configured"] is True
    assert anthropic["masked_key"] == "sk-ant-a*************1234"
    assert anthropic["source"] == "saved"
    assert described["providers"]["openai"]["source"] == "environment"
    assert described["providers"]["google"] == {
        "id": "google",
        "name": "Google (Gemini)",
        "models": ["google/gemini-3-pro-high", "google/gemini-3-pro", "google/gemini-3-flash"],
        "configured": False,
        "masked_key": None,
        "source": None,
    }
    assert "sk-ant-api03-abcdefgh1234" not in json.dumps(described)


def test_corrupt_state_is_ignored() -> None:
    providers = ProviderKeyStore(MemoryStateStore({PROVIDER_KEYS_KEY: "{not json"}))
    assert providers.keys() == {}


def test_saved_keys_are_private_on_disk(tmp_path: Path) -> None:
    store = FileStateStore(tmp_path)
    ProviderKeyStore(store).set_key("google", "AIza-secret")

    path = store.path_for(PROVIDER_KEYS_KEY)
    assert json.loads(path.read_text(encoding="utf-8")) == {"google": "AIza-secret"}
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert ProviderKeyStore(FileStateStore(tmp_path)).keys() == {"google": "AIza-secret"}
