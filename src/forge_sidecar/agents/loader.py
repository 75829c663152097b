"""Agent roster loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import AgentProfile

BUNDLED_ROSTER = Path(__file__).resolve().parent / "roster"


class RosterLoadError(RuntimeError):
    """Raised when one or more roster files cannot be parsed."""


class RosterLoader:
    """Loads agent profiles from YAML files on disk.

    The bundled roster is always searched first; extra search paths can add
    agents or replace bundled ones by reusing their id.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None, *, include_bundled: bool = True) -> None:
        paths = [BUNDLED_ROSTER] if include_bundled else []
        paths.extend(Path(path) for path in (search_paths or []))
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    def load_all(self) -> dict[str, AgentProfile]:
        """Load profiles from all configured search paths.

        Later search paths override earlier ones when profile ids collide.
        """

        profiles: dict[str, AgentProfile] = {}
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:  # pragma: no cover - library type
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                try:
                    profile = AgentProfile.model_validate(document)
                except ValidationError as exc:
                    errors.append(f"Agent validation error in {path}: {exc}")
                    continue

                profiles[profile.id] = profile

        if errors:
            raise RosterLoadError("; ".join(errors))

        return profiles


__all__ = ["BUNDLED_ROSTER", "RosterLoadError", "RosterLoader"]
