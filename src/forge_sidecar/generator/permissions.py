"""Default-deny permission policy for the sidecar."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

CATCH_ALL = "*"

READ_ONLY_COMMANDS: tuple[str, ...] = (
    "cat *",
    "head *",
    "tail *",
    "less *",
    "more *",
    "grep *",
    "rg *",
    "find *",
    "ls *",
    "tree *",
    "pwd",
    "wc *",
    "diff *",
    "file *",
    "stat *",
    "du *",
    "date",
    "git status*",
    "git log*",
    "git diff*",
    "git show*",
    "git branch",
    "git branch*",
    "wp *",
    "composer show*",
    "composer info*",
    "npm list*",
    "npm ls*",
    "bun pm ls*",
)

Decision = Literal["allow", "ask", "deny"]


class PermissionPolicy(BaseModel):
    """Tool permissions granted to every agent in the sidecar."""

    edit: Decision = "deny"
    external_directory: Decision = "deny"
    allowed_commands: tuple[str, ...] = Field(default=READ_ONLY_COMMANDS)
    extra_allowed_commands: tuple[str, ...] = Field(
        default=(),
        description="Additional shell patterns an operator opted into explicitly.",
    )

    @field_validator("allowed_commands", "extra_allowed_commands")
    @classmethod
    def _reject_catch_all(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        cleaned = tuple(pattern.strip() for pattern in value if pattern.strip())
        for pattern in cleaned:
            if pattern == CATCH_ALL:
                raise ValueError("The catch-all shell pattern is always denied")
        return cleaned

    def bash_rules(self) -> dict[str, str]:
        """Ordered pattern map; the catch-all deny is always last."""

        rules: dict[str, str] = {}
        for pattern in (*self.allowed_commands, *self.extra_allowed_commands):
            rules[pattern] = "allow"
        rules[CATCH_ALL] = "deny"
        return rules

    def to_document(self) -> dict[str, object]:
        return {
            "edit": self.edit,
            "external_directory": self.external_directory,
            "bash": self.bash_rules(),
        }


__all__ = ["CATCH_ALL", "PermissionPolicy", "READ_ONLY_COMMANDS"]
