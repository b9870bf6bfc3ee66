"""
Step models — the immutable declaration of one provisioning action.

Steps are loaded once from the plan file and never mutated. The engine
hands ``params`` to the action handler registered for ``kind``.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

StepKind = Literal["install-package", "fetch-file", "set-env", "run-command"]

STEP_KINDS: tuple[str, ...] = ("install-package", "fetch-file", "set-env", "run-command")


def _stringify(value: Any) -> str:
    """YAML scalars come in typed; params are strings by contract."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class VerifySpec(BaseModel):
    """Explicit verification hook declared on a step.

    Any combination may be given; every declared part must hold.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    tool: str | None = None             # binary that must be on PATH
    min_version: str | None = None      # tool version >= this
    exact_version: str | None = None    # tool version == this
    version_command: str | None = None  # argv override, e.g. "node --version"
    version_pattern: str | None = None  # regex with one capture group
    path: str | None = None             # file that must exist


class StepDescriptor(BaseModel):
    """One provisioning action plus its prerequisites."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    kind: StepKind
    params: dict[str, str] = Field(default_factory=dict)
    requires: tuple[str, ...] = ()
    description: str = ""
    verify: VerifySpec | None = None

    @field_validator("params", mode="before")
    @classmethod
    def _coerce_params(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): _stringify(v) for k, v in value.items()}
        return value

    @field_validator("requires", mode="before")
    @classmethod
    def _coerce_requires(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        return value

    @property
    def fingerprint(self) -> str:
        """Stable hash of what the step does (kind + params).

        A recorded success only counts for the same fingerprint, so
        editing a step's params causes it to run again.
        """
        payload = json.dumps(
            {"kind": self.kind, "params": self.params},
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    @property
    def label(self) -> str:
        return self.description or self.id
