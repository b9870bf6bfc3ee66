"""
Action handler base — the contract between the engine and the host.

The engine never touches the host directly. Each step kind is served
by one ActionHandler whose single operation is::

    perform(params) -> Outcome

Handlers report expected failures in the Outcome. They do not raise
for them; the registry converts anything unexpected into a failure.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


class Outcome(BaseModel):
    """Result of performing one step."""

    ok: bool
    reason: str = ""
    output: str = ""
    environment: dict[str, str] = Field(default_factory=dict)  # vars to export
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def success(cls, output: str = "", **kwargs: Any) -> Outcome:
        """Create a success outcome."""
        return cls(ok=True, output=output, **kwargs)

    @classmethod
    def failure(cls, reason: str, **kwargs: Any) -> Outcome:
        """Create a failure outcome."""
        return cls(ok=False, reason=reason, **kwargs)


class ActionHandler(ABC):
    """Abstract base class for step handlers.

    To add a handler:
        1. Subclass ActionHandler
        2. Implement kind and perform
        3. Register it in the HandlerRegistry
    """

    @property
    @abstractmethod
    def kind(self) -> str:
        """The step kind this handler serves (e.g. 'run-command')."""

    @abstractmethod
    def perform(self, params: dict[str, str]) -> Outcome:
        """Carry out the step and report success or failure."""

    def validate(self, params: dict[str, str]) -> tuple[bool, str]:
        """Check params before performing. Returns (is_valid, error)."""
        return True, ""


def require(params: dict[str, str], *names: str) -> tuple[bool, str]:
    """Validate that every named param is present and non-empty."""
    missing = [n for n in names if not params.get(n, "").strip()]
    if missing:
        return False, "Missing required param(s): " + ", ".join(repr(m) for m in missing)
    return True, ""


def as_bool(value: str | None, default: bool = False) -> bool:
    """Interpret a string param as a boolean flag."""
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def expand_path(value: str) -> Path:
    """Expand $VARS and ~ in a path param."""
    return Path(os.path.expandvars(value)).expanduser()


def as_int(value: str | None, default: int) -> int:
    """Interpret a string param as an integer, falling back to default."""
    try:
        return int(value) if value else default
    except ValueError:
        return default
