"""
Verification results — produced once per run, read-only after.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from provisioner.core.errors import VerificationFailedError


class CheckOutcome(BaseModel):
    """Result of one verification hook."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    hook: str = ""      # tool, file, env, packages, command
    passed: bool
    detail: str = ""


class VerificationResult(BaseModel):
    """All verification checks of a run, keyed by check name."""

    model_config = ConfigDict(frozen=True)

    checks: dict[str, CheckOutcome] = Field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks.values())

    @property
    def failures(self) -> dict[str, str]:
        return {name: c.detail for name, c in self.checks.items() if not c.passed}

    def raise_for_failures(self) -> None:
        """Raise VerificationFailedError if any check failed."""
        if not self.passed:
            raise VerificationFailedError(self.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "checks": {name: c.model_dump() for name, c in self.checks.items()},
        }
