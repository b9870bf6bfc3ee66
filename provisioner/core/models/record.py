"""
Execution records — the durable outcome of each step.

Records are owned by the StateRecorder and serialized into the state
file. A record is created as ``pending`` when its step starts and
finalized as ``succeeded`` / ``failed`` / ``skipped`` when it ends.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

StepStatus = Literal["pending", "succeeded", "failed", "skipped"]

PENDING: StepStatus = "pending"
SUCCEEDED: StepStatus = "succeeded"
FAILED: StepStatus = "failed"
SKIPPED: StepStatus = "skipped"


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class ExecutionRecord(BaseModel):
    """Outcome of one step on this host."""

    id: str
    status: StepStatus = PENDING
    timestamp: str = Field(default_factory=_now_iso)
    error: str | None = None

    fingerprint: str | None = None      # StepDescriptor.fingerprint when it ran
    duration_ms: int = 0
    environment: dict[str, str] = Field(default_factory=dict)  # exported vars

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED


class RecordStore(BaseModel):
    """Root document of the state file."""

    schema_version: int = 1
    updated_at: str = Field(default_factory=_now_iso)
    records: dict[str, ExecutionRecord] = Field(default_factory=dict)

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = _now_iso()
