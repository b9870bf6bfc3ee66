"""
Error taxonomy — every failure the engine can surface to a caller.

Each error class carries the process exit code the CLI uses for it.
The codes are reserved and stable:

    0    success
    1    ConfigError              plan file missing or invalid
    3    CompileError             cycle, missing prerequisite, duplicate id
    4    StepFailedError          a step failed; the run halted there
    5    VerificationFailedError  the run finished but checks failed
    130  CancelledError           the run was cancelled between steps

Nothing here is ever swallowed: callers either handle an error
explicitly or let it reach the CLI, which prints it and exits.
"""

from __future__ import annotations

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_COMPILE = 3
EXIT_STEP_FAILED = 4
EXIT_VERIFICATION_FAILED = 5
EXIT_CANCELLED = 130


class ProvisionError(Exception):
    """Base class for all provisioner errors."""

    exit_code: int = 1


class ConfigError(ProvisionError):
    """Raised when the plan file is missing or invalid."""

    exit_code = EXIT_CONFIG


# ── Compile errors (plan never runs) ────────────────────────────


class CompileError(ProvisionError):
    """Raised when a set of steps cannot be turned into a plan."""

    exit_code = EXIT_COMPILE


class CycleError(CompileError):
    """The prerequisite graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"Dependency cycle detected: {path}")


class MissingPrerequisiteError(CompileError):
    """A step requires a step id that is not declared."""

    def __init__(self, step_id: str, missing: str):
        self.step_id = step_id
        self.missing = missing
        super().__init__(f"Step '{step_id}' requires unknown step '{missing}'")


class DuplicateStepError(CompileError):
    """Two steps share the same id."""

    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Duplicate step id: '{step_id}'")


# ── Run errors ──────────────────────────────────────────────────


class StepFailedError(ProvisionError):
    """A step's action handler reported failure; the run halted."""

    exit_code = EXIT_STEP_FAILED

    def __init__(self, step_id: str, reason: str):
        self.step_id = step_id
        self.reason = reason
        super().__init__(f"Step '{step_id}' failed: {reason}")


class VerificationFailedError(ProvisionError):
    """All steps ran, but the environment does not pass its checks."""

    exit_code = EXIT_VERIFICATION_FAILED

    def __init__(self, failures: dict[str, str]):
        self.failures = dict(failures)
        lines = [f"{name}: {detail}" for name, detail in self.failures.items()]
        super().__init__(
            f"{len(self.failures)} verification check(s) failed: " + "; ".join(lines)
        )


class CancelledError(ProvisionError):
    """The run was cancelled before ``step_id`` started."""

    exit_code = EXIT_CANCELLED

    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Run cancelled before step '{step_id}'")
