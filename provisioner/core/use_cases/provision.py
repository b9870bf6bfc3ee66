"""
Provision use cases — the vertical slices behind each CLI command.

    load plan → compile → execute (records per step) → verify → ledger

Errors propagate as ``ProvisionError`` subclasses so the CLI can map
each one to its exit code. A run that started always leaves a ledger
entry, however it ended.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from provisioner.adapters.registry import HandlerRegistry, default_registry
from provisioner.core.config.loader import (
    PlanFile,
    find_plan_file,
    load_plan_file,
    resolve_state_path,
)
from provisioner.core.engine.compiler import Plan, compile_plan
from provisioner.core.engine.executor import CancelToken, Engine, ExecutionReport, Reporter
from provisioner.core.engine.verifier import Verifier
from provisioner.core.errors import ProvisionError, VerificationFailedError
from provisioner.core.models.record import ExecutionRecord
from provisioner.core.models.verification import VerificationResult
from provisioner.core.persistence.audit import RunEntry, RunLedger, ledger_path_for
from provisioner.core.persistence.state_file import StateRecorder

logger = logging.getLogger(__name__)


@dataclass
class LoadedPlan:
    """A compiled plan plus where it came from and where its state lives."""

    plan: Plan
    plan_file: PlanFile
    plan_path: Path | None
    state_path: Path


@dataclass
class RunResult:
    """Result of a provisioning run that completed execution."""

    loaded: LoadedPlan
    report: ExecutionReport
    verification: VerificationResult | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "plan": self.loaded.plan.name,
            "state_path": str(self.loaded.state_path),
            "report": self.report.to_dict(),
        }
        if self.verification is not None:
            result["verification"] = self.verification.to_dict()
        return result


@dataclass
class StatusResult:
    """Recorded state of every step in a plan."""

    loaded: LoadedPlan
    records: dict[str, ExecutionRecord] = field(default_factory=dict)

    def status_of(self, step_id: str) -> str:
        rec = self.records.get(step_id)
        return rec.status if rec else "pending"

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.loaded.plan.name,
            "state_path": str(self.loaded.state_path),
            "steps": [
                {
                    "id": step.id,
                    "kind": step.kind,
                    "status": self.status_of(step.id),
                    "timestamp": self.records[step.id].timestamp if step.id in self.records else None,
                    "error": self.records[step.id].error if step.id in self.records else None,
                }
                for step in self.loaded.plan
            ],
        }


def load_plan(plan_path: Path | None = None, state_path: Path | None = None) -> LoadedPlan:
    """Load, validate and compile a plan file.

    Raises:
        ConfigError: The plan file is missing or invalid.
        CompileError: The steps do not form a valid plan.
    """
    if plan_path is None:
        plan_path = find_plan_file()
    plan_file = load_plan_file(plan_path)
    plan = compile_plan(plan_file.steps, name=plan_file.name)
    return LoadedPlan(
        plan=plan,
        plan_file=plan_file,
        plan_path=plan_path,
        state_path=resolve_state_path(state_path, plan_path, plan_file.settings),
    )


def run_provisioning(
    plan_path: Path | None = None,
    state_path: Path | None = None,
    registry: HandlerRegistry | None = None,
    cancel: CancelToken | None = None,
    reporter: Reporter | None = None,
    force: bool = False,
    dry_run: bool = False,
    verify: bool = True,
    mock: bool = False,
    environ: MutableMapping[str, str] | None = None,
) -> RunResult:
    """Provision the host according to a plan file.

    Args:
        plan_path: Plan file (default: search upward for provision.yml).
        state_path: State file override.
        registry: Handler registry (default: built-in handlers).
        cancel: Cancellation token checked between steps.
        reporter: Receives every step transition.
        force: Re-run steps even if recorded as succeeded.
        dry_run: Show what would run; change nothing.
        verify: Run verification hooks after a successful execution.
        mock: Use the mock handler for every kind (implies no verification).
        environ: Environment receiving exported variables.

    Returns:
        RunResult.

    Raises:
        ConfigError, CompileError: Before anything runs.
        StepFailedError: A step failed; the run halted.
        CancelledError: Cancelled between steps.
        VerificationFailedError: Execution finished but checks failed.
    """
    loaded = load_plan(plan_path, state_path)
    settings = loaded.plan_file.settings
    if registry is None:
        registry = default_registry(
            mock=mock,
            fetch_attempts=settings.fetch_attempts,
            fetch_backoff=settings.fetch_backoff,
        )

    recorder = StateRecorder(loaded.state_path)
    engine = Engine(registry, recorder, cancel=cancel, reporter=reporter, environ=environ)
    ledger = RunLedger(ledger_path_for(loaded.state_path))

    start = time.monotonic()
    error: ProvisionError | None = None
    result: RunResult | None = None
    try:
        report = engine.execute(loaded.plan, force=force, dry_run=dry_run)
        result = RunResult(loaded=loaded, report=report)
        if verify and not dry_run and not registry.mock_mode:
            verifier = Verifier(environ=environ)
            result.verification = verifier.verify(loaded.plan, recorder.all_records())
            result.verification.raise_for_failures()
        return result
    except ProvisionError as e:
        error = e
        raise
    finally:
        if not dry_run:
            context = {
                "plan_path": str(loaded.plan_path) if loaded.plan_path else None,
                "state_path": str(loaded.state_path),
                "force": force,
                "mock": registry.mock_mode,
                "verify": verify,
            }
            _write_ledger(
                ledger, loaded, engine.report, error, start,
                completed=result is not None, context=context,
            )


def _write_ledger(
    ledger: RunLedger,
    loaded: LoadedPlan,
    report: ExecutionReport | None,
    error: ProvisionError | None,
    start: float,
    completed: bool,
    context: dict[str, Any],
) -> None:
    if isinstance(error, VerificationFailedError):
        status = "verification_failed"
    elif report is not None and (completed or error is not None):
        status = report.status
    else:
        status = "failed"

    ledger.write(RunEntry(
        run_id=report.run_id if report else "",
        plan=loaded.plan.name,
        status=status,
        steps_total=len(loaded.plan),
        steps_run=len(report.performed) if report else 0,
        steps_skipped=len(report.satisfied) if report else 0,
        failed_step=report.failed_step if report else None,
        error=str(error) if error else None,
        duration_ms=int((time.monotonic() - start) * 1000),
        context=context,
    ))


def verify_environment(
    plan_path: Path | None = None,
    state_path: Path | None = None,
    environ: MutableMapping[str, str] | None = None,
) -> VerificationResult:
    """Run verification hooks against what the state file records.

    Variables exported by succeeded set-env steps are re-applied first,
    as a run would when skipping those steps, so paths and checks that
    reference them resolve the same way they did during the run.
    """
    loaded = load_plan(plan_path, state_path)
    records = StateRecorder(loaded.state_path).all_records()

    env = os.environ if environ is None else environ
    for record in records:
        if record.succeeded and record.environment:
            env.update(record.environment)

    return Verifier(environ=env).verify(loaded.plan, records)


def get_status(plan_path: Path | None = None, state_path: Path | None = None) -> StatusResult:
    """Recorded status of every step in the plan."""
    loaded = load_plan(plan_path, state_path)
    records = StateRecorder(loaded.state_path).all_records()
    return StatusResult(loaded=loaded, records={r.id: r for r in records})


def reset_state(
    plan_path: Path | None = None,
    state_path: Path | None = None,
    step_ids: list[str] | None = None,
) -> int:
    """Forget recorded outcomes so the steps run again. Returns the count."""
    loaded = load_plan(plan_path, state_path)
    return StateRecorder(loaded.state_path).clear(step_ids or None)


def read_history(
    plan_path: Path | None = None,
    state_path: Path | None = None,
    limit: int = 20,
) -> list[RunEntry]:
    loaded = load_plan(plan_path, state_path)
    return RunLedger(ledger_path_for(loaded.state_path)).read_recent(limit)
