"""
Execution engine — runs a compiled plan against the host.

Flow per step, in plan order:

    cancel requested?   → record next pending step skipped, raise CancelledError
    recorded succeeded? → skip (replay exported env)
    otherwise           → record pending → handler → succeeded | failed

Execution is strictly sequential: later steps may rely on binaries or
variables earlier steps provided. The first failure halts the run.
There are no retries at this layer; handlers own their retry policy.
"""

from __future__ import annotations

import logging
import os
import threading
import uuid
from collections.abc import Callable, MutableMapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, NoReturn

from provisioner.adapters.registry import HandlerRegistry
from provisioner.core.engine.compiler import Plan
from provisioner.core.errors import CancelledError, StepFailedError
from provisioner.core.models.record import FAILED, PENDING, SKIPPED, SUCCEEDED
from provisioner.core.models.step import StepDescriptor
from provisioner.core.persistence.state_file import StateRecorder

logger = logging.getLogger(__name__)

Transition = Literal["started", "succeeded", "failed", "skipped"]


class CancelToken:
    """External cancellation signal, checked between steps only."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class StepEvent:
    """One step transition, as shown on the diagnostic stream."""

    step_id: str
    transition: Transition
    message: str = ""
    duration_ms: int = 0


Reporter = Callable[[StepEvent], None]


@dataclass
class ExecutionReport:
    """What happened during one execute() call."""

    run_id: str = ""
    plan: str = ""
    events: list[StepEvent] = field(default_factory=list)
    performed: list[str] = field(default_factory=list)    # handlers called
    satisfied: list[str] = field(default_factory=list)    # skipped as already done
    failed_step: str | None = None
    cancelled_at: str | None = None
    dry_run: bool = False

    @property
    def status(self) -> str:
        if self.cancelled_at:
            return "cancelled"
        if self.failed_step:
            return "failed"
        return "ok"

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "plan": self.plan,
            "status": self.status,
            "dry_run": self.dry_run,
            "performed": self.performed,
            "satisfied": self.satisfied,
            "failed_step": self.failed_step,
            "cancelled_at": self.cancelled_at,
            "events": [
                {"step": e.step_id, "transition": e.transition, "message": e.message}
                for e in self.events
            ],
        }


def generate_run_id() -> str:
    """Generate a unique run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    return f"run-{now}-{uuid.uuid4().hex[:6]}"


class Engine:
    """Sequential, idempotent, fail-fast plan executor.

    Args:
        registry: Dispatches each step to the handler for its kind.
        recorder: Durable per-step state.
        cancel: Optional cancellation token, checked between steps.
        reporter: Optional callback receiving every step transition.
        environ: Environment receiving exported variables
            (default: ``os.environ``).
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        recorder: StateRecorder,
        cancel: CancelToken | None = None,
        reporter: Reporter | None = None,
        environ: MutableMapping[str, str] | None = None,
    ):
        self._registry = registry
        self._recorder = recorder
        self._cancel = cancel or CancelToken()
        self._reporter = reporter
        self._environ = os.environ if environ is None else environ
        self.report: ExecutionReport | None = None  # most recent run, even if it raised

    def _emit(self, report: ExecutionReport, event: StepEvent) -> None:
        report.events.append(event)
        marker = {"started": "→", "succeeded": "✓", "failed": "✗", "skipped": "⊘"}[event.transition]
        logger.info("%s %s %s", marker, event.step_id, event.message)
        if self._reporter is not None:
            self._reporter(event)

    def is_satisfied(self, step: StepDescriptor) -> bool:
        """Whether a previous run already completed this exact step."""
        record = self._recorder.record(step.id)
        if record is None or not record.succeeded:
            return False
        if record.fingerprint and record.fingerprint != step.fingerprint:
            logger.info("Step %s changed since it last ran, running it again", step.id)
            return False
        return True

    def execute(
        self,
        plan: Plan,
        force: bool = False,
        dry_run: bool = False,
        run_id: str = "",
    ) -> ExecutionReport:
        """Run every step of ``plan`` in order.

        Args:
            plan: Compiled plan.
            force: Ignore recorded successes and run every step.
            dry_run: Report what would run; call no handler, write no record.
            run_id: Identifier for logs and the ledger (generated if empty).

        Returns:
            ExecutionReport for a run that completed.

        Raises:
            StepFailedError: A handler failed; later steps did not run.
            CancelledError: Cancellation was requested between steps.
        """
        report = ExecutionReport(
            run_id=run_id or generate_run_id(), plan=plan.name, dry_run=dry_run,
        )
        self.report = report

        steps = list(plan)
        for index, step in enumerate(steps):
            if self._cancel.cancelled and not dry_run:
                self._stop(steps[index:], report, force)

            if not force and self.is_satisfied(step):
                record = self._recorder.record(step.id)
                if record is not None and record.environment and not dry_run:
                    self._environ.update(record.environment)
                report.satisfied.append(step.id)
                self._emit(report, StepEvent(step.id, "skipped", "already satisfied"))
                continue

            if dry_run:
                report.performed.append(step.id)
                self._emit(report, StepEvent(step.id, "started", f"[dry-run] would run {step.kind}"))
                continue

            self._run_step(step, report)

        return report

    def _stop(self, remaining: list[StepDescriptor], report: ExecutionReport, force: bool) -> NoReturn:
        """End a cancelled run at the first step that still has work to do.

        Records of steps that already succeeded are left untouched.
        """
        pending = next((s for s in remaining if force or not self.is_satisfied(s)), None)
        step = pending or remaining[0]
        if pending is not None:
            self._recorder.set(step.id, SKIPPED, error="cancelled", fingerprint=step.fingerprint)
        report.cancelled_at = step.id
        self._emit(report, StepEvent(step.id, "skipped", "cancelled"))
        raise CancelledError(step.id)

    def _run_step(self, step: StepDescriptor, report: ExecutionReport) -> None:
        self._recorder.set(step.id, PENDING, fingerprint=step.fingerprint)
        self._emit(report, StepEvent(step.id, "started", f"{step.kind}: {step.label}"))

        outcome = self._registry.perform(step)
        report.performed.append(step.id)
        duration_ms = int(outcome.metadata.get("duration_ms", 0))

        if not outcome.ok:
            reason = outcome.reason or "handler reported failure"
            self._recorder.set(
                step.id, FAILED, error=reason,
                fingerprint=step.fingerprint, duration_ms=duration_ms,
            )
            report.failed_step = step.id
            self._emit(report, StepEvent(step.id, "failed", reason, duration_ms))
            raise StepFailedError(step.id, reason)

        if outcome.environment:
            self._environ.update(outcome.environment)
        self._recorder.set(
            step.id, SUCCEEDED,
            fingerprint=step.fingerprint,
            duration_ms=duration_ms,
            environment=outcome.environment,
        )
        summary = outcome.output.splitlines()[0] if outcome.output else ""
        self._emit(report, StepEvent(step.id, "succeeded", summary, duration_ms))
