"""
Verifier — post-execution checks that steps had their declared effect.

A step is checked by its explicit ``verify`` block when it has one,
otherwise by the default hook for its kind (if any). Only steps that
succeeded are checked. Failures are reported, never rolled back:
provisioning is not transactional.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable, Iterable, Mapping, MutableMapping

from provisioner.adapters.base import expand_path
from provisioner.adapters.network.download import verify_checksum
from provisioner.adapters.packages.install import (
    detect_package_manager,
    missing_packages,
    split_packages,
)
from provisioner.core.detection.tool_version import check_version_constraint, get_tool_version
from provisioner.core.engine.compiler import Plan
from provisioner.core.models.record import ExecutionRecord
from provisioner.core.models.step import StepDescriptor, VerifySpec
from provisioner.core.models.verification import CheckOutcome, VerificationResult

logger = logging.getLogger(__name__)

VersionLookup = Callable[[str, str | None, str | None], str | None]
Hook = Callable[["HookContext"], CheckOutcome | None]


class HookContext:
    """What a hook can see: the step, its record, and the host version lookup."""

    def __init__(
        self,
        step: StepDescriptor,
        record: ExecutionRecord,
        lookup: VersionLookup,
        environ: Mapping[str, str],
    ):
        self.step = step
        self.record = record
        self.lookup = lookup
        self.environ = environ

    def outcome(self, hook: str, passed: bool, detail: str) -> CheckOutcome:
        return CheckOutcome(step_id=self.step.id, hook=hook, passed=passed, detail=detail)


def _check_tool(ctx: HookContext, spec: VerifySpec) -> CheckOutcome:
    tool = spec.tool or ""
    if not spec.version_command and shutil.which(tool) is None:
        return ctx.outcome("tool", False, f"'{tool}' not found on PATH")

    if not (spec.min_version or spec.exact_version):
        return ctx.outcome("tool", True, f"'{tool}' found")

    version = ctx.lookup(tool, spec.version_command, spec.version_pattern)
    if version is None:
        return ctx.outcome("tool", False, f"Cannot determine version of '{tool}'")

    if spec.exact_version:
        constraint = {"type": "exact", "reference": spec.exact_version}
    else:
        constraint = {"type": "gte", "reference": spec.min_version}
    verdict = check_version_constraint(version, constraint)
    if not verdict["valid"]:
        return ctx.outcome("tool", False, verdict["message"])
    return ctx.outcome("tool", True, f"'{tool}' {version}")


def verify_spec_hook(ctx: HookContext) -> CheckOutcome | None:
    """Evaluate an explicit ``verify`` block; every declared part must hold."""
    spec = ctx.step.verify
    if spec is None:
        return None

    details: list[str] = []
    if spec.tool:
        result = _check_tool(ctx, spec)
        if not result.passed:
            return result
        details.append(result.detail)
    if spec.path:
        path = expand_path(spec.path)
        if not path.exists():
            return ctx.outcome("file", False, f"{path} does not exist")
        details.append(f"{path} exists")
    return ctx.outcome("verify", True, "; ".join(details) or "nothing to check")


def install_package_hook(ctx: HookContext) -> CheckOutcome | None:
    params = ctx.step.params
    binary = params.get("binary")
    if binary:
        spec = VerifySpec(tool=binary, min_version=params.get("min_version"))
        return _check_tool(ctx, spec)

    manager = params.get("manager", "auto")
    pm = detect_package_manager() if manager == "auto" else manager
    if pm is None:
        return ctx.outcome("packages", False, "No supported package manager found")
    missing = missing_packages(split_packages(params.get("packages", "")), pm)
    if missing:
        return ctx.outcome("packages", False, "Not installed: " + ", ".join(missing))
    return ctx.outcome("packages", True, "All packages installed")


def fetch_file_hook(ctx: HookContext) -> CheckOutcome | None:
    dest = expand_path(ctx.step.params.get("dest", ""))
    if not dest.is_file():
        return ctx.outcome("file", False, f"{dest} does not exist")
    checksum = ctx.step.params.get("checksum")
    if checksum and not verify_checksum(dest, checksum):
        return ctx.outcome("file", False, f"{dest} does not match {checksum}")
    return ctx.outcome("file", True, f"{dest} present")


def set_env_hook(ctx: HookContext) -> CheckOutcome | None:
    name = ctx.step.params.get("name", "")
    expected = ctx.record.environment.get(name)
    if expected is None:
        expected = os.path.expandvars(ctx.step.params.get("value", ""))
    actual = ctx.environ.get(name)
    if actual is None:
        return ctx.outcome("env", False, f"${name} is not set")
    if actual != expected:
        return ctx.outcome("env", False, f"${name} is {actual!r}, expected {expected!r}")
    return ctx.outcome("env", True, f"${name} set")


def run_command_hook(ctx: HookContext) -> CheckOutcome | None:
    creates = ctx.step.params.get("creates")
    if not creates:
        return None
    path = expand_path(creates)
    if not path.exists():
        return ctx.outcome("command", False, f"{path} was not created")
    return ctx.outcome("command", True, f"{path} exists")


DEFAULT_HOOKS: dict[str, Hook] = {
    "install-package": install_package_hook,
    "fetch-file": fetch_file_hook,
    "set-env": set_env_hook,
    "run-command": run_command_hook,
}


class Verifier:
    """Runs verification hooks over a plan's succeeded steps."""

    def __init__(
        self,
        hooks: dict[str, Hook] | None = None,
        lookup: VersionLookup | None = None,
        environ: MutableMapping[str, str] | None = None,
    ):
        self._hooks = DEFAULT_HOOKS if hooks is None else hooks
        self._lookup = lookup or get_tool_version
        self._environ = os.environ if environ is None else environ

    def verify(self, plan: Plan, records: Iterable[ExecutionRecord]) -> VerificationResult:
        """Check every succeeded step that has a hook.

        Args:
            plan: The compiled plan.
            records: Execution records (typically ``recorder.all_records()``).

        Returns:
            VerificationResult keyed by step id.
        """
        by_id = {r.id: r for r in records}
        checks: dict[str, CheckOutcome] = {}

        for step in plan:
            record = by_id.get(step.id)
            if record is None or not record.succeeded:
                continue

            ctx = HookContext(step, record, self._lookup, self._environ)
            hook = verify_spec_hook if step.verify else self._hooks.get(step.kind)
            if hook is None:
                continue

            try:
                outcome = hook(ctx)
            except Exception as e:
                logger.error("Verification hook for %s raised: %s", step.id, e)
                outcome = ctx.outcome("error", False, f"Check raised: {e}")
            if outcome is None:
                continue

            checks[step.id] = outcome
            marker = "✓" if outcome.passed else "✗"
            logger.info("%s verify %s → %s", marker, step.id, outcome.detail)

        return VerificationResult(checks=checks)
