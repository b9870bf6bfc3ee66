"""
Provisioner — CLI entrypoint.

Usage:
    provision --help
    provision plan
    provision run --dry-run
    provision status
"""

from __future__ import annotations

import json
import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import NoReturn

import click

from provisioner import __version__
from provisioner.core.engine.executor import CancelToken, StepEvent
from provisioner.core.errors import ProvisionError, VerificationFailedError
from provisioner.core.models.verification import VerificationResult
from provisioner.core.observability.logging_config import resolve_level, setup_logging

_STATUS_STYLE = {
    "succeeded": ("✓", "green"),
    "failed": ("✗", "red"),
    "skipped": ("⊘", "yellow"),
    "pending": ("…", "white"),
}

_TRANSITION_STYLE = {
    "started": ("→", "cyan"),
    "succeeded": ("✓", "green"),
    "failed": ("✗", "red"),
    "skipped": ("⊘", "yellow"),
}


@click.group()
@click.version_option(version=__version__, prog_name="provision")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--plan",
    "-p",
    "plan_path",
    type=click.Path(exists=False, dir_okay=False),
    default=None,
    help="Path to provision.yml (default: auto-detect).",
)
@click.option(
    "--state",
    "state_path",
    type=click.Path(exists=False, dir_okay=False),
    default=None,
    help="Path to the state file (default: .state/provision.json beside the plan).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    plan_path: str | None,
    state_path: str | None,
) -> None:
    """Provisioner — bring a host to the state a plan file declares."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["plan_path"] = Path(plan_path) if plan_path else None
    ctx.obj["state_path"] = Path(state_path) if state_path else None

    setup_logging(level=resolve_level(debug=debug, verbose=verbose, quiet=quiet))


def _fail(err: ProvisionError, as_json: bool = False) -> NoReturn:
    """Report a provisioning error and exit with its code."""
    if as_json:
        click.echo(json.dumps({"error": str(err), "exit_code": err.exit_code}, indent=2))
    else:
        click.secho(f"❌ {err}", fg="red", err=True)
    sys.exit(err.exit_code)


@contextmanager
def _cancel_on_signals(cancel: CancelToken) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancellation request for the run.

    The step in progress finishes; the engine stops before the next one.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, _frame: object) -> None:
        click.secho(
            f"\n⚠️  {signal.Signals(signum).name} received, stopping after the current step",
            fg="yellow",
            err=True,
        )
        cancel.cancel()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _print_verification(verification: VerificationResult) -> None:
    if not verification.checks:
        return
    click.echo()
    click.secho("   Verification:", fg="white", bold=True)
    for name, check in verification.checks.items():
        if check.passed:
            click.secho(f"     ✓ {name}", fg="green", nl=False)
        else:
            click.secho(f"     ✗ {name}", fg="red", nl=False)
        click.echo(f"  ({check.hook}) {check.detail}" if check.detail else f"  ({check.hook})")


@cli.command("plan")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan_cmd(ctx: click.Context, as_json: bool) -> None:
    """Compile the plan and show the execution order."""
    from provisioner.core.use_cases.provision import load_plan

    try:
        loaded = load_plan(ctx.obj.get("plan_path"), ctx.obj.get("state_path"))
    except ProvisionError as e:
        _fail(e, as_json)

    if as_json:
        click.echo(json.dumps(loaded.plan.to_dict(), indent=2))
        return

    plan = loaded.plan
    click.secho(f"\n📋 {plan.name}", fg="cyan", bold=True)
    if loaded.plan_file.description:
        click.echo(f"   {loaded.plan_file.description}")
    click.echo(f"   Steps: {len(plan)}")
    click.echo()

    for index, step in enumerate(plan, start=1):
        click.echo(f"   {index:>2}. ", nl=False)
        click.secho(step.id, bold=True, nl=False)
        click.echo(f" [{step.kind}]")
        if step.description and not ctx.obj.get("quiet"):
            click.echo(f"       {step.description}")
        if step.requires:
            click.echo(f"       requires: {', '.join(step.requires)}")

    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--dry-run", is_flag=True, help="Show what would run; change nothing.")
@click.option("--mock", is_flag=True, help="Use the mock handler (no real execution).")
@click.option("--force", is_flag=True, help="Re-run steps already recorded as succeeded.")
@click.option("--no-verify", is_flag=True, help="Skip verification after the run.")
@click.pass_context
def run(
    ctx: click.Context,
    as_json: bool,
    dry_run: bool,
    mock: bool,
    force: bool,
    no_verify: bool,
) -> None:
    """Run the plan, skipping steps that already succeeded.

    Examples:

        provision run

        provision run --dry-run

        provision --plan plans/build-env.yml run --force
    """
    from provisioner.core.use_cases.provision import run_provisioning

    quiet = ctx.obj.get("quiet", False)
    verbose = ctx.obj.get("verbose", False)

    def report(event: StepEvent) -> None:
        if quiet and event.transition in ("started", "skipped"):
            return
        icon, color = _TRANSITION_STYLE[event.transition]
        click.secho(f"   {icon} {event.step_id}", fg=color, nl=False)
        timing = f" ({event.duration_ms}ms)" if event.duration_ms else ""
        detail = event.message
        if event.transition == "failed" and not verbose:
            detail = detail.splitlines()[-1] if detail else ""
        click.echo(f"{timing}  {detail}" if detail else timing)

    if not as_json:
        mode_label = "[dry-run] " if dry_run else "[mock] " if mock else ""
        click.secho(f"\n⚡ {mode_label}provisioning", fg="cyan", bold=True)
        click.echo()

    cancel = CancelToken()
    try:
        with _cancel_on_signals(cancel):
            result = run_provisioning(
                plan_path=ctx.obj.get("plan_path"),
                state_path=ctx.obj.get("state_path"),
                cancel=cancel,
                reporter=None if as_json else report,
                force=force,
                dry_run=dry_run,
                verify=not no_verify,
                mock=mock,
            )
    except VerificationFailedError as e:
        if not as_json:
            click.echo()
            click.secho("   Verification:", fg="white", bold=True)
            for name, detail in e.failures.items():
                click.secho(f"     ✗ {name}", fg="red", nl=False)
                click.echo(f"  {detail}")
            click.echo()
        _fail(e, as_json)
    except ProvisionError as e:
        if not as_json:
            click.echo()
        _fail(e, as_json)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    if result.verification is not None:
        _print_verification(result.verification)

    summary = result.report
    click.echo()
    verb = "would run" if dry_run else "ran"
    click.secho(
        f"   Result: {len(summary.performed)} {verb}, {len(summary.satisfied)} already satisfied",
        fg="green",
        bold=True,
    )
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show the recorded status of every step."""
    from provisioner.core.use_cases.provision import get_status

    try:
        result = get_status(ctx.obj.get("plan_path"), ctx.obj.get("state_path"))
    except ProvisionError as e:
        _fail(e, as_json)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    click.secho(f"\n📋 {result.loaded.plan.name}", fg="cyan", bold=True)
    click.echo(f"   State: {result.loaded.state_path}")
    click.echo()

    for step in result.loaded.plan:
        step_status = result.status_of(step.id)
        icon, color = _STATUS_STYLE.get(step_status, ("?", "white"))
        click.secho(f"   {icon} {step.id} ", fg=color, nl=False)
        click.echo(step_status)
        record = result.records.get(step.id)
        if record is not None and record.error:
            click.echo(f"     │ {record.error.splitlines()[-1]}")

    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def verify(ctx: click.Context, as_json: bool) -> None:
    """Re-check the effects of every succeeded step."""
    from provisioner.core.use_cases.provision import verify_environment

    try:
        verification = verify_environment(ctx.obj.get("plan_path"), ctx.obj.get("state_path"))
    except ProvisionError as e:
        _fail(e, as_json)

    if as_json:
        click.echo(json.dumps(verification.to_dict(), indent=2))
    elif not verification.checks:
        click.secho("⊘ Nothing to verify (no succeeded steps with checks)", fg="yellow")
    else:
        _print_verification(verification)
        click.echo()

    if not verification.passed:
        sys.exit(VerificationFailedError.exit_code)


@cli.command()
@click.option("--step", "steps", multiple=True, help="Forget only this step (repeatable).")
@click.pass_context
def reset(ctx: click.Context, steps: tuple[str, ...]) -> None:
    """Forget recorded outcomes so steps run again."""
    from provisioner.core.use_cases.provision import reset_state

    try:
        removed = reset_state(
            ctx.obj.get("plan_path"),
            ctx.obj.get("state_path"),
            step_ids=list(steps) or None,
        )
    except ProvisionError as e:
        _fail(e)

    click.secho(f"🧹 Cleared {removed} record(s)", fg="green")


@cli.command()
@click.option("--limit", "-n", default=20, type=int, help="Number of runs to show.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, limit: int, as_json: bool) -> None:
    """Show recent provisioning runs."""
    from provisioner.core.use_cases.provision import read_history

    try:
        entries = read_history(ctx.obj.get("plan_path"), ctx.obj.get("state_path"), limit=limit)
    except ProvisionError as e:
        _fail(e, as_json)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo("No runs recorded yet.")
        return

    status_color = {"ok": "green", "cancelled": "yellow"}
    for entry in entries:
        click.echo(f"   {entry.timestamp}  {entry.run_id}  ", nl=False)
        click.secho(entry.status, fg=status_color.get(entry.status, "red"), nl=False)
        click.echo(f"  ran {entry.steps_run}, skipped {entry.steps_skipped} of {entry.steps_total}")
        if entry.failed_step:
            click.echo(f"     │ failed at {entry.failed_step}")


if __name__ == "__main__":
    cli()
