"""
Subprocess runner — the single place where handlers spawn processes.

Sudo handling, environment expansion, timeouts and output trimming
are centralised here so every handler behaves the same way.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_OUTPUT_TAIL = 2000


@dataclass
class CommandResult:
    """Outcome of one subprocess invocation."""

    ok: bool
    returncode: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str = ""
    elapsed_ms: int = 0

    @property
    def reason(self) -> str:
        """Best human-readable failure reason."""
        if self.error:
            detail = self.stderr.strip().splitlines()[-1:] if self.stderr else []
            return f"{self.error}: {detail[0]}" if detail else self.error
        return ""


def run_command(
    cmd: list[str] | str,
    *,
    sudo: bool = False,
    shell: bool = False,
    timeout: int = 300,
    cwd: str | None = None,
    env_overrides: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command and capture its output.

    Args:
        cmd: Argv list, or a string when ``shell`` is True.
        sudo: Prefix with ``sudo -n`` unless already root. Never prompts.
        shell: Run through ``sh -c``.
        timeout: Seconds before the command is killed.
        cwd: Working directory.
        env_overrides: Extra variables; ``$VAR`` references are expanded.

    Returns:
        CommandResult. Never raises for command failures.
    """
    if sudo and os.geteuid() != 0:
        if shutil.which("sudo") is None:
            return CommandResult(ok=False, error="Step requires root but sudo is not available")
        if shell:
            cmd = ["sudo", "-n", "sh", "-c", cmd] if isinstance(cmd, str) else ["sudo", "-n"] + cmd
            shell = False
        else:
            cmd = ["sudo", "-n"] + list(cmd)

    env = os.environ.copy()
    if env_overrides:
        for key, value in env_overrides.items():
            env[key] = os.path.expandvars(value)

    logger.debug("Running: %s (cwd=%s)", cmd, cwd)
    start = time.monotonic()
    try:
        result = subprocess.run(
            cmd,
            shell=shell,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(ok=False, error=f"Command timed out ({timeout}s)")
    except FileNotFoundError as e:
        return CommandResult(ok=False, error=f"Command not found: {e.filename or cmd}")
    except OSError as e:
        logger.exception("Subprocess error: %s", cmd)
        return CommandResult(ok=False, error=str(e))

    elapsed_ms = int((time.monotonic() - start) * 1000)
    stdout = result.stdout[-_OUTPUT_TAIL:] if result.stdout else ""
    stderr = result.stderr[-_OUTPUT_TAIL:] if result.stderr else ""

    if result.returncode == 0:
        return CommandResult(
            ok=True, returncode=0, stdout=stdout, stderr=stderr, elapsed_ms=elapsed_ms,
        )

    if sudo and "a password is required" in stderr.lower():
        return CommandResult(
            ok=False,
            returncode=result.returncode,
            stderr=stderr,
            error="Step requires root; run as root or configure passwordless sudo",
            elapsed_ms=elapsed_ms,
        )

    return CommandResult(
        ok=False,
        returncode=result.returncode,
        stdout=stdout,
        stderr=stderr,
        error=f"Command failed (exit {result.returncode})",
        elapsed_ms=elapsed_ms,
    )
