"""
run-command handler — execute a shell command on the host.

Params:
    command (str): Shell command line, run through ``sh -c``.
    cwd (str): Working directory (default: current directory).
    timeout (int): Seconds before the command is killed (default: 1800).
    sudo (bool): Run as root via ``sudo -n`` when not already root.
    creates (str): Path the command produces. If it already exists the
        command is not run; it is also the step's verification hook.
"""

from __future__ import annotations

import logging
import shutil

from provisioner.adapters.base import ActionHandler, Outcome, as_bool, as_int, expand_path, require
from provisioner.adapters.shell.subprocess_runner import run_command

logger = logging.getLogger(__name__)


class RunCommandHandler(ActionHandler):
    """Run arbitrary commands and capture their output."""

    @property
    def kind(self) -> str:
        return "run-command"

    def validate(self, params: dict[str, str]) -> tuple[bool, str]:
        ok, err = require(params, "command")
        if not ok:
            return ok, err
        if shutil.which("sh") is None:
            return False, "No 'sh' available on this host"
        cwd = params.get("cwd")
        if cwd and not expand_path(cwd).is_dir():
            return False, f"Working directory does not exist: {cwd}"
        return True, ""

    def perform(self, params: dict[str, str]) -> Outcome:
        command = params["command"]
        creates = params.get("creates")
        if creates and expand_path(creates).exists():
            logger.info("'%s' already exists, not running: %s", creates, command)
            return Outcome.success(f"{creates} already exists", metadata={"command": command})

        cwd = params.get("cwd")
        result = run_command(
            command,
            shell=True,
            sudo=as_bool(params.get("sudo")),
            timeout=as_int(params.get("timeout"), 1800),
            cwd=str(expand_path(cwd)) if cwd else None,
        )
        if not result.ok:
            return Outcome.failure(
                result.reason,
                output=result.stdout,
                metadata={"command": command, "return_code": result.returncode},
            )
        return Outcome.success(
            result.stdout.strip(),
            metadata={"command": command, "return_code": 0, "elapsed_ms": result.elapsed_ms},
        )
