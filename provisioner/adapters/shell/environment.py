"""
set-env handler — export an environment variable for later steps.

Params:
    name (str): Variable name.
    value (str): Value; ``$VAR`` / ``${VAR}`` references are expanded
        against the current environment (``PATH=/opt/bin:$PATH``).
    profile (str): Optional shell profile file. An ``export`` line is
        appended once; re-runs never duplicate it.

The handler itself does not touch ``os.environ``. It returns the
variable in ``Outcome.environment`` and the engine applies it, so the
same export can be replayed when the step is skipped on a re-run.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
from pathlib import Path

from provisioner.adapters.base import ActionHandler, Outcome, expand_path, require

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def export_line(name: str, value: str) -> str:
    """POSIX shell line exporting ``name``."""
    return f"export {name}={shlex.quote(value)}"


def append_profile_line(profile: Path, line: str) -> bool:
    """Append ``line`` to ``profile`` unless it is already there.

    Returns:
        True if the file was modified.
    """
    existing = profile.read_text(encoding="utf-8") if profile.is_file() else ""
    if line in existing.splitlines():
        return False
    profile.parent.mkdir(parents=True, exist_ok=True)
    with profile.open("a", encoding="utf-8") as f:
        if existing and not existing.endswith("\n"):
            f.write("\n")
        f.write(line + "\n")
    return True


class SetEnvHandler(ActionHandler):
    """Compute and export one environment variable."""

    @property
    def kind(self) -> str:
        return "set-env"

    def validate(self, params: dict[str, str]) -> tuple[bool, str]:
        ok, err = require(params, "name")
        if not ok:
            return ok, err
        if "value" not in params:
            return False, "Missing required param(s): 'value'"
        if not _NAME_RE.match(params["name"]):
            return False, f"Invalid variable name: {params['name']!r}"
        return True, ""

    def perform(self, params: dict[str, str]) -> Outcome:
        name = params["name"]
        value = os.path.expandvars(params["value"])

        profile = params.get("profile")
        if profile:
            path = expand_path(profile)
            try:
                changed = append_profile_line(path, export_line(name, value))
            except OSError as e:
                return Outcome.failure(f"Cannot write profile {path}: {e}")
            if changed:
                logger.info("Added %s to %s", name, path)

        return Outcome.success(f"{name}={value}", environment={name: value})
