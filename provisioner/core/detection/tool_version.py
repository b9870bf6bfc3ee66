"""
Tool version detection — run ``--version`` commands and parse the output.

Read-only. Used by verification hooks to confirm that a step's tool is
present and new enough.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import shutil
import subprocess

logger = logging.getLogger(__name__)

_GENERIC_PATTERN = r"v?(\d+\.\d+(?:\.\d+)?)"

VERSION_COMMANDS: dict[str, tuple[list[str], str]] = {
    "git":        (["git", "--version"],         r"git version\s+(\d+\.\d+\.\d+)"),
    "curl":       (["curl", "--version"],        r"curl\s+(\d+\.\d+\.\d+)"),
    "cmake":      (["cmake", "--version"],       r"cmake version\s+(\d+\.\d+\.\d+)"),
    "clang":      (["clang", "--version"],       r"clang version\s+(\d+\.\d+\.\d+)"),
    "gcc":        (["gcc", "--version"],         r"(\d+\.\d+\.\d+)"),
    "g++":        (["g++", "--version"],         r"(\d+\.\d+\.\d+)"),
    "make":       (["make", "--version"],        r"Make\s+(\d+\.\d+(?:\.\d+)?)"),
    "llvm-config": (["llvm-config", "--version"], r"(\d+\.\d+\.\d+)"),
    "pkg-config": (["pkg-config", "--version"],  r"(\d+\.\d+(?:\.\d+)?)"),
    "python3":    (["python3", "--version"],     r"Python\s+(\d+\.\d+\.\d+)"),
    "node":       (["node", "--version"],        r"v(\d+\.\d+\.\d+)"),
    "npm":        (["npm", "--version"],         r"(\d+\.\d+\.\d+)"),
    "rustc":      (["rustc", "--version"],       r"rustc\s+(\d+\.\d+\.\d+)"),
    "cargo":      (["cargo", "--version"],       r"cargo\s+(\d+\.\d+\.\d+)"),
    "rustup":     (["rustup", "--version"],      r"rustup\s+(\d+\.\d+\.\d+)"),
    "go":         (["go", "version"],            r"go(\d+\.\d+(?:\.\d+)?)"),
    "docker":     (["docker", "--version"],      r"Docker version\s+(\d+\.\d+\.\d+)"),
}


def get_tool_version(
    tool: str,
    command: str | None = None,
    pattern: str | None = None,
) -> str | None:
    """Get the installed version of a tool.

    Args:
        tool: Binary name.
        command: Optional command line overriding ``VERSION_COMMANDS``;
            ``$VAR`` references are expanded.
        pattern: Optional regex (one group) overriding the table.

    Returns:
        Version string (e.g. ``"1.44.0"``) or ``None`` if the tool is
        missing or the version can't be determined.
    """
    entry = VERSION_COMMANDS.get(tool)
    if command:
        cmd = shlex.split(os.path.expandvars(command))
    else:
        cmd = entry[0] if entry else [tool, "--version"]
    regex = pattern or (entry[1] if entry else _GENERIC_PATTERN)

    if not shutil.which(cmd[0]):
        return None

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=10)
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.debug("Version check for %s failed: %s", tool, e)
        return None

    # Some tools print their version to stderr
    output = (result.stdout or "") + (result.stderr or "")
    match = re.search(regex, output)
    return match.group(1) if match else None


def parse_version(v: str) -> tuple[int, ...]:
    """``"v1.2.3-nightly"`` → ``(1, 2, 3)``. Raises ValueError if unparseable."""
    match = re.match(r"v?(\d+(?:\.\d+)*)", v.strip())
    if not match:
        raise ValueError(f"Unparseable version: {v!r}")
    parts = tuple(int(x) for x in match.group(1).split(".")[:3])
    return parts + (0,) * (3 - len(parts))


def check_version_constraint(selected_version: str, constraint: dict) -> dict:
    """Validate a version against a constraint rule.

    Constraint types:
        - ``gte``: >= a minimum version
        - ``exact``: must match exactly

    Args:
        selected_version: The version found, e.g. ``"1.44.0"``.
        constraint: ``{"type": ..., "reference": ...}``.

    Returns:
        ``{"valid": True}`` or ``{"valid": False, "message": "..."}``
    """
    ctype = constraint.get("type", "gte")
    ref = constraint.get("reference", "")

    try:
        sel_parts = parse_version(selected_version)
        ref_parts = parse_version(ref)
    except ValueError as e:
        return {"valid": False, "message": str(e)}

    if ctype == "gte":
        if sel_parts >= ref_parts:
            return {"valid": True}
        return {
            "valid": False,
            "message": f"Version {selected_version} < {ref}. Minimum required: {ref}.",
        }

    if ctype == "exact":
        if sel_parts == ref_parts:
            return {"valid": True}
        return {
            "valid": False,
            "message": f"Version {selected_version} != {ref}. Exact match required.",
        }

    return {"valid": False, "message": f"Unknown constraint type: {ctype}"}
