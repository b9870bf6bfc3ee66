"""
install-package handler — install OS packages, skipping installed ones.

Params:
    packages (str): Package names, separated by whitespace or commas.
    manager (str): apt, dnf, yum, zypper, apk, pacman, brew, or auto
        (default: first one found on PATH).
    update (bool): Refresh the package index before installing.
    sudo (bool): Run as root via ``sudo -n`` (default: true, except brew).
    timeout (int): Seconds per package-manager call (default: 900).
    binary (str): Binary the install provides; used by verification.
    min_version (str): Minimum version of ``binary``; used by verification.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess

from provisioner.adapters.base import ActionHandler, Outcome, as_bool, as_int, require
from provisioner.adapters.shell.subprocess_runner import run_command

logger = logging.getLogger(__name__)

# Detection order for ``manager: auto``
PACKAGE_MANAGERS: tuple[str, ...] = ("apt", "dnf", "yum", "zypper", "apk", "pacman", "brew")

_PM_BINARIES: dict[str, str] = {
    "apt": "apt-get",
    "dnf": "dnf",
    "yum": "yum",
    "zypper": "zypper",
    "apk": "apk",
    "pacman": "pacman",
    "brew": "brew",
}


def split_packages(value: str) -> list[str]:
    """Split a packages param on whitespace and commas."""
    return [p for p in re.split(r"[\s,]+", value.strip()) if p]


def detect_package_manager() -> str | None:
    """Return the first supported package manager found on PATH."""
    for pm in PACKAGE_MANAGERS:
        if shutil.which(_PM_BINARIES[pm]):
            return pm
    return None


def is_package_installed(pkg: str, pm: str) -> bool:
    """Check if a single system package is installed.

    Uses the appropriate checker for the given package manager:
      apt    → dpkg-query -W -f='${Status}' PKG
      dnf    → rpm -q PKG (also yum, zypper)
      apk    → apk info -e PKG
      pacman → pacman -Q PKG
      brew   → brew ls --versions PKG

    Returns:
        True if installed, False if not installed or check failed.
    """
    try:
        if pm == "apt":
            r = subprocess.run(
                ["dpkg-query", "-W", "-f=${Status}", pkg],
                capture_output=True, text=True, timeout=10,
            )
            return "install ok installed" in r.stdout
        if pm in ("dnf", "yum", "zypper"):
            r = subprocess.run(["rpm", "-q", pkg], capture_output=True, timeout=10)
            return r.returncode == 0
        if pm == "apk":
            r = subprocess.run(["apk", "info", "-e", pkg], capture_output=True, timeout=10)
            return r.returncode == 0
        if pm == "pacman":
            r = subprocess.run(["pacman", "-Q", pkg], capture_output=True, timeout=10)
            return r.returncode == 0
        if pm == "brew":
            r = subprocess.run(
                ["brew", "ls", "--versions", pkg],
                capture_output=True, timeout=30,  # brew is slow
            )
            return r.returncode == 0
    except FileNotFoundError:
        logger.warning("Package checker not found for pm=%s (checking %s)", pm, pkg)
    except subprocess.TimeoutExpired:
        logger.warning("Timeout checking package %s with pm=%s", pkg, pm)
    except OSError as exc:
        logger.warning("OS error checking package %s with pm=%s: %s", pkg, pm, exc)
    return False


def missing_packages(packages: list[str], pm: str) -> list[str]:
    return [p for p in packages if not is_package_installed(p, pm)]


def build_install_cmd(packages: list[str], pm: str) -> list[str]:
    """Build a non-interactive install command."""
    if pm == "apt":
        return ["apt-get", "install", "-y", "--no-install-recommends"] + packages
    if pm in ("dnf", "yum", "zypper"):
        return [pm, "install", "-y"] + packages
    if pm == "apk":
        return ["apk", "add", "--no-cache"] + packages
    if pm == "pacman":
        return ["pacman", "-S", "--noconfirm", "--needed"] + packages
    if pm == "brew":
        return ["brew", "install"] + packages
    raise ValueError(f"Unsupported package manager: {pm}")


def build_update_cmd(pm: str) -> list[str] | None:
    """Index refresh command, or None where install refreshes anyway."""
    return {
        "apt": ["apt-get", "update"],
        "dnf": ["dnf", "makecache"],
        "yum": ["yum", "makecache"],
        "zypper": ["zypper", "refresh"],
        "apk": ["apk", "update"],
        "pacman": ["pacman", "-Sy"],
        "brew": ["brew", "update"],
    }.get(pm)


class InstallPackageHandler(ActionHandler):
    """Install system packages with the host's package manager."""

    @property
    def kind(self) -> str:
        return "install-package"

    def validate(self, params: dict[str, str]) -> tuple[bool, str]:
        ok, err = require(params, "packages")
        if not ok:
            return ok, err
        manager = params.get("manager", "auto")
        if manager != "auto" and manager not in PACKAGE_MANAGERS:
            return False, f"Unsupported package manager: {manager}"
        return True, ""

    def perform(self, params: dict[str, str]) -> Outcome:
        packages = split_packages(params["packages"])
        manager = params.get("manager", "auto")
        pm = detect_package_manager() if manager == "auto" else manager
        if pm is None:
            return Outcome.failure("No supported package manager found on this host")

        missing = missing_packages(packages, pm)
        if not missing:
            return Outcome.success(
                "All packages already installed",
                metadata={"manager": pm, "installed": []},
            )

        sudo = as_bool(params.get("sudo"), default=pm != "brew")
        timeout = as_int(params.get("timeout"), 900)
        env = {"DEBIAN_FRONTEND": "noninteractive"} if pm == "apt" else None

        if as_bool(params.get("update")):
            update_cmd = build_update_cmd(pm)
            if update_cmd:
                result = run_command(update_cmd, sudo=sudo, timeout=timeout, env_overrides=env)
                if not result.ok:
                    return Outcome.failure(f"Package index update failed: {result.reason}")

        logger.info("Installing with %s: %s", pm, " ".join(missing))
        result = run_command(
            build_install_cmd(missing, pm), sudo=sudo, timeout=timeout, env_overrides=env,
        )
        if not result.ok:
            return Outcome.failure(
                f"Installing {' '.join(missing)} failed: {result.reason}",
                output=result.stdout,
                metadata={"manager": pm},
            )
        return Outcome.success(
            f"Installed {' '.join(missing)}",
            metadata={"manager": pm, "installed": missing},
        )
