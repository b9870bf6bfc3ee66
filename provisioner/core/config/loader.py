"""
Configuration loader — reads provision.yml into step descriptors.

Reads YAML, validates against Pydantic schemas, and returns typed
models. Settings resolve in precedence order:

    CLI option  >  PROVISION_* env var  >  plan ``settings``  >  default
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from provisioner.core.errors import ConfigError
from provisioner.core.models.step import StepDescriptor
from provisioner.core.persistence.state_file import default_state_path

logger = logging.getLogger(__name__)

PLAN_CONFIG_FILE = "provision.yml"
STATE_PATH_ENV = "PROVISION_STATE_PATH"


class PlanSettings(BaseModel):
    """Optional ``settings`` block of a plan file."""

    model_config = ConfigDict(extra="forbid")

    state_path: str | None = None          # relative to the plan file
    fetch_attempts: int = Field(default=4, ge=1)
    fetch_backoff: float = Field(default=1.0, ge=0)


class PlanFile(BaseModel):
    """A plan file as declared: name, settings, and unordered steps."""

    model_config = ConfigDict(extra="forbid")

    name: str = ""
    description: str = ""
    settings: PlanSettings = Field(default_factory=PlanSettings)
    steps: list[StepDescriptor] = Field(default_factory=list)


def find_plan_file(start_dir: Path | None = None) -> Path | None:
    """Search for provision.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to provision.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / PLAN_CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def load_plan_file(path: Path | None = None) -> PlanFile:
    """Load and validate a plan file.

    Args:
        path: Explicit path to the plan file. If None, searches upward.

    Returns:
        Validated PlanFile (steps not yet compiled).

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if path is None:
        path = find_plan_file()

    if path is None:
        raise ConfigError(f"No {PLAN_CONFIG_FILE} found. Create one, or specify --plan.")

    if not path.is_file():
        raise ConfigError(f"Plan file not found: {path}")

    logger.debug("Loading plan from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    data.setdefault("name", path.parent.name)

    try:
        plan_file = PlanFile.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid plan in {path}: {e}") from e

    logger.info("Loaded plan '%s' with %d step(s)", plan_file.name, len(plan_file.steps))
    return plan_file


def resolve_state_path(
    cli_path: Path | None,
    plan_path: Path | None,
    settings: PlanSettings | None = None,
) -> Path:
    """Pick the state file location.

    Args:
        cli_path: ``--state`` option, if given.
        plan_path: The plan file in use, if any.
        settings: The plan's settings block, if loaded.
    """
    if cli_path is not None:
        return cli_path

    env_path = os.environ.get(STATE_PATH_ENV)
    if env_path:
        return Path(env_path).expanduser()

    plan_dir = plan_path.parent.resolve() if plan_path else None
    if settings and settings.state_path:
        configured = Path(settings.state_path).expanduser()
        if not configured.is_absolute() and plan_dir is not None:
            configured = plan_dir / configured
        return configured

    return default_state_path(plan_dir)
