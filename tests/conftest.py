"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from provisioner.adapters.mock import MockHandler
from provisioner.adapters.registry import HandlerRegistry
from provisioner.core.models.step import StepDescriptor
from provisioner.core.persistence.state_file import StateRecorder


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the caller's PROVISION_* settings out of every test."""
    for var in (
        "PROVISION_STATE_PATH",
        "PROVISION_LOG_LEVEL",
        "PROVISION_LOG_FILE",
        "PROVISION_LOG_FILE_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    """Return a state file path inside a temporary directory."""
    return tmp_path / "state" / "provision.json"


@pytest.fixture
def recorder(state_path: Path) -> StateRecorder:
    return StateRecorder(state_path)


@pytest.fixture
def mock_handler() -> MockHandler:
    return MockHandler()


@pytest.fixture
def registry(mock_handler: MockHandler) -> HandlerRegistry:
    """Registry where every step kind is served by the mock handler."""
    return HandlerRegistry(mock_handler=mock_handler)


def make_step(step_id: str, *requires: str, kind: str = "run-command", **params: str) -> StepDescriptor:
    """Build a step whose ``name`` param matches its id (what MockHandler keys on)."""
    params.setdefault("name", step_id)
    return StepDescriptor(id=step_id, kind=kind, params=params, requires=requires)
