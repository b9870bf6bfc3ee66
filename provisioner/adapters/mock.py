"""
Mock handler — universal test double for every step kind.

Used by ``provision run --mock`` and throughout the tests. Succeeds by
default; can be told to fail specific steps, or to run a callback
before answering (e.g. to request cancellation mid-run).
"""

from __future__ import annotations

from collections.abc import Callable

from provisioner.adapters.base import ActionHandler, Outcome


class MockHandler(ActionHandler):
    """Records every call and returns canned outcomes.

    Steps are matched by their ``params`` — tests usually give each
    step a distinguishing ``name`` param — or by ``kind`` alone.
    """

    def __init__(self, kind: str = "*", default_output: str = "[mock] performed"):
        self._kind = kind
        self._default_output = default_output
        self._failures: dict[str, str] = {}
        self._outcomes: dict[str, Outcome] = {}
        self._hooks: dict[str, Callable[[], None]] = {}
        self._call_log: list[dict[str, str]] = []

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def call_log(self) -> list[dict[str, str]]:
        """Params of every perform call, in order."""
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    @property
    def performed(self) -> list[str]:
        """The ``name`` param of each call, in order."""
        return [p.get("name", "") for p in self._call_log]

    def set_failure(self, name: str, reason: str = "Mock failure") -> None:
        """Make the step whose ``name`` param matches fail."""
        self._failures[name] = reason

    def set_outcome(self, name: str, outcome: Outcome) -> None:
        """Return a custom outcome for the step whose ``name`` matches."""
        self._outcomes[name] = outcome

    def on_perform(self, name: str, callback: Callable[[], None]) -> None:
        """Run ``callback`` while performing the matching step."""
        self._hooks[name] = callback

    def perform(self, params: dict[str, str]) -> Outcome:
        self._call_log.append(dict(params))
        name = params.get("name", "")

        if name in self._hooks:
            self._hooks[name]()
        if name in self._failures:
            return Outcome.failure(self._failures[name])
        if name in self._outcomes:
            return self._outcomes[name]
        return Outcome.success(self._default_output, metadata={"mock": True})
