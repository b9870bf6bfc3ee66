"""
Plan compiler — turns step descriptors into an execution plan.

Validation runs in three passes, each raising on the first problem:

    duplicate ids  →  dangling prerequisites  →  cycles

Ordering is Kahn's algorithm with a min-heap of ready ids, so ties are
always broken lexically and the same input compiles to the same plan
regardless of declaration order. No I/O.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from provisioner.core.errors import CycleError, DuplicateStepError, MissingPrerequisiteError
from provisioner.core.models.step import StepDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Plan:
    """Steps in an order where every prerequisite precedes its dependents."""

    name: str = ""
    steps: tuple[StepDescriptor, ...] = field(default_factory=tuple)

    def __iter__(self) -> Iterator[StepDescriptor]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def order(self) -> list[str]:
        return [s.id for s in self.steps]

    def get(self, step_id: str) -> StepDescriptor | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "steps": [s.model_dump(mode="json", exclude_none=True) for s in self.steps],
        }


def compile_plan(steps: Iterable[StepDescriptor], name: str = "") -> Plan:
    """Validate and order a set of steps.

    Args:
        steps: Step descriptors in any order.
        name: Plan name carried through to reports.

    Returns:
        A Plan in deterministic topological order.

    Raises:
        DuplicateStepError: Two steps share an id.
        MissingPrerequisiteError: A step requires an undeclared id.
        CycleError: The prerequisite graph is cyclic.
    """
    by_id: dict[str, StepDescriptor] = {}
    for step in steps:
        if step.id in by_id:
            raise DuplicateStepError(step.id)
        by_id[step.id] = step

    for step_id in sorted(by_id):
        for dep in by_id[step_id].requires:
            if dep not in by_id:
                raise MissingPrerequisiteError(step_id, dep)

    # in_degree counts distinct unresolved prerequisites
    in_degree: dict[str, int] = {sid: len(set(s.requires)) for sid, s in by_id.items()}
    dependents: dict[str, list[str]] = {sid: [] for sid in by_id}
    for sid, step in by_id.items():
        for dep in set(step.requires):
            dependents[dep].append(sid)

    ready = [sid for sid, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)
    ordered: list[StepDescriptor] = []

    while ready:
        sid = heapq.heappop(ready)
        ordered.append(by_id[sid])
        for successor in dependents[sid]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                heapq.heappush(ready, successor)

    if len(ordered) < len(by_id):
        remaining = {sid for sid, deg in in_degree.items() if deg > 0}
        raise CycleError(_find_cycle(by_id, remaining))

    plan = Plan(name=name, steps=tuple(ordered))
    logger.debug("Compiled plan '%s': %s", name, " → ".join(plan.order))
    return plan


def _find_cycle(by_id: dict[str, StepDescriptor], remaining: set[str]) -> list[str]:
    """Walk prerequisites inside the unresolved set until a node repeats.

    Every unresolved node still has an unresolved prerequisite, so the
    walk cannot dead-end.
    """
    path: list[str] = []
    seen: dict[str, int] = {}
    node = min(remaining)
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = min(dep for dep in by_id[node].requires if dep in remaining)
    return path[seen[node]:]
