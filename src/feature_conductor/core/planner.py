"""Dependency-aware execution planning for the tasks of a feature."""

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from feature_conductor.db.models import Task


@dataclass
class ExecutionPlan:
    optimal_order: list[str] = field(default_factory=list)
    parallel_phases: list[list[str]] = field(default_factory=list)
    critical_path: list[str] = field(default_factory=list)
    has_cycle: bool = False
    warnings: list[str] = field(default_factory=list)
    total_deps: int = 0

    def phases_by_name(self) -> dict[str, list[str]]:
        return {f"phase{i}": phase for i, phase in enumerate(self.parallel_phases, start=1)}


def _dependency_table(tasks: Iterable) -> dict[str, list[str]]:
    """Normalize tasks or ``(task_id, dependencies)`` pairs into an ordered table."""
    table: dict[str, list[str]] = {}
    for item in tasks:
        if isinstance(item, Task):
            task_id, deps = item.task_id, item.dependencies
        else:
            task_id, deps = item
        if task_id not in table:
            table[task_id] = list(deps)
    return table


def plan_execution(tasks: Iterable) -> ExecutionPlan:
    """Order tasks by dependency, group them into phases, find the critical path.

    ``tasks`` is read once into a private table, so callers may pass live
    objects. Dependencies on ids outside the set are reported and ignored.
    """
    table = _dependency_table(tasks)
    plan = ExecutionPlan(total_deps=sum(len(deps) for deps in table.values()))

    deps: dict[str, list[str]] = {}
    for task_id, raw in table.items():
        known = []
        for dep in raw:
            if dep not in table:
                plan.warnings.append(f"{task_id} depends on unknown task {dep}")
            elif dep not in known:
                known.append(dep)
        deps[task_id] = known

    dependents: dict[str, list[str]] = {task_id: [] for task_id in table}
    for task_id, prereqs in deps.items():
        for dep in prereqs:
            dependents[dep].append(task_id)

    for task_id, blocked in dependents.items():
        if len(blocked) > 1:
            plan.warnings.append(f"{task_id} blocks {', '.join(blocked)}")

    # Kahn's algorithm
    in_degree = {task_id: len(prereqs) for task_id, prereqs in deps.items()}
    ready = deque(task_id for task_id, degree in in_degree.items() if degree == 0)
    order: list[str] = []
    while ready:
        current = ready.popleft()
        order.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                ready.append(dependent)

    if len(order) < len(table):
        stuck = [task_id for task_id in table if in_degree[task_id] > 0]
        plan.has_cycle = True
        plan.warnings.insert(0, f"Circular dependencies detected among: {', '.join(stuck)}")
        return plan

    plan.optimal_order = order
    plan.parallel_phases = _pack_phases(order, deps)
    plan.critical_path = _critical_path(order, deps, dependents)
    return plan


def _pack_phases(order: list[str], deps: dict[str, list[str]]) -> list[list[str]]:
    """Greedily group tasks whose prerequisites all sit in earlier phases."""
    closed: set[str] = set()
    remaining = list(order)
    phases = []
    while remaining:
        phase, deferred = [], []
        for task_id in remaining:
            if all(dep in closed for dep in deps[task_id]):
                phase.append(task_id)
            else:
                deferred.append(task_id)
        closed.update(phase)
        phases.append(phase)
        remaining = deferred
    return phases


def _critical_path(
    order: list[str],
    deps: dict[str, list[str]],
    dependents: dict[str, list[str]],
) -> list[str]:
    """Longest root-to-leaf chain, walked over the topological order."""
    length: dict[str, int] = {}
    previous: dict[str, str | None] = {}
    for task_id in order:
        best = None
        for dep in deps[task_id]:
            if best is None or length[dep] > length[best]:
                best = dep
        previous[task_id] = best
        length[task_id] = 1 + (length[best] if best is not None else 0)

    end = None
    for task_id in order:
        if dependents[task_id]:
            continue
        if end is None or length[task_id] > length[end]:
            end = task_id
    if end is None:
        return []

    path = []
    node = end
    while node is not None:
        path.append(node)
        node = previous[node]
    path.reverse()
    return path
