"""Tests for the dependency-aware execution planner."""

from feature_conductor.core.planner import plan_execution
from feature_conductor.core.status_graph import Status
from feature_conductor.db.models import Task


def _positions(order):
    return {task_id: i for i, task_id in enumerate(order)}


class TestOrdering:
    def test_chain(self):
        plan = plan_execution([("A", []), ("B", ["A"]), ("C", ["B"])])
        assert plan.optimal_order == ["A", "B", "C"]
        assert plan.parallel_phases == [["A"], ["B"], ["C"]]
        assert plan.critical_path == ["A", "B", "C"]
        assert plan.total_deps == 2
        assert not plan.has_cycle

    def test_every_dependency_precedes_dependent(self):
        tasks = [
            ("api", ["schema", "auth"]),
            ("schema", []),
            ("auth", ["schema"]),
            ("ui", ["api"]),
            ("docs", []),
        ]
        plan = plan_execution(tasks)
        pos = _positions(plan.optimal_order)
        for task_id, deps in tasks:
            for dep in deps:
                assert pos[dep] < pos[task_id]
        assert sorted(plan.optimal_order) == sorted(t for t, _ in tasks)

    def test_accepts_task_objects(self):
        tasks = [
            Task(task_id="a", title="A", status=Status.TODO),
            Task(task_id="b", title="B", status=Status.TODO, dependencies=["a"]),
        ]
        plan = plan_execution(tasks)
        assert plan.optimal_order == ["a", "b"]

    def test_empty(self):
        plan = plan_execution([])
        assert plan.optimal_order == []
        assert plan.parallel_phases == []
        assert plan.critical_path == []


class TestCycles:
    def test_two_task_cycle(self):
        plan = plan_execution([("A", ["B"]), ("B", ["A"])])
        assert plan.has_cycle
        assert plan.optimal_order == []
        assert plan.parallel_phases == []
        assert plan.critical_path == []
        assert "Circular dependencies" in plan.warnings[0]

    def test_cycle_behind_a_valid_root(self):
        plan = plan_execution([("root", []), ("x", ["root", "y"]), ("y", ["x"])])
        assert plan.has_cycle
        assert "x" in plan.warnings[0] and "y" in plan.warnings[0]


class TestPhases:
    def test_independent_tasks_share_a_phase(self):
        plan = plan_execution([("A", []), ("B", []), ("C", ["A", "B"])])
        assert plan.parallel_phases == [["A", "B"], ["C"]]
        assert plan.phases_by_name() == {"phase1": ["A", "B"], "phase2": ["C"]}

    def test_transitive_dependents_are_not_packed_early(self):
        plan = plan_execution([("A", []), ("D", []), ("B", ["A"]), ("C", ["B"])])
        phase_of = {
            task_id: i for i, phase in enumerate(plan.parallel_phases) for task_id in phase
        }
        assert phase_of["A"] < phase_of["B"] < phase_of["C"]
        assert phase_of["D"] == phase_of["A"]


class TestCriticalPath:
    def test_longest_branch_wins(self):
        plan = plan_execution([
            ("start", []),
            ("short", ["start"]),
            ("long1", ["start"]),
            ("long2", ["long1"]),
            ("long3", ["long2"]),
        ])
        assert plan.critical_path == ["start", "long1", "long2", "long3"]

    def test_deep_chain_does_not_recurse(self):
        n = 5000
        tasks = [("t0", [])] + [(f"t{i}", [f"t{i - 1}"]) for i in range(1, n)]
        plan = plan_execution(tasks)
        assert len(plan.critical_path) == n
        assert plan.critical_path[0] == "t0"
        assert plan.critical_path[-1] == f"t{n - 1}"


class TestWarnings:
    def test_blocker_warning(self):
        plan = plan_execution([("A", []), ("B", ["A"]), ("C", ["A"])])
        assert "A blocks B, C" in plan.warnings

    def test_unknown_dependency_is_ignored(self):
        plan = plan_execution([("A", ["ghost"]), ("B", ["A"])])
        assert not plan.has_cycle
        assert plan.optimal_order == ["A", "B"]
        assert any("ghost" in w for w in plan.warnings)
        assert plan.total_deps == 2

    def test_input_is_not_mutated(self):
        tasks = [Task(task_id="a", title="A", status=Status.TODO, dependencies=["zzz"])]
        plan_execution(tasks)
        assert tasks[0].dependencies == ["zzz"]
