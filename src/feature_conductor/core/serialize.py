"""Plain-data conversion of models and results for the CLI, web and MCP layers."""

from dataclasses import fields, is_dataclass
from datetime import datetime
from types import MappingProxyType

from feature_conductor.core.errors import Result
from feature_conductor.db.models import Task, TaskSet


def to_data(obj):
    """Recursively convert dataclasses, datetimes and containers to JSON-safe data."""
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_data(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (dict, MappingProxyType)):
        return {str(k): to_data(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        items = sorted(obj) if isinstance(obj, (set, frozenset)) else obj
        return [to_data(v) for v in items]
    return obj


def result_dict(result: Result) -> dict:
    return result.to_dict(to_data(result.value))


def task_summary(task: Task) -> dict:
    """Task without its history, for listings."""
    return {
        "task_id": task.task_id,
        "title": task.title,
        "status": task.status,
        "dependencies": list(task.dependencies),
        "order_of_execution": task.order_of_execution,
        "estimated_hours": task.estimated_hours,
        "assigned_to": task.assigned_to,
        "transition_count": len(task.transitions),
        "criteria_verified": sum(1 for c in task.acceptance_criteria if c.verified),
        "criteria_total": len(task.acceptance_criteria),
    }


def feature_summary(task_set: TaskSet) -> dict:
    counts: dict[str, int] = {}
    for task in task_set.tasks:
        counts[task.status] = counts.get(task.status, 0) + 1
    return {
        "repo_name": task_set.repo_name,
        "feature_slug": task_set.feature_slug,
        "feature_name": task_set.feature_name,
        "description": task_set.description,
        "task_count": len(task_set.tasks),
        "counts_by_status": counts,
        "created_at": task_set.created_at.isoformat() if task_set.created_at else None,
        "last_modified": task_set.last_modified.isoformat() if task_set.last_modified else None,
    }
