"""Feature and task storage: loading and atomically saving task sets."""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime

from feature_conductor.core.errors import StorageError
from feature_conductor.core.status_graph import DEFAULT_GRAPH
from feature_conductor.core.validator import WorkflowValidator
from feature_conductor.db.engine import read_snapshot, transaction
from feature_conductor.db.models import AcceptanceCriterion, ReviewEntry, Task, TaskSet, Transition

logger = logging.getLogger(__name__)

CRITERION_PRIORITIES = ("Must Have", "Should Have", "Could Have")

_structure_validator = WorkflowValidator()

_locks: dict[tuple[str, str], threading.RLock] = {}
_locks_guard = threading.Lock()


@contextmanager
def feature_lock(repo_name: str, feature_slug: str):
    """Serialize load-modify-save sequences on one feature within this process."""
    with _locks_guard:
        lock = _locks.setdefault((repo_name, feature_slug), threading.RLock())
    with lock:
        yield


# ── Load / save ───────────────────────────────────────────────────────────────


def load_task_set(
    db: sqlite3.Connection, feature_slug: str, repo_name: str = "default"
) -> TaskSet | None:
    """Load a feature with all of its tasks, transitions, reviews and criteria.

    All rows come from one read snapshot, so a concurrent save is seen
    either entirely or not at all.
    """
    with read_snapshot(db):
        return _read_task_set(db, feature_slug, repo_name)


def _read_task_set(db: sqlite3.Connection, feature_slug: str, repo_name: str) -> TaskSet | None:
    row = db.execute(
        "SELECT * FROM features WHERE repo_name = ? AND feature_slug = ?",
        (repo_name, feature_slug),
    ).fetchone()
    if not row:
        return None

    task_set = TaskSet(
        repo_name=row["repo_name"],
        feature_slug=row["feature_slug"],
        feature_name=row["feature_name"],
        description=row["description"] or "",
        created_at=_parse_dt(row["created_at"]),
        last_modified=_parse_dt(row["last_modified"]),
    )
    key = (repo_name, feature_slug)

    transitions: dict[str, list[Transition]] = {}
    for t in db.execute(
        "SELECT * FROM transitions WHERE repo_name = ? AND feature_slug = ? ORDER BY task_id, seq",
        key,
    ).fetchall():
        transitions.setdefault(t["task_id"], []).append(_row_to_transition(t))

    reviews: dict[str, dict[str, ReviewEntry]] = {}
    for r in db.execute(
        "SELECT * FROM stakeholder_reviews WHERE repo_name = ? AND feature_slug = ?",
        key,
    ).fetchall():
        reviews.setdefault(r["task_id"], {})[r["role"]] = ReviewEntry(
            approved=bool(r["approved"]),
            notes=r["notes"] or "",
            details=json.loads(r["details"] or "{}"),
        )

    criteria: dict[str, list[AcceptanceCriterion]] = {}
    for c in db.execute(
        """SELECT * FROM acceptance_criteria WHERE repo_name = ? AND feature_slug = ?
           ORDER BY task_id, seq""",
        key,
    ).fetchall():
        criteria.setdefault(c["task_id"], []).append(AcceptanceCriterion(
            id=c["criterion_id"],
            criterion=c["criterion"],
            priority=c["priority"],
            verified=bool(c["verified"]),
        ))

    rows = db.execute(
        "SELECT * FROM tasks WHERE repo_name = ? AND feature_slug = ? ORDER BY rowid",
        key,
    ).fetchall()
    for r in rows:
        task = _row_to_task(r)
        task.transitions = transitions.get(task.task_id, [])
        task.stakeholder_review = reviews.get(task.task_id, {})
        task.acceptance_criteria = criteria.get(task.task_id, [])
        task_set.tasks.append(task)
    return task_set


def save_task_set(db: sqlite3.Connection, task_set: TaskSet):
    """Replace the stored copy of a feature in one transaction.

    Raises StorageError if anything fails; the previous copy is left intact.
    """
    try:
        with transaction(db):
            _write_task_set(db, task_set)
    except sqlite3.Error as e:
        raise StorageError(
            f"Failed to save feature {task_set.repo_name}/{task_set.feature_slug}: {e}"
        ) from e
    task_set.last_modified = datetime.now()


def _write_task_set(db: sqlite3.Connection, task_set: TaskSet):
    key = (task_set.repo_name, task_set.feature_slug)
    db.execute(
        """INSERT INTO features (repo_name, feature_slug, feature_name, description)
           VALUES (?, ?, ?, ?)
           ON CONFLICT (repo_name, feature_slug) DO UPDATE SET
               feature_name = excluded.feature_name,
               description = excluded.description,
               last_modified = datetime('now')""",
        (*key, task_set.feature_name, task_set.description),
    )
    # Cascades to transitions, stakeholder_reviews and acceptance_criteria
    db.execute("DELETE FROM tasks WHERE repo_name = ? AND feature_slug = ?", key)

    for task in task_set.tasks:
        db.execute(
            """INSERT INTO tasks (repo_name, feature_slug, task_id, title, description,
                   status, initial_status, dependencies, order_of_execution,
                   estimated_hours, assigned_to, tags)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                *key,
                task.task_id,
                task.title,
                task.description,
                task.status,
                task.initial_status,
                json.dumps(task.dependencies),
                task.order_of_execution,
                task.estimated_hours,
                task.assigned_to,
                json.dumps(task.tags),
            ),
        )
        for seq, t in enumerate(task.transitions):
            db.execute(
                """INSERT INTO transitions (repo_name, feature_slug, task_id, seq,
                       from_status, to_status, actor, approver, timestamp, notes, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    *key,
                    task.task_id,
                    seq,
                    t.from_status,
                    t.to_status,
                    t.actor,
                    t.approver,
                    t.timestamp,
                    t.notes,
                    json.dumps(t.metadata),
                ),
            )
        for role, entry in task.stakeholder_review.items():
            db.execute(
                """INSERT INTO stakeholder_reviews (repo_name, feature_slug, task_id,
                       role, approved, notes, details)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (*key, task.task_id, role, int(entry.approved), entry.notes,
                 json.dumps(entry.details)),
            )
        for seq, c in enumerate(task.acceptance_criteria):
            db.execute(
                """INSERT INTO acceptance_criteria (repo_name, feature_slug, task_id,
                       criterion_id, seq, criterion, priority, verified)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (*key, task.task_id, c.id, seq, c.criterion, c.priority, int(c.verified)),
            )


# ── Features ──────────────────────────────────────────────────────────────────


def create_feature(
    db: sqlite3.Connection,
    feature_slug: str,
    feature_name: str | None = None,
    repo_name: str = "default",
    tasks: list[dict] | None = None,
    description: str = "",
) -> TaskSet:
    """Create a feature, optionally with initial tasks.

    Each task dict needs 'task_id' and 'title'; 'description', 'dependencies',
    'order_of_execution', 'estimated_hours', 'assigned_to', 'tags' and
    'acceptance_criteria' are optional. Each criterion dict needs 'id' and
    'criterion' and may set 'priority' and 'verified'.
    """
    with feature_lock(repo_name, feature_slug):
        if load_task_set(db, feature_slug, repo_name):
            raise ValueError(f"Feature already exists: {repo_name}/{feature_slug}")
        task_set = TaskSet(
            repo_name=repo_name,
            feature_slug=feature_slug,
            feature_name=feature_name or feature_slug,
            description=description,
        )
        for i, spec in enumerate(tasks or [], start=1):
            task_set.tasks.append(_new_task(spec, default_order=i))

        ids = [t.task_id for t in task_set.tasks]
        if len(set(ids)) != len(ids):
            raise ValueError("Duplicate task ids in feature")
        for task in task_set.tasks:
            _check_dependencies(task, task.dependencies, set(ids))
            _check_structure(task)

        save_task_set(db, task_set)
        logger.info("Created feature %s/%s with %d tasks", repo_name, feature_slug, len(ids))
        return load_task_set(db, feature_slug, repo_name)


def get_feature(
    db: sqlite3.Connection, feature_slug: str, repo_name: str = "default"
) -> TaskSet | None:
    return load_task_set(db, feature_slug, repo_name)


def update_feature(
    db: sqlite3.Connection,
    feature_slug: str,
    repo_name: str = "default",
    feature_name: str | None = None,
    description: str | None = None,
) -> TaskSet | None:
    """Rename a feature or change its description. Returns None if it does not exist."""
    if not feature_name and description is None:
        raise ValueError("Provide a feature_name or a description")
    with feature_lock(repo_name, feature_slug):
        task_set = load_task_set(db, feature_slug, repo_name)
        if not task_set:
            return None
        if feature_name:
            task_set.feature_name = feature_name
        if description is not None:
            task_set.description = description
        save_task_set(db, task_set)
        logger.info("Updated feature %s/%s", repo_name, feature_slug)
        return task_set


def list_features(db: sqlite3.Connection, repo_name: str | None = None) -> list[TaskSet]:
    query = "SELECT repo_name, feature_slug FROM features"
    params: list = []
    if repo_name:
        query += " WHERE repo_name = ?"
        params.append(repo_name)
    query += " ORDER BY repo_name, feature_slug"
    rows = db.execute(query, params).fetchall()
    return [load_task_set(db, r["feature_slug"], r["repo_name"]) for r in rows]


def list_repos(db: sqlite3.Connection) -> list[str]:
    rows = db.execute("SELECT DISTINCT repo_name FROM features ORDER BY repo_name").fetchall()
    return [r["repo_name"] for r in rows]


def delete_feature(db: sqlite3.Connection, feature_slug: str, repo_name: str = "default") -> bool:
    """Delete a feature and its tasks. Queue items and checkpoints are kept."""
    with feature_lock(repo_name, feature_slug):
        with transaction(db):
            cur = db.execute(
                "DELETE FROM features WHERE repo_name = ? AND feature_slug = ?",
                (repo_name, feature_slug),
            )
        return cur.rowcount > 0


# ── Tasks ─────────────────────────────────────────────────────────────────────


def add_task(
    db: sqlite3.Connection,
    feature_slug: str,
    task_id: str,
    title: str,
    repo_name: str = "default",
    description: str = "",
    dependencies: list[str] | None = None,
    order_of_execution: int | None = None,
    estimated_hours: float | None = None,
    assigned_to: str | None = None,
    tags: list[str] | None = None,
    acceptance_criteria: list[dict] | None = None,
) -> Task:
    """Add a task to an existing feature in the initial review status."""
    with feature_lock(repo_name, feature_slug):
        task_set = _require(db, feature_slug, repo_name)
        if task_set.task(task_id):
            raise ValueError(f"Task already exists: {task_id}")
        task = _new_task(
            {
                "task_id": task_id,
                "title": title,
                "description": description,
                "dependencies": dependencies or [],
                "order_of_execution": order_of_execution,
                "estimated_hours": estimated_hours,
                "assigned_to": assigned_to,
                "tags": tags or [],
                "acceptance_criteria": acceptance_criteria or [],
            },
            default_order=len(task_set.tasks) + 1,
        )
        _check_dependencies(task, task.dependencies, {t.task_id for t in task_set.tasks})
        _check_structure(task)
        task_set.tasks.append(task)
        save_task_set(db, task_set)
        return task


def get_task(
    db: sqlite3.Connection, feature_slug: str, task_id: str, repo_name: str = "default"
) -> Task | None:
    task_set = load_task_set(db, feature_slug, repo_name)
    if not task_set:
        return None
    return task_set.task(task_id)


_EDITABLE_FIELDS = {
    "title",
    "description",
    "order_of_execution",
    "estimated_hours",
    "assigned_to",
    "tags",
}


def update_task(
    db: sqlite3.Connection,
    feature_slug: str,
    task_id: str,
    repo_name: str = "default",
    **fields,
) -> Task | None:
    """Update descriptive task fields. Status only changes through the workflow."""
    unknown = set(fields) - _EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
    with feature_lock(repo_name, feature_slug):
        task_set = _require(db, feature_slug, repo_name)
        task = task_set.task(task_id)
        if not task:
            return None
        for name, value in fields.items():
            if value is not None:
                setattr(task, name, value)
        _check_structure(task)
        save_task_set(db, task_set)
        return task


def delete_task(
    db: sqlite3.Connection, feature_slug: str, task_id: str, repo_name: str = "default"
) -> bool:
    """Delete a task and drop it from other tasks' dependency lists."""
    with feature_lock(repo_name, feature_slug):
        task_set = _require(db, feature_slug, repo_name)
        task = task_set.task(task_id)
        if not task:
            return False
        task_set.tasks.remove(task)
        for other in task_set.tasks:
            if task_id in other.dependencies:
                other.dependencies.remove(task_id)
        save_task_set(db, task_set)
        return True


def add_dependency(
    db: sqlite3.Connection,
    feature_slug: str,
    task_id: str,
    depends_on_id: str,
    repo_name: str = "default",
) -> Task | None:
    """Add a dependency to an existing task. Cycles are reported by the planner."""
    with feature_lock(repo_name, feature_slug):
        task_set = _require(db, feature_slug, repo_name)
        task = task_set.task(task_id)
        if not task:
            return None
        if depends_on_id in task.dependencies:
            return task
        _check_dependencies(task, [depends_on_id], {t.task_id for t in task_set.tasks})
        task.dependencies.append(depends_on_id)
        save_task_set(db, task_set)
        return task


def remove_dependency(
    db: sqlite3.Connection,
    feature_slug: str,
    task_id: str,
    depends_on_id: str,
    repo_name: str = "default",
) -> Task | None:
    with feature_lock(repo_name, feature_slug):
        task_set = _require(db, feature_slug, repo_name)
        task = task_set.task(task_id)
        if not task:
            return None
        if depends_on_id in task.dependencies:
            task.dependencies.remove(depends_on_id)
            save_task_set(db, task_set)
        return task


# ── Helpers ───────────────────────────────────────────────────────────────────


def _require(db: sqlite3.Connection, feature_slug: str, repo_name: str) -> TaskSet:
    task_set = load_task_set(db, feature_slug, repo_name)
    if not task_set:
        raise ValueError(f"Feature not found: {repo_name}/{feature_slug}")
    return task_set


def _new_task(spec: dict, default_order: int) -> Task:
    if not spec.get("task_id") or not spec.get("title"):
        raise ValueError("Tasks need a task_id and a title")
    order = spec.get("order_of_execution")
    return Task(
        task_id=spec["task_id"],
        title=spec["title"],
        description=spec.get("description", ""),
        status=DEFAULT_GRAPH.initial_status,
        dependencies=list(spec.get("dependencies") or []),
        order_of_execution=order if order is not None else default_order,
        estimated_hours=spec.get("estimated_hours"),
        assigned_to=spec.get("assigned_to"),
        tags=list(spec.get("tags") or []),
        acceptance_criteria=_new_criteria(spec.get("acceptance_criteria") or []),
    )


def _new_criteria(specs: list[dict]) -> list[AcceptanceCriterion]:
    criteria = []
    for spec in specs:
        if not isinstance(spec, dict) or not spec.get("id") or not spec.get("criterion"):
            raise ValueError("Acceptance criteria need an id and a criterion")
        priority = spec.get("priority") or CRITERION_PRIORITIES[0]
        if priority not in CRITERION_PRIORITIES:
            raise ValueError(
                f"Unknown priority '{priority}'. Use one of: {', '.join(CRITERION_PRIORITIES)}"
            )
        criteria.append(AcceptanceCriterion(
            id=spec["id"],
            criterion=spec["criterion"],
            priority=priority,
            verified=bool(spec.get("verified", False)),
        ))
    ids = [c.id for c in criteria]
    if len(set(ids)) != len(ids):
        raise ValueError("Duplicate acceptance criterion ids")
    return criteria


def _check_structure(task: Task):
    check = _structure_validator.validate_task_structure(task)
    if not check.valid:
        raise ValueError(f"Invalid task {task.task_id}: {'; '.join(check.errors)}")


def _check_dependencies(task: Task, deps: list[str], known: set[str]):
    for dep in deps:
        if dep == task.task_id:
            raise ValueError(f"Task {task.task_id} cannot depend on itself")
        if dep not in known:
            raise ValueError(f"Dependency task not found: {dep}")


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        task_id=row["task_id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        initial_status=row["initial_status"],
        dependencies=json.loads(row["dependencies"] or "[]"),
        order_of_execution=row["order_of_execution"] or 0,
        estimated_hours=row["estimated_hours"],
        assigned_to=row["assigned_to"],
        tags=json.loads(row["tags"] or "[]"),
    )


def _row_to_transition(row: sqlite3.Row) -> Transition:
    return Transition(
        from_status=row["from_status"],
        to_status=row["to_status"],
        actor=row["actor"],
        approver=row["approver"],
        timestamp=row["timestamp"],
        notes=row["notes"] or "",
        metadata=json.loads(row["metadata"] or "{}"),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
