"""Checkpoint snapshots of task statuses, restore and single-step rollback."""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime

from feature_conductor.core.errors import ErrorKind, Result
from feature_conductor.core.features import feature_lock, load_task_set, save_task_set
from feature_conductor.core.status_graph import Actor
from feature_conductor.core.validator import now_iso
from feature_conductor.db.engine import transaction
from feature_conductor.db.models import Checkpoint, Transition

logger = logging.getLogger(__name__)


@dataclass
class RestoreOutcome:
    checkpoint_id: int
    restored_tasks: int
    skipped_tasks: list[str] = field(default_factory=list)


@dataclass
class RollbackOutcome:
    task_id: str
    rolled_back_from: str
    rolled_back_to: str
    removed: Transition


def save_checkpoint(
    db: sqlite3.Connection,
    feature_slug: str,
    description: str,
    repo_name: str = "default",
) -> Result:
    """Snapshot every task's current status under a new checkpoint id."""
    with feature_lock(repo_name, feature_slug):
        task_set = load_task_set(db, feature_slug, repo_name)
        if not task_set:
            return Result.fail(
                ErrorKind.NOT_FOUND, f"Feature not found: {repo_name}/{feature_slug}"
            )
        snapshot = {t.task_id: t.status for t in task_set.tasks}

        with transaction(db):
            row = db.execute(
                """SELECT COALESCE(MAX(checkpoint_id), 0) + 1 AS next_id FROM checkpoints
                   WHERE repo_name = ? AND feature_slug = ?""",
                (repo_name, feature_slug),
            ).fetchone()
            checkpoint_id = row["next_id"]
            db.execute(
                """INSERT INTO checkpoints (repo_name, feature_slug, checkpoint_id,
                       description, snapshot)
                   VALUES (?, ?, ?, ?, ?)""",
                (repo_name, feature_slug, checkpoint_id, description, json.dumps(snapshot)),
            )

    logger.info("Saved checkpoint %d for %s/%s", checkpoint_id, repo_name, feature_slug)
    return Result.ok(get_checkpoint(db, feature_slug, checkpoint_id, repo_name))


def get_checkpoint(
    db: sqlite3.Connection,
    feature_slug: str,
    checkpoint_id: int,
    repo_name: str = "default",
) -> Checkpoint | None:
    row = db.execute(
        """SELECT * FROM checkpoints
           WHERE repo_name = ? AND feature_slug = ? AND checkpoint_id = ?""",
        (repo_name, feature_slug, checkpoint_id),
    ).fetchone()
    return _row_to_checkpoint(row) if row else None


def list_checkpoints(
    db: sqlite3.Connection, feature_slug: str, repo_name: str = "default"
) -> list[Checkpoint]:
    rows = db.execute(
        """SELECT * FROM checkpoints WHERE repo_name = ? AND feature_slug = ?
           ORDER BY checkpoint_id""",
        (repo_name, feature_slug),
    ).fetchall()
    return [_row_to_checkpoint(r) for r in rows]


def restore_checkpoint(
    db: sqlite3.Connection,
    feature_slug: str,
    checkpoint_id: int,
    repo_name: str = "default",
) -> Result:
    """Move every task still present back to its checkpointed status.

    Each restored task gets a new system transition; history is never
    rewritten. Tasks deleted since the checkpoint are skipped.
    """
    with feature_lock(repo_name, feature_slug):
        task_set = load_task_set(db, feature_slug, repo_name)
        if not task_set:
            return Result.fail(
                ErrorKind.NOT_FOUND, f"Feature not found: {repo_name}/{feature_slug}"
            )
        checkpoint = get_checkpoint(db, feature_slug, checkpoint_id, repo_name)
        if not checkpoint:
            return Result.fail(
                ErrorKind.NOT_FOUND,
                f"Checkpoint {checkpoint_id} not found for {repo_name}/{feature_slug}",
            )

        outcome = RestoreOutcome(checkpoint_id=checkpoint.id, restored_tasks=0)
        for task_id, status in checkpoint.snapshot.items():
            task = task_set.task(task_id)
            if not task:
                outcome.skipped_tasks.append(task_id)
                continue
            task.transitions.append(Transition(
                from_status=task.status,
                to_status=status,
                actor=Actor.SYSTEM,
                timestamp=now_iso(),
                notes=f"Restored from checkpoint: {checkpoint.description}",
                metadata={"restored_from_checkpoint": checkpoint.id},
            ))
            task.status = status
            outcome.restored_tasks += 1

        save_task_set(db, task_set)

    logger.info(
        "Restored %d tasks of %s/%s from checkpoint %d (%d skipped)",
        outcome.restored_tasks, repo_name, feature_slug, checkpoint.id,
        len(outcome.skipped_tasks),
    )
    return Result.ok(
        outcome, message=f"Restored {outcome.restored_tasks} tasks from checkpoint {checkpoint.id}"
    )


def rollback_last_decision(
    db: sqlite3.Connection,
    feature_slug: str,
    task_id: str,
    repo_name: str = "default",
) -> Result:
    """Remove a task's most recent transition and return it to the prior status.

    A removed review decision also clears that role's review entry.
    """
    with feature_lock(repo_name, feature_slug):
        task_set = load_task_set(db, feature_slug, repo_name)
        if not task_set:
            return Result.fail(
                ErrorKind.NOT_FOUND, f"Feature not found: {repo_name}/{feature_slug}"
            )
        task = task_set.task(task_id)
        if not task:
            return Result.fail(ErrorKind.NOT_FOUND, f"Task not found: {task_id}")
        if not task.transitions:
            return Result.fail(ErrorKind.NO_HISTORY, "No transitions to rollback")

        removed = task.transitions.pop()
        task.status = removed.from_status
        if removed.approver and "decision" in removed.metadata:
            task.stakeholder_review.pop(removed.approver, None)
        save_task_set(db, task_set)

    logger.warning(
        "Rolled back %s/%s/%s: removed %s -> %s by %s at %s",
        repo_name, feature_slug, task_id, removed.from_status, removed.to_status,
        removed.actor, removed.timestamp,
    )
    return Result.ok(
        RollbackOutcome(
            task_id=task_id,
            rolled_back_from=removed.to_status,
            rolled_back_to=removed.from_status,
            removed=removed,
        ),
        message=f"Rolled back {task_id} from {removed.to_status} to {removed.from_status}",
    )


def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
    return Checkpoint(
        id=row["checkpoint_id"],
        repo_name=row["repo_name"],
        feature_slug=row["feature_slug"],
        description=row["description"],
        snapshot=json.loads(row["snapshot"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
