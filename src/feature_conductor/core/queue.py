"""Persistent development queue with atomic single-worker claims."""

import logging
import re
import sqlite3
from datetime import datetime

from feature_conductor.core.errors import ErrorKind, Result
from feature_conductor.db.engine import transaction
from feature_conductor.db.models import QueueItem

logger = logging.getLogger(__name__)

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
STATUSES = (PENDING, RUNNING, COMPLETED, FAILED)
TERMINAL = (COMPLETED, FAILED)

MAX_ERROR_LENGTH = 4096

_SECRET_PATTERNS = [
    re.compile(r"(api[_-]?key\s*[=:]\s*)\S+", re.IGNORECASE),
    re.compile(r"(token\s*[=:]\s*)\S+", re.IGNORECASE),
    re.compile(r"(password\s*[=:]\s*)\S+", re.IGNORECASE),
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE),
    re.compile(r"()\bsk-[A-Za-z0-9_-]{8,}"),
]


def sanitize_error_message(message: str | None) -> str | None:
    """Redact credentials from an error message and cap its length."""
    if message is None:
        return None
    for pattern in _SECRET_PATTERNS:
        message = pattern.sub(r"\1[REDACTED]", message)
    return message[:MAX_ERROR_LENGTH]


# ── Lifecycle ─────────────────────────────────────────────────────────────────


def enqueue_item(
    db: sqlite3.Connection,
    repo_name: str,
    feature_slug: str,
    cli_tool: str = "claude",
) -> QueueItem:
    """Add a pending item. Duplicates are allowed; see has_active_item."""
    with transaction(db):
        cur = db.execute(
            "INSERT INTO dev_queue (repo_name, feature_slug, cli_tool) VALUES (?, ?, ?)",
            (repo_name, feature_slug, cli_tool),
        )
    logger.info("Enqueued %s/%s as item %d", repo_name, feature_slug, cur.lastrowid)
    return get_item(db, cur.lastrowid)


def claim_next_item(db: sqlite3.Connection, worker_handle: str) -> QueueItem | None:
    """Atomically move the oldest pending item to running for ``worker_handle``.

    Returns None when nothing is pending. Two workers can never claim the
    same item: the select and the status-guarded update run as one statement
    under a write lock.
    """
    with transaction(db):
        rows = db.execute(
            """UPDATE dev_queue
               SET status = 'running', worker_handle = ?, started_at = datetime('now')
               WHERE id = (
                   SELECT id FROM dev_queue WHERE status = 'pending'
                   ORDER BY created_at ASC, id ASC LIMIT 1
               ) AND status = 'pending'
               RETURNING *""",
            (worker_handle,),
        ).fetchall()
    if not rows:
        return None
    item = _row_to_item(rows[0])
    logger.info("Worker %s claimed item %d (%s/%s)", worker_handle, item.id,
                item.repo_name, item.feature_slug)
    return item


def complete_item(
    db: sqlite3.Connection, item_id: int, worker_handle: str | None = None
) -> Result:
    return _finish(db, item_id, COMPLETED, None, worker_handle)


def fail_item(
    db: sqlite3.Connection,
    item_id: int,
    error_message: str | None,
    worker_handle: str | None = None,
) -> Result:
    return _finish(db, item_id, FAILED, sanitize_error_message(error_message), worker_handle)


def _finish(
    db: sqlite3.Connection,
    item_id: int,
    status: str,
    error_message: str | None,
    worker_handle: str | None,
) -> Result:
    with transaction(db):
        item = get_item(db, item_id)
        if not item:
            return Result.fail(ErrorKind.NOT_FOUND, f"Queue item not found: {item_id}")
        if item.status != RUNNING:
            return Result.fail(
                ErrorKind.INVALID_STATE,
                f"Queue item {item_id} is {item.status}, only running items can be {status}",
            )
        if worker_handle is not None and item.worker_handle != worker_handle:
            return Result.fail(
                ErrorKind.INVALID_STATE,
                f"Queue item {item_id} is held by {item.worker_handle}, not {worker_handle}",
            )
        db.execute(
            """UPDATE dev_queue SET status = ?, completed_at = datetime('now'), error_message = ?
               WHERE id = ?""",
            (status, error_message, item_id),
        )
    if status == FAILED:
        logger.warning("Queue item %d failed: %s", item_id, error_message)
    else:
        logger.info("Queue item %d completed", item_id)
    return Result.ok(get_item(db, item_id))


def reenqueue_item(db: sqlite3.Connection, item_id: int) -> Result:
    """Return a failed item to pending and count the retry."""
    with transaction(db):
        item = get_item(db, item_id)
        if not item:
            return Result.fail(ErrorKind.NOT_FOUND, f"Queue item not found: {item_id}")
        if item.status != FAILED:
            return Result.fail(
                ErrorKind.INVALID_STATE,
                f"Only failed items can be re-enqueued (item {item_id} is {item.status})",
            )
        db.execute(
            """UPDATE dev_queue
               SET status = 'pending', retry_count = retry_count + 1, worker_handle = NULL,
                   started_at = NULL, completed_at = NULL, error_message = NULL
               WHERE id = ?""",
            (item_id,),
        )
    logger.info("Re-enqueued queue item %d (retry %d)", item_id, item.retry_count + 1)
    return Result.ok(get_item(db, item_id))


def cancel_item(db: sqlite3.Connection, item_id: int) -> Result:
    """Delete a pending item. Running and finished items cannot be cancelled."""
    with transaction(db):
        item = get_item(db, item_id)
        if not item:
            return Result.fail(ErrorKind.NOT_FOUND, f"Queue item not found: {item_id}")
        if item.status != PENDING:
            return Result.fail(
                ErrorKind.INVALID_STATE,
                f"Only pending items can be cancelled (item {item_id} is {item.status})",
            )
        db.execute("DELETE FROM dev_queue WHERE id = ?", (item_id,))
    logger.info("Cancelled queue item %d", item_id)
    return Result.ok(item)


def prune_items(db: sqlite3.Connection, older_than_days: int) -> int:
    """Delete completed and failed items finished more than N days ago."""
    if older_than_days < 0:
        raise ValueError("older_than_days must be non-negative")
    with transaction(db):
        cur = db.execute(
            """DELETE FROM dev_queue
               WHERE status IN ('completed', 'failed')
                 AND completed_at < datetime('now', ?)""",
            (f"-{int(older_than_days)} days",),
        )
    if cur.rowcount:
        logger.info("Pruned %d queue items older than %d days", cur.rowcount, older_than_days)
    return cur.rowcount


def force_release_item(db: sqlite3.Connection, item_id: int) -> Result:
    """Administrative reset of a running item back to pending.

    For items whose worker died. Bypasses the normal lifecycle and does not
    count as a retry.
    """
    with transaction(db):
        item = get_item(db, item_id)
        if not item:
            return Result.fail(ErrorKind.NOT_FOUND, f"Queue item not found: {item_id}")
        if item.status != RUNNING:
            return Result.fail(
                ErrorKind.INVALID_STATE,
                f"Only running items can be released (item {item_id} is {item.status})",
            )
        db.execute(
            """UPDATE dev_queue SET status = 'pending', worker_handle = NULL, started_at = NULL
               WHERE id = ?""",
            (item_id,),
        )
    logger.warning("Force-released queue item %d held by %s", item_id, item.worker_handle)
    return Result.ok(get_item(db, item_id))


# ── Queries ───────────────────────────────────────────────────────────────────


def get_item(db: sqlite3.Connection, item_id: int) -> QueueItem | None:
    row = db.execute("SELECT * FROM dev_queue WHERE id = ?", (item_id,)).fetchone()
    return _row_to_item(row) if row else None


def list_items(
    db: sqlite3.Connection,
    repo_name: str | None = None,
    feature_slug: str | None = None,
    status: str | None = None,
    limit: int | None = None,
) -> list[QueueItem]:
    """List queue items, newest first, with optional filters."""
    query = "SELECT * FROM dev_queue WHERE 1 = 1"
    params: list = []
    if repo_name:
        query += " AND repo_name = ?"
        params.append(repo_name)
    if feature_slug:
        query += " AND feature_slug = ?"
        params.append(feature_slug)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC, id DESC"
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    return [_row_to_item(r) for r in db.execute(query, params).fetchall()]


def queue_stats(db: sqlite3.Connection) -> dict[str, int]:
    counts = {status: 0 for status in STATUSES}
    for row in db.execute("SELECT status, COUNT(*) AS n FROM dev_queue GROUP BY status"):
        counts[row["status"]] = row["n"]
    counts["total"] = sum(counts[s] for s in STATUSES)
    return counts


def has_active_item(db: sqlite3.Connection, repo_name: str, feature_slug: str) -> bool:
    """True if the feature already has a pending or running item."""
    row = db.execute(
        """SELECT 1 FROM dev_queue
           WHERE repo_name = ? AND feature_slug = ? AND status IN ('pending', 'running')
           LIMIT 1""",
        (repo_name, feature_slug),
    ).fetchone()
    return row is not None


def list_stale_items(db: sqlite3.Connection, older_than_minutes: int) -> list[QueueItem]:
    """Running items claimed more than N minutes ago."""
    rows = db.execute(
        """SELECT * FROM dev_queue
           WHERE status = 'running' AND started_at < datetime('now', ?)
           ORDER BY started_at""",
        (f"-{int(older_than_minutes)} minutes",),
    ).fetchall()
    return [_row_to_item(r) for r in rows]


def _row_to_item(row: sqlite3.Row) -> QueueItem:
    return QueueItem(
        id=row["id"],
        repo_name=row["repo_name"],
        feature_slug=row["feature_slug"],
        status=row["status"],
        cli_tool=row["cli_tool"],
        worker_handle=row["worker_handle"],
        retry_count=row["retry_count"],
        created_at=_parse_dt(row["created_at"]),
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        error_message=row["error_message"],
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
