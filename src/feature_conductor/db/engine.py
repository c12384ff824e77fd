"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS features (
    repo_name TEXT NOT NULL,
    feature_slug TEXT NOT NULL,
    feature_name TEXT NOT NULL,
    description TEXT DEFAULT '',
    created_at TEXT DEFAULT (datetime('now')),
    last_modified TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (repo_name, feature_slug)
);

CREATE TABLE IF NOT EXISTS tasks (
    repo_name TEXT NOT NULL,
    feature_slug TEXT NOT NULL,
    task_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT NOT NULL,
    initial_status TEXT NOT NULL,
    dependencies TEXT DEFAULT '[]',
    order_of_execution INTEGER DEFAULT 0,
    estimated_hours REAL,
    assigned_to TEXT,
    tags TEXT DEFAULT '[]',
    PRIMARY KEY (repo_name, feature_slug, task_id),
    FOREIGN KEY (repo_name, feature_slug)
        REFERENCES features(repo_name, feature_slug) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    repo_name TEXT NOT NULL,
    feature_slug TEXT NOT NULL,
    task_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    from_status TEXT NOT NULL,
    to_status TEXT NOT NULL,
    actor TEXT NOT NULL,
    approver TEXT,
    timestamp TEXT NOT NULL,
    notes TEXT DEFAULT '',
    metadata TEXT DEFAULT '{}',
    FOREIGN KEY (repo_name, feature_slug, task_id)
        REFERENCES tasks(repo_name, feature_slug, task_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS stakeholder_reviews (
    repo_name TEXT NOT NULL,
    feature_slug TEXT NOT NULL,
    task_id TEXT NOT NULL,
    role TEXT NOT NULL,
    approved INTEGER NOT NULL,
    notes TEXT DEFAULT '',
    details TEXT DEFAULT '{}',
    PRIMARY KEY (repo_name, feature_slug, task_id, role),
    FOREIGN KEY (repo_name, feature_slug, task_id)
        REFERENCES tasks(repo_name, feature_slug, task_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS acceptance_criteria (
    repo_name TEXT NOT NULL,
    feature_slug TEXT NOT NULL,
    task_id TEXT NOT NULL,
    criterion_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    criterion TEXT NOT NULL,
    priority TEXT NOT NULL DEFAULT 'Must Have',
    verified INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (repo_name, feature_slug, task_id, criterion_id),
    FOREIGN KEY (repo_name, feature_slug, task_id)
        REFERENCES tasks(repo_name, feature_slug, task_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS checkpoints (
    repo_name TEXT NOT NULL,
    feature_slug TEXT NOT NULL,
    checkpoint_id INTEGER NOT NULL,
    description TEXT NOT NULL,
    snapshot TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (repo_name, feature_slug, checkpoint_id)
);

CREATE TABLE IF NOT EXISTS dev_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    repo_name TEXT NOT NULL,
    feature_slug TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'running', 'completed', 'failed')),
    cli_tool TEXT NOT NULL DEFAULT 'claude',
    worker_handle TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    started_at TEXT,
    completed_at TEXT,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_dev_queue_status ON dev_queue(status);
CREATE INDEX IF NOT EXISTS idx_dev_queue_repo_feature ON dev_queue(repo_name, feature_slug);
CREATE INDEX IF NOT EXISTS idx_dev_queue_composite ON dev_queue(status, created_at);
CREATE INDEX IF NOT EXISTS idx_transitions_task
    ON transitions(repo_name, feature_slug, task_id, seq);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);
"""

DEFAULT_SETTINGS = {
    "cron_interval_seconds": "60",
    "base_repos_folder": "",
    "cli_tool": "claude",
    "worker_enabled": "false",
}


def _seed_settings(conn: sqlite3.Connection):
    """Insert default settings that are not present yet."""
    for key, value in DEFAULT_SETTINGS.items():
        conn.execute(
            "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)",
            (key, value),
        )
    conn.commit()


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.executescript(SCHEMA)
    _seed_settings(conn)
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection):
    """Run the enclosed statements inside one BEGIN IMMEDIATE transaction.

    The write lock is taken up front, so a read followed by a write inside the
    block cannot interleave with another connection's write.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


@contextmanager
def read_snapshot(conn: sqlite3.Connection):
    """Run the enclosed SELECTs against one consistent snapshot.

    Under WAL each autocommit statement sees the latest commit, so several
    reads in a row can straddle another connection's write. A deferred
    transaction pins the snapshot at the first read. Inside an open
    transaction the caller's snapshot is used as is.
    """
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN")
    try:
        yield conn
    finally:
        conn.rollback()
