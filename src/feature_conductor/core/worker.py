"""Background queue processing: the cron scanner and the queue worker."""

import logging
import os
import socket
import subprocess
import threading
from collections.abc import Callable
from pathlib import Path

from feature_conductor.core import queue as queue_mod
from feature_conductor.core.features import list_features
from feature_conductor.core.settings import (
    MIN_CRON_INTERVAL_SECONDS,
    QueueSettings,
    get_queue_settings,
)
from feature_conductor.core.workflow import is_ready_for_development
from feature_conductor.db.engine import init_db
from feature_conductor.db.models import QueueItem

logger = logging.getLogger(__name__)

ALLOWED_CLI_TOOLS = frozenset({"claude", "copilot"})
DEFAULT_TIMEOUT = 30 * 60
MAX_STDERR_LENGTH = 8192


class ActionError(RuntimeError):
    """A queue action could not run or exited unsuccessfully."""


def default_worker_handle() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


# ── CLI tool action ───────────────────────────────────────────────────────────


def build_command(cli_tool: str, repo_name: str, feature_slug: str) -> list[str]:
    """Argument list for the dev-workflow run. Never passed through a shell."""
    if cli_tool not in ALLOWED_CLI_TOOLS:
        raise ActionError(
            f"CLI tool '{cli_tool}' is not allowed. Use one of: {', '.join(sorted(ALLOWED_CLI_TOOLS))}"
        )
    prompt = f"/dev-workflow repoName: {repo_name}, featureName: {feature_slug}"
    if cli_tool == "claude":
        return [
            "claude",
            "--print",
            "--allowedTools", "*",
            "--dangerously-skip-permissions",
            "-p", prompt,
        ]
    return ["copilot", "--message", prompt]


def resolve_repo_dir(base_repos_folder: str, repo_name: str) -> Path:
    """Locate a repository under the base folder, refusing paths that escape it."""
    if not base_repos_folder:
        raise ActionError("base_repos_folder is not configured")
    base = Path(base_repos_folder).expanduser().resolve()
    repo_dir = (base / repo_name).resolve()
    if repo_dir == base or base not in repo_dir.parents:
        raise ActionError(f"Repository name escapes the base folder: {repo_name}")
    if not repo_dir.is_dir():
        raise ActionError(f"Repository directory not found: {repo_dir}")
    return repo_dir


def run_cli_tool(item: QueueItem, settings: QueueSettings, timeout: float = DEFAULT_TIMEOUT):
    """Run the item's CLI tool in its repository. Raises ActionError on failure."""
    cmd = build_command(item.cli_tool, item.repo_name, item.feature_slug)
    repo_dir = resolve_repo_dir(settings.base_repos_folder, item.repo_name)

    logger.info("Running %s for %s/%s in %s", item.cli_tool, item.repo_name,
                item.feature_slug, repo_dir)
    try:
        proc = subprocess.run(
            cmd,
            cwd=repo_dir,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ActionError(f"{item.cli_tool} timed out after {int(timeout)}s") from e
    except FileNotFoundError as e:
        raise ActionError(f"{item.cli_tool} is not installed or not on PATH") from e

    if proc.returncode != 0:
        stderr = (proc.stderr or "").strip()[-MAX_STDERR_LENGTH:]
        raise ActionError(f"{item.cli_tool} exited with code {proc.returncode}: {stderr}")


# ── Queue worker ──────────────────────────────────────────────────────────────


class QueueWorker:
    """Background thread that claims queue items one at a time and runs them."""

    def __init__(
        self,
        db_path: Path,
        poll_interval: float = 5.0,
        action: Callable[[QueueItem, QueueSettings], None] | None = None,
        worker_handle: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.db_path = db_path
        self.poll_interval = poll_interval
        self.action = action or self._run_cli_tool
        self.worker_handle = worker_handle or default_worker_handle()
        self.timeout = timeout
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the worker thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="queue-worker", daemon=True
        )
        self._thread.start()
        logger.info("Queue worker %s started", self.worker_handle)

    def stop(self):
        """Signal the worker thread to stop after the current item."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Queue worker %s stopped", self.worker_handle)

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self._tick()
            except Exception:
                logger.exception("Error in queue worker loop")
            self._stop_event.wait(self.poll_interval)

    def _tick(self):
        db = init_db(self.db_path)
        try:
            enabled = get_queue_settings(db).worker_enabled
        finally:
            db.close()
        if enabled:
            self.process_next()

    def process_next(self) -> QueueItem | None:
        """Claim and run one pending item. Returns the finished item, or None."""
        db = init_db(self.db_path)
        try:
            item = queue_mod.claim_next_item(db, self.worker_handle)
            if item is None:
                return None
            settings = get_queue_settings(db)
            try:
                self.action(item, settings)
            except ActionError as e:
                logger.warning("Queue item %d failed: %s", item.id, e)
                queue_mod.fail_item(db, item.id, str(e), self.worker_handle)
            except Exception as e:
                logger.exception("Queue item %d raised an unexpected error", item.id)
                queue_mod.fail_item(db, item.id, f"{type(e).__name__}: {e}", self.worker_handle)
            else:
                queue_mod.complete_item(db, item.id, self.worker_handle)
            return queue_mod.get_item(db, item.id)
        finally:
            db.close()

    def _run_cli_tool(self, item: QueueItem, settings: QueueSettings):
        run_cli_tool(item, settings, self.timeout)


# ── Cron scanner ──────────────────────────────────────────────────────────────


class CronScanner:
    """Background thread that enqueues features once every task is ready for development.

    A feature with a pending or running item is skipped, so the scanner never
    queues the same feature twice.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="cron-scanner", daemon=True
        )
        self._thread.start()
        logger.info("Cron scanner started")

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Cron scanner stopped")

    def _run(self):
        while not self._stop_event.is_set():
            interval = MIN_CRON_INTERVAL_SECONDS
            try:
                self.scan()
                interval = self._interval()
            except Exception:
                logger.exception("Error in cron scanner loop")
            self._stop_event.wait(interval)

    def _interval(self) -> int:
        db = init_db(self.db_path)
        try:
            seconds = get_queue_settings(db).cron_interval_seconds
        finally:
            db.close()
        return max(seconds, MIN_CRON_INTERVAL_SECONDS)

    def scan(self) -> list[QueueItem]:
        """Enqueue every ready feature without an active item. Returns new items."""
        db = init_db(self.db_path)
        enqueued = []
        try:
            settings = get_queue_settings(db)
            if not settings.worker_enabled:
                return enqueued
            for task_set in list_features(db):
                try:
                    if not is_ready_for_development(task_set):
                        continue
                    if queue_mod.has_active_item(db, task_set.repo_name, task_set.feature_slug):
                        continue
                    enqueued.append(queue_mod.enqueue_item(
                        db, task_set.repo_name, task_set.feature_slug, settings.cli_tool
                    ))
                except Exception:
                    logger.exception(
                        "Failed to scan feature %s/%s", task_set.repo_name, task_set.feature_slug
                    )
        finally:
            db.close()
        if enqueued:
            logger.info("Cron scan enqueued %d features", len(enqueued))
        return enqueued
