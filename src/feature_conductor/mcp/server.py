"""MCP server exposing the feature workflow, planner, checkpoint and queue tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from feature_conductor.config import Config, get_config
from feature_conductor.core import checkpoints as checkpoints_mod
from feature_conductor.core import features as features_mod
from feature_conductor.core import queue as queue_mod
from feature_conductor.core import settings as settings_mod
from feature_conductor.core import workflow as workflow_mod
from feature_conductor.core.serialize import feature_summary, result_dict, to_data
from feature_conductor.core.worker import CronScanner, QueueWorker
from feature_conductor.db.engine import init_db


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    worker: QueueWorker | None = None
    scanner: CronScanner | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the database and start background processing; stop both on shutdown."""
    config = get_config()
    db = init_db(config.db_path)

    worker = QueueWorker(
        config.db_path,
        poll_interval=config.worker_poll_interval,
        worker_handle=config.worker_handle,
        timeout=config.worker_timeout,
    )
    scanner = CronScanner(config.db_path)
    worker.start()
    scanner.start()

    try:
        yield AppContext(db=db, config=config, worker=worker, scanner=scanner)
    finally:
        scanner.stop()
        worker.stop()
        db.close()


mcp = FastMCP("feature-conductor", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Feature Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def create_feature(
    ctx: Context,
    feature_slug: str,
    feature_name: str | None = None,
    repo_name: str = "default",
    tasks: list[dict] | None = None,
    description: str = "",
) -> dict:
    """Create a feature. Each task dict needs 'task_id' and 'title'; 'description',
    'dependencies', 'order_of_execution', 'estimated_hours', 'tags' and
    'acceptance_criteria' (dicts with 'id', 'criterion' and optional 'priority')
    are optional. Tasks start in PendingProductDirector."""
    app = _ctx(ctx)
    try:
        task_set = features_mod.create_feature(
            app.db, feature_slug, feature_name, repo_name, tasks, description
        )
    except ValueError as e:
        return {"error": str(e)}
    return to_data(task_set)


@mcp.tool()
def list_features(ctx: Context, repo_name: str | None = None) -> list[dict]:
    """List features with task counts by status."""
    app = _ctx(ctx)
    return [feature_summary(ts) for ts in features_mod.list_features(app.db, repo_name)]


@mcp.tool()
def get_feature(ctx: Context, feature_slug: str, repo_name: str = "default") -> dict:
    """Get a feature with all tasks, transitions and stakeholder reviews."""
    app = _ctx(ctx)
    task_set = features_mod.get_feature(app.db, feature_slug, repo_name)
    if not task_set:
        return {"error": f"Feature not found: {repo_name}/{feature_slug}"}
    return to_data(task_set)


@mcp.tool()
def update_feature(
    ctx: Context,
    feature_slug: str,
    repo_name: str = "default",
    feature_name: str | None = None,
    description: str | None = None,
) -> dict:
    """Rename a feature or change its description."""
    app = _ctx(ctx)
    try:
        task_set = features_mod.update_feature(
            app.db, feature_slug, repo_name, feature_name, description
        )
    except ValueError as e:
        return {"error": str(e)}
    if not task_set:
        return {"error": f"Feature not found: {repo_name}/{feature_slug}"}
    return feature_summary(task_set)


@mcp.tool()
def add_task(
    ctx: Context,
    feature_slug: str,
    task_id: str,
    title: str,
    repo_name: str = "default",
    description: str = "",
    dependencies: list[str] | None = None,
    estimated_hours: float | None = None,
    acceptance_criteria: list[dict] | None = None,
) -> dict:
    """Add a task to a feature. Acceptance criteria are dicts with 'id',
    'criterion' and optionally 'priority' (Must Have, Should Have, Could Have)."""
    app = _ctx(ctx)
    try:
        task = features_mod.add_task(
            app.db, feature_slug, task_id, title, repo_name,
            description=description, dependencies=dependencies,
            estimated_hours=estimated_hours, acceptance_criteria=acceptance_criteria,
        )
    except ValueError as e:
        return {"error": str(e)}
    return to_data(task)


@mcp.tool()
def add_dependency(
    ctx: Context, feature_slug: str, task_id: str, depends_on_id: str, repo_name: str = "default"
) -> dict:
    """Make task_id depend on depends_on_id."""
    app = _ctx(ctx)
    try:
        task = features_mod.add_dependency(app.db, feature_slug, task_id, depends_on_id, repo_name)
    except ValueError as e:
        return {"error": str(e)}
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return to_data(task)


# ── Workflow Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def review_task(
    ctx: Context,
    feature_slug: str,
    task_id: str,
    role: str,
    decision: str,
    notes: str = "",
    repo_name: str = "default",
) -> dict:
    """Record a stakeholder review. Roles in order: productDirector, architect,
    uiUxExpert, securityOfficer. Decision is 'approve' or 'reject'; a rejection
    sends the task to NeedsRefinement."""
    app = _ctx(ctx)
    return result_dict(workflow_mod.review_task(
        app.db, feature_slug, task_id, role, decision, notes, repo_name=repo_name
    ))


@mcp.tool()
def validate_workflow(
    ctx: Context,
    feature_slug: str,
    task_id: str,
    role: str,
    decision: str = "approve",
    repo_name: str = "default",
) -> dict:
    """Check whether a review decision would be accepted, without recording it."""
    app = _ctx(ctx)
    return result_dict(workflow_mod.validate_workflow(
        app.db, feature_slug, task_id, role, decision, repo_name
    ))


@mcp.tool()
def transition_task(
    ctx: Context,
    feature_slug: str,
    task_id: str,
    from_status: str,
    to_status: str,
    actor: str,
    notes: str = "",
    repo_name: str = "default",
) -> dict:
    """Move a task through development (ToDo, InProgress, InReview, InQA, Done,
    NeedsChanges). Fails with ConcurrencyConflict if the task is no longer in
    from_status."""
    app = _ctx(ctx)
    return result_dict(workflow_mod.transition_task(
        app.db, feature_slug, task_id, from_status, to_status, actor, notes,
        repo_name=repo_name,
    ))


@mcp.tool()
def batch_transition_tasks(
    ctx: Context,
    feature_slug: str,
    changes: list[dict],
    actor: str,
    repo_name: str = "default",
) -> dict:
    """Apply several transitions at once. Each change has 'task_id', 'to_status'
    and optionally 'from_status' and 'notes'."""
    app = _ctx(ctx)
    return result_dict(workflow_mod.batch_transition_tasks(
        app.db, feature_slug, changes, actor, repo_name
    ))


@mcp.tool()
def update_acceptance_criteria(
    ctx: Context,
    feature_slug: str,
    task_id: str,
    criterion_id: str,
    verified: bool,
    repo_name: str = "default",
) -> dict:
    """Mark one acceptance criterion of a task as verified or unverified."""
    app = _ctx(ctx)
    return result_dict(workflow_mod.update_acceptance_criteria(
        app.db, feature_slug, task_id, criterion_id, verified, repo_name
    ))


@mcp.tool()
def batch_update_acceptance_criteria(
    ctx: Context,
    feature_slug: str,
    updates: list[dict],
    repo_name: str = "default",
) -> dict:
    """Update several acceptance criteria at once. Each update has 'task_id',
    'criterion_id' and 'verified'."""
    app = _ctx(ctx)
    return result_dict(workflow_mod.batch_update_acceptance_criteria(
        app.db, feature_slug, updates, repo_name
    ))


@mcp.tool()
def get_task_status(
    ctx: Context, feature_slug: str, task_id: str, repo_name: str = "default"
) -> dict:
    """Get a task with its review progress, next expected step and structure check."""
    app = _ctx(ctx)
    return result_dict(workflow_mod.get_task_status(app.db, feature_slug, task_id, repo_name))


@mcp.tool()
def get_review_summary(ctx: Context, feature_slug: str, repo_name: str = "default") -> dict:
    """Summarize task counts, approvals per role and tasks awaiting each reviewer."""
    app = _ctx(ctx)
    return result_dict(workflow_mod.review_summary(app.db, feature_slug, repo_name))


@mcp.tool()
def get_next_task(
    ctx: Context,
    feature_slug: str,
    statuses: list[str] | None = None,
    repo_name: str = "default",
) -> dict:
    """Get the lowest-ordered task in the given statuses whose dependencies are Done."""
    app = _ctx(ctx)
    return result_dict(workflow_mod.get_next_task(app.db, feature_slug, statuses, repo_name))


@mcp.tool()
def verify_all_tasks_complete(
    ctx: Context, feature_slug: str, repo_name: str = "default"
) -> dict:
    """Check whether every task in a feature is Done."""
    app = _ctx(ctx)
    return result_dict(workflow_mod.verify_all_tasks_complete(app.db, feature_slug, repo_name))


@mcp.tool()
def get_execution_plan(ctx: Context, feature_slug: str, repo_name: str = "default") -> dict:
    """Dependency order, parallel phases and critical path for a feature."""
    app = _ctx(ctx)
    return result_dict(workflow_mod.get_execution_plan(app.db, feature_slug, repo_name))


# ── Checkpoint Tools ──────────────────────────────────────────────────────────


@mcp.tool()
def save_checkpoint(
    ctx: Context, feature_slug: str, description: str, repo_name: str = "default"
) -> dict:
    """Snapshot the status of every task in a feature."""
    app = _ctx(ctx)
    return result_dict(checkpoints_mod.save_checkpoint(app.db, feature_slug, description, repo_name))


@mcp.tool()
def list_checkpoints(ctx: Context, feature_slug: str, repo_name: str = "default") -> list[dict]:
    """List the checkpoints saved for a feature."""
    app = _ctx(ctx)
    return to_data(checkpoints_mod.list_checkpoints(app.db, feature_slug, repo_name))


@mcp.tool()
def restore_checkpoint(
    ctx: Context, feature_slug: str, checkpoint_id: int, repo_name: str = "default"
) -> dict:
    """Return every task to its checkpointed status, recording a system transition."""
    app = _ctx(ctx)
    return result_dict(
        checkpoints_mod.restore_checkpoint(app.db, feature_slug, checkpoint_id, repo_name)
    )


@mcp.tool()
def rollback_last_decision(
    ctx: Context, feature_slug: str, task_id: str, repo_name: str = "default"
) -> dict:
    """Undo a task's most recent transition."""
    app = _ctx(ctx)
    return result_dict(
        checkpoints_mod.rollback_last_decision(app.db, feature_slug, task_id, repo_name)
    )


# ── Queue Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def enqueue_feature(
    ctx: Context, repo_name: str, feature_slug: str, cli_tool: str | None = None
) -> dict:
    """Queue a feature for unattended development."""
    app = _ctx(ctx)
    tool = cli_tool or settings_mod.get_queue_settings(app.db).cli_tool
    return to_data(queue_mod.enqueue_item(app.db, repo_name, feature_slug, tool))


@mcp.tool()
def list_queue(
    ctx: Context,
    status: str | None = None,
    repo_name: str | None = None,
    feature_slug: str | None = None,
) -> list[dict]:
    """List queue items, newest first."""
    app = _ctx(ctx)
    return to_data(queue_mod.list_items(app.db, repo_name, feature_slug, status))


@mcp.tool()
def queue_stats(ctx: Context) -> dict:
    """Count queue items by status."""
    app = _ctx(ctx)
    return queue_mod.queue_stats(app.db)


@mcp.tool()
def reenqueue_item(ctx: Context, item_id: int) -> dict:
    """Send a failed queue item back to pending."""
    app = _ctx(ctx)
    return result_dict(queue_mod.reenqueue_item(app.db, item_id))


@mcp.tool()
def cancel_queue_item(ctx: Context, item_id: int) -> dict:
    """Cancel a pending queue item."""
    app = _ctx(ctx)
    return result_dict(queue_mod.cancel_item(app.db, item_id))


@mcp.tool()
def list_stale_queue_items(ctx: Context, older_than_minutes: int = 60) -> list[dict]:
    """List running queue items claimed longer ago than the given minutes."""
    app = _ctx(ctx)
    return to_data(queue_mod.list_stale_items(app.db, older_than_minutes))


@mcp.tool()
def get_queue_settings(ctx: Context) -> dict:
    """Read the queue settings."""
    app = _ctx(ctx)
    return to_data(settings_mod.get_queue_settings(app.db))


@mcp.tool()
def update_queue_settings(
    ctx: Context,
    cron_interval_seconds: int | None = None,
    base_repos_folder: str | None = None,
    cli_tool: str | None = None,
    worker_enabled: bool | None = None,
) -> dict:
    """Change queue settings; omitted values stay as they are."""
    app = _ctx(ctx)
    try:
        updated = settings_mod.update_queue_settings(
            app.db, cron_interval_seconds, base_repos_folder, cli_tool, worker_enabled
        )
    except ValueError as e:
        return {"error": str(e)}
    return to_data(updated)
