"""CLI entry point for the feature conductor."""

import json
import logging
import sys

import click

from feature_conductor.config import get_config
from feature_conductor.core import checkpoints as checkpoints_mod
from feature_conductor.core import features as features_mod
from feature_conductor.core import queue as queue_mod
from feature_conductor.core import settings as settings_mod
from feature_conductor.core import workflow as workflow_mod
from feature_conductor.core.errors import Result
from feature_conductor.core.serialize import feature_summary, result_dict, to_data
from feature_conductor.db.engine import get_db


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(result: Result):
    click.echo(f"Error ({result.error_kind}): {result.error}", err=True)
    sys.exit(1)


@click.group()
@click.option("--log-level", default=None, help="Logging level (default from FC_LOG_LEVEL)")
def main(log_level):
    """conductor - Feature Conductor CLI"""
    level = (log_level or get_config().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Feature Commands ──────────────────────────────────────────────────────────


@main.group("feature")
def feature_group():
    """Manage features."""
    pass


@feature_group.command("create")
@click.argument("feature_slug")
@click.option("--name", default=None, help="Human readable feature name")
@click.option("--repo", default="default", help="Repository name")
@click.option("--tasks-file", type=click.File("r"), default=None,
              help="JSON file with a list of task objects")
@click.option("--description", "-d", default="", help="Feature description")
def feature_create(feature_slug, name, repo, tasks_file, description):
    """Create a feature."""
    tasks = json.load(tasks_file) if tasks_file else None
    with _get_db() as db:
        try:
            task_set = features_mod.create_feature(db, feature_slug, name, repo, tasks, description)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Created feature: {task_set.repo_name}/{task_set.feature_slug}")
        click.echo(f"  Tasks: {len(task_set.tasks)}")


@feature_group.command("list")
@click.option("--repo", default=None, help="Filter by repository")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def feature_list(repo, json_output):
    """List features."""
    with _get_db() as db:
        task_sets = features_mod.list_features(db, repo)

        if json_output:
            click.echo(json.dumps([feature_summary(ts) for ts in task_sets], indent=2))
            return

        if not task_sets:
            click.echo("No features found.")
            return

        for ts in task_sets:
            summary = feature_summary(ts)
            counts = ", ".join(f"{k}: {v}" for k, v in summary["counts_by_status"].items())
            click.echo(f"  {ts.repo_name}/{ts.feature_slug}: {ts.feature_name} ({counts or 'no tasks'})")


@feature_group.command("show")
@click.argument("feature_slug")
@click.option("--repo", default="default", help="Repository name")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def feature_show(feature_slug, repo, json_output):
    """Show a feature and its tasks."""
    with _get_db() as db:
        task_set = features_mod.get_feature(db, feature_slug, repo)
        if not task_set:
            click.echo(f"Feature not found: {repo}/{feature_slug}", err=True)
            sys.exit(1)

        if json_output:
            click.echo(json.dumps(to_data(task_set), indent=2))
            return

        click.echo(f"Feature: {task_set.repo_name}/{task_set.feature_slug}")
        click.echo(f"  Name: {task_set.feature_name}")
        if task_set.description:
            click.echo(f"  Description: {task_set.description}")
        for task in sorted(task_set.tasks, key=lambda t: t.order_of_execution):
            deps = f" [depends: {', '.join(task.dependencies)}]" if task.dependencies else ""
            click.echo(f"  {task.order_of_execution}. {task.task_id}: {task.title} ({task.status}){deps}")


@feature_group.command("update")
@click.argument("feature_slug")
@click.option("--repo", default="default", help="Repository name")
@click.option("--name", default=None, help="New feature name")
@click.option("--description", "-d", default=None, help="New feature description")
def feature_update(feature_slug, repo, name, description):
    """Rename a feature or change its description."""
    with _get_db() as db:
        try:
            task_set = features_mod.update_feature(db, feature_slug, repo, name, description)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        if not task_set:
            click.echo(f"Feature not found: {repo}/{feature_slug}", err=True)
            sys.exit(1)
        click.echo(f"Updated feature: {repo}/{feature_slug}")
        click.echo(f"  Name: {task_set.feature_name}")


@feature_group.command("delete")
@click.argument("feature_slug")
@click.option("--repo", default="default", help="Repository name")
def feature_delete(feature_slug, repo):
    """Delete a feature and its tasks."""
    with _get_db() as db:
        if not features_mod.delete_feature(db, feature_slug, repo):
            click.echo(f"Feature not found: {repo}/{feature_slug}", err=True)
            sys.exit(1)
        click.echo(f"Deleted feature: {repo}/{feature_slug}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks and move them through the workflow."""
    pass


@task_group.command("add")
@click.argument("feature_slug")
@click.argument("task_id")
@click.argument("title")
@click.option("--repo", default="default", help="Repository name")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--hours", type=float, default=None, help="Estimated hours")
@click.option("--assign", default=None, help="Assignee")
def task_add(feature_slug, task_id, title, repo, description, depends_on, hours, assign):
    """Add a task to a feature."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None
    with _get_db() as db:
        try:
            task = features_mod.add_task(
                db, feature_slug, task_id, title, repo,
                description=description, dependencies=deps,
                estimated_hours=hours, assigned_to=assign,
            )
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Created task: {task.task_id}")
        click.echo(f"  Status: {task.status}")
        if task.dependencies:
            click.echo(f"  Depends on: {', '.join(task.dependencies)}")


@task_group.command("show")
@click.argument("feature_slug")
@click.argument("task_id")
@click.option("--repo", default="default", help="Repository name")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_show(feature_slug, task_id, repo, json_output):
    """Show task details, review progress and history."""
    with _get_db() as db:
        result = workflow_mod.get_task_status(db, feature_slug, task_id, repo)
        if not result.success:
            _fail(result)

        if json_output:
            click.echo(json.dumps(to_data(result.value), indent=2))
            return

        task = result.value["task"]
        progress = result.value["review_progress"]
        step = result.value["next_step"]
        click.echo(f"Task: {task.task_id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.dependencies:
            click.echo(f"  Depends on: {', '.join(task.dependencies)}")
        click.echo(f"  Approved by: {', '.join(progress.completed_roles) or '-'}")
        if progress.current_role:
            click.echo(f"  Awaiting: {progress.current_role}")
        elif step.actors:
            click.echo(f"  Next actors: {', '.join(step.actors)}")
        if task.acceptance_criteria:
            click.echo("  Acceptance criteria:")
            for c in task.acceptance_criteria:
                mark = "x" if c.verified else " "
                click.echo(f"    [{mark}] {c.id}: {c.criterion} ({c.priority})")
        for error in result.value["structure"].errors:
            click.echo(f"  ! {error}")
        if task.transitions:
            click.echo("  History:")
            for t in task.transitions:
                notes = f" - {t.notes}" if t.notes else ""
                click.echo(f"    {t.timestamp}  {t.from_status} -> {t.to_status} by {t.actor}{notes}")


@task_group.command("review")
@click.argument("feature_slug")
@click.argument("task_id")
@click.argument("role")
@click.argument("decision", type=click.Choice(["approve", "reject"]))
@click.option("--repo", default="default", help="Repository name")
@click.option("--notes", "-n", default="", help="Review notes")
def task_review(feature_slug, task_id, role, decision, repo, notes):
    """Record a stakeholder review decision."""
    with _get_db() as db:
        result = workflow_mod.review_task(db, feature_slug, task_id, role, decision, notes,
                                          repo_name=repo)
        if not result.success:
            _fail(result)
        click.echo(result.message)


@task_group.command("move")
@click.argument("feature_slug")
@click.argument("task_id")
@click.argument("to_status")
@click.option("--actor", required=True, help="Actor performing the transition")
@click.option("--from", "from_status", default=None,
              help="Expected current status (defaults to the stored status)")
@click.option("--repo", default="default", help="Repository name")
@click.option("--notes", "-n", default="", help="Transition notes")
def task_move(feature_slug, task_id, to_status, actor, from_status, repo, notes):
    """Move a task to another development status."""
    with _get_db() as db:
        if from_status is None:
            task = features_mod.get_task(db, feature_slug, task_id, repo)
            if not task:
                click.echo(f"Task not found: {task_id}", err=True)
                sys.exit(1)
            from_status = task.status
        result = workflow_mod.transition_task(
            db, feature_slug, task_id, from_status, to_status, actor, notes, repo_name=repo
        )
        if not result.success:
            _fail(result)
        click.echo(result.message)


@task_group.command("rollback")
@click.argument("feature_slug")
@click.argument("task_id")
@click.option("--repo", default="default", help="Repository name")
def task_rollback(feature_slug, task_id, repo):
    """Undo the task's most recent transition."""
    with _get_db() as db:
        result = checkpoints_mod.rollback_last_decision(db, feature_slug, task_id, repo)
        if not result.success:
            _fail(result)
        click.echo(result.message)


@task_group.command("verify")
@click.argument("feature_slug")
@click.argument("task_id")
@click.argument("criterion_ids", nargs=-1, required=True)
@click.option("--repo", default="default", help="Repository name")
@click.option("--unverify", is_flag=True, help="Mark the criteria as not verified")
def task_verify(feature_slug, task_id, criterion_ids, repo, unverify):
    """Mark acceptance criteria of a task as verified."""
    updates = [
        {"task_id": task_id, "criterion_id": cid, "verified": not unverify}
        for cid in criterion_ids
    ]
    with _get_db() as db:
        result = workflow_mod.batch_update_acceptance_criteria(db, feature_slug, updates, repo)
        if not result.success:
            _fail(result)
        for outcome in result.value:
            if not outcome["success"]:
                click.echo(f"  ! {outcome['error']}", err=True)
        click.echo(result.message)
        if not all(outcome["success"] for outcome in result.value):
            sys.exit(1)


@task_group.command("depend")
@click.argument("feature_slug")
@click.argument("task_id")
@click.argument("depends_on_id")
@click.option("--repo", default="default", help="Repository name")
@click.option("--remove", is_flag=True, help="Remove the dependency instead")
def task_depend(feature_slug, task_id, depends_on_id, repo, remove):
    """Add or remove a dependency between tasks."""
    with _get_db() as db:
        try:
            if remove:
                task = features_mod.remove_dependency(db, feature_slug, task_id, depends_on_id, repo)
            else:
                task = features_mod.add_dependency(db, feature_slug, task_id, depends_on_id, repo)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"{task.task_id} depends on: {', '.join(task.dependencies) or '-'}")


@task_group.command("next")
@click.argument("feature_slug")
@click.option("--repo", default="default", help="Repository name")
@click.option("--status", "statuses", multiple=True, help="Statuses to pick from")
def task_next(feature_slug, repo, statuses):
    """Show the next eligible task."""
    with _get_db() as db:
        result = workflow_mod.get_next_task(db, feature_slug, list(statuses) or None, repo)
        if not result.success:
            _fail(result)
        if result.value is None:
            click.echo(result.message)
            return
        click.echo(f"Next task: {result.value.task_id} ({result.value.status})")


# ── Planning ──────────────────────────────────────────────────────────────────


@main.command("plan")
@click.argument("feature_slug")
@click.option("--repo", default="default", help="Repository name")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def plan(feature_slug, repo, json_output):
    """Show the dependency-ordered execution plan for a feature."""
    with _get_db() as db:
        result = workflow_mod.get_execution_plan(db, feature_slug, repo)
        if json_output:
            click.echo(json.dumps(result_dict(result), indent=2))
            if not result.success:
                sys.exit(1)
            return
        if result.value is None:
            _fail(result)

        execution = result.value
        for warning in execution.warnings:
            click.echo(f"  ! {warning}")
        if execution.has_cycle:
            sys.exit(1)
        click.echo(f"Order: {' -> '.join(execution.optimal_order)}")
        for name, phase in execution.phases_by_name().items():
            click.echo(f"  {name}: {', '.join(phase)}")
        click.echo(f"Critical path: {' -> '.join(execution.critical_path)}")
        click.echo(f"Total dependencies: {execution.total_deps}")


@main.command("summary")
@click.argument("feature_slug")
@click.option("--repo", default="default", help="Repository name")
def summary(feature_slug, repo):
    """Show review and completion summary for a feature."""
    with _get_db() as db:
        result = workflow_mod.review_summary(db, feature_slug, repo)
        if not result.success:
            _fail(result)
        s = result.value
        click.echo(f"Feature: {s.repo_name}/{s.feature_slug}")
        click.echo(f"  Tasks: {s.total_tasks} ({s.completion_pct}% done)")
        for status, count in s.counts_by_status.items():
            click.echo(f"    {status}: {count}")
        for role, task_ids in s.awaiting_role.items():
            click.echo(f"  Awaiting {role}: {', '.join(task_ids)}")
        click.echo(f"  Rejections: {s.rejections}")


# ── Checkpoint Commands ───────────────────────────────────────────────────────


@main.group("checkpoint")
def checkpoint_group():
    """Save and restore task status checkpoints."""
    pass


@checkpoint_group.command("save")
@click.argument("feature_slug")
@click.argument("description")
@click.option("--repo", default="default", help="Repository name")
def checkpoint_save(feature_slug, description, repo):
    """Snapshot the status of every task in a feature."""
    with _get_db() as db:
        result = checkpoints_mod.save_checkpoint(db, feature_slug, description, repo)
        if not result.success:
            _fail(result)
        click.echo(f"Saved checkpoint {result.value.id}: {description}")


@checkpoint_group.command("list")
@click.argument("feature_slug")
@click.option("--repo", default="default", help="Repository name")
def checkpoint_list(feature_slug, repo):
    """List checkpoints of a feature."""
    with _get_db() as db:
        checkpoints = checkpoints_mod.list_checkpoints(db, feature_slug, repo)
        if not checkpoints:
            click.echo("No checkpoints found.")
            return
        for cp in checkpoints:
            created = cp.created_at.isoformat() if cp.created_at else ""
            click.echo(f"  {cp.id}: {cp.description} ({len(cp.snapshot)} tasks) {created}")


@checkpoint_group.command("restore")
@click.argument("feature_slug")
@click.argument("checkpoint_id", type=int)
@click.option("--repo", default="default", help="Repository name")
def checkpoint_restore(feature_slug, checkpoint_id, repo):
    """Restore task statuses from a checkpoint."""
    with _get_db() as db:
        result = checkpoints_mod.restore_checkpoint(db, feature_slug, checkpoint_id, repo)
        if not result.success:
            _fail(result)
        click.echo(result.message)
        if result.value.skipped_tasks:
            click.echo(f"  Skipped (deleted): {', '.join(result.value.skipped_tasks)}")


# ── Queue Commands ────────────────────────────────────────────────────────────


@main.group("queue")
def queue_group():
    """Manage the development queue."""
    pass


@queue_group.command("add")
@click.argument("repo_name")
@click.argument("feature_slug")
@click.option("--cli-tool", default=None, help="CLI tool to run (defaults to the setting)")
def queue_add(repo_name, feature_slug, cli_tool):
    """Enqueue a feature for development."""
    with _get_db() as db:
        tool = cli_tool or settings_mod.get_queue_settings(db).cli_tool
        item = queue_mod.enqueue_item(db, repo_name, feature_slug, tool)
        click.echo(f"Enqueued item {item.id}: {repo_name}/{feature_slug} ({tool})")


@queue_group.command("list")
@click.option("--status", type=click.Choice(queue_mod.STATUSES), default=None)
@click.option("--repo", default=None, help="Filter by repository")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def queue_list(status, repo, json_output):
    """List queue items."""
    with _get_db() as db:
        items = queue_mod.list_items(db, repo_name=repo, status=status)

        if json_output:
            click.echo(json.dumps(to_data(items), indent=2))
            return

        if not items:
            click.echo("No queue items.")
            return

        for item in items:
            retry = f" retry={item.retry_count}" if item.retry_count else ""
            error = f" error={item.error_message[:80]}" if item.error_message else ""
            click.echo(f"  #{item.id} {item.repo_name}/{item.feature_slug} {item.status}{retry}{error}")


@queue_group.command("stats")
def queue_stats():
    """Show counts by status."""
    with _get_db() as db:
        for status, count in queue_mod.queue_stats(db).items():
            click.echo(f"  {status}: {count}")


@queue_group.command("retry")
@click.argument("item_id", type=int)
def queue_retry(item_id):
    """Re-enqueue a failed item."""
    with _get_db() as db:
        result = queue_mod.reenqueue_item(db, item_id)
        if not result.success:
            _fail(result)
        click.echo(f"Re-enqueued item {item_id} (retry {result.value.retry_count})")


@queue_group.command("cancel")
@click.argument("item_id", type=int)
def queue_cancel(item_id):
    """Cancel a pending item."""
    with _get_db() as db:
        result = queue_mod.cancel_item(db, item_id)
        if not result.success:
            _fail(result)
        click.echo(f"Cancelled item {item_id}")


@queue_group.command("prune")
@click.option("--days", type=int, default=None, help="Retention in days (default from config)")
def queue_prune(days):
    """Delete finished items older than the retention window."""
    config = get_config()
    with _get_db() as db:
        removed = queue_mod.prune_items(db, days if days is not None else config.queue_retention_days)
        click.echo(f"Pruned {removed} items")


@queue_group.command("stale")
@click.option("--minutes", type=int, default=60, show_default=True,
              help="Report running items claimed longer ago than this")
def queue_stale(minutes):
    """List running items that may belong to a dead worker."""
    with _get_db() as db:
        items = queue_mod.list_stale_items(db, minutes)
        if not items:
            click.echo("No stale items.")
            return
        for item in items:
            started = item.started_at.isoformat() if item.started_at else "-"
            click.echo(f"  #{item.id} {item.repo_name}/{item.feature_slug} "
                       f"worker={item.worker_handle} started={started}")


@queue_group.command("release")
@click.argument("item_id", type=int)
@click.confirmation_option(prompt="Release a running item back to pending?")
def queue_release(item_id):
    """Force a stuck running item back to pending."""
    with _get_db() as db:
        result = queue_mod.force_release_item(db, item_id)
        if not result.success:
            _fail(result)
        click.echo(f"Released item {item_id}")


# ── Settings Commands ─────────────────────────────────────────────────────────


@main.group("settings")
def settings_group():
    """Show and change queue settings."""
    pass


@settings_group.command("show")
def settings_show():
    """Show all settings."""
    with _get_db() as db:
        for key, value in settings_mod.get_all_settings(db).items():
            click.echo(f"  {key} = {value}")


@settings_group.command("set")
@click.argument("key", type=click.Choice(sorted(
    ["cron_interval_seconds", "base_repos_folder", "cli_tool", "worker_enabled"]
)))
@click.argument("value")
def settings_set(key, value):
    """Change a queue setting."""
    with _get_db() as db:
        try:
            if key == "cron_interval_seconds":
                settings_mod.update_queue_settings(db, cron_interval_seconds=int(value))
            elif key == "worker_enabled":
                settings_mod.update_queue_settings(
                    db, worker_enabled=value.lower() in ("true", "1", "yes", "on")
                )
            else:
                settings_mod.update_queue_settings(db, **{key: value})
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"{key} = {settings_mod.get_setting(db, key)}")


# ── Worker Commands ───────────────────────────────────────────────────────────


@main.group("worker")
def worker_group():
    """Background queue processing."""
    pass


@worker_group.command("run")
@click.option("--once", is_flag=True, help="Process a single item and exit")
def worker_run(once):
    """Run the queue worker and cron scanner until interrupted."""
    import time

    from feature_conductor.core.worker import CronScanner, QueueWorker

    config = get_config()
    worker = QueueWorker(
        config.db_path,
        poll_interval=config.worker_poll_interval,
        worker_handle=config.worker_handle,
        timeout=config.worker_timeout,
    )
    if once:
        item = worker.process_next()
        if item is None:
            click.echo("No pending items.")
        else:
            click.echo(f"Item {item.id}: {item.status}")
        return

    scanner = CronScanner(config.db_path)
    scanner.start()
    worker.start()
    click.echo(f"Worker {worker.worker_handle} running. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        worker.stop()
        scanner.stop()


@worker_group.command("scan")
def worker_scan():
    """Enqueue every feature that is ready for development."""
    from feature_conductor.core.worker import CronScanner

    items = CronScanner(get_config().db_path).scan()
    click.echo(f"Enqueued {len(items)} features")
    for item in items:
        click.echo(f"  #{item.id} {item.repo_name}/{item.feature_slug}")


# ── Web / MCP ─────────────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to bind to")
def ui(host, port):
    """Start the JSON API server."""
    from feature_conductor.web.app import run_server

    click.echo(f"Starting API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from feature_conductor.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
