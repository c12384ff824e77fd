"""Workflow operations over stored features: reviews, transitions and summaries."""

import logging
import sqlite3
from dataclasses import dataclass, field

from feature_conductor.core.errors import ErrorKind, Result
from feature_conductor.core.features import feature_lock, load_task_set, save_task_set
from feature_conductor.core.planner import plan_execution
from feature_conductor.core.status_graph import Decision, Status
from feature_conductor.core.validator import WorkflowValidator
from feature_conductor.db.models import TaskSet

logger = logging.getLogger(__name__)

_default_validator = WorkflowValidator()


@dataclass
class ReviewSummary:
    repo_name: str
    feature_slug: str
    total_tasks: int
    counts_by_status: dict[str, int]
    completion_pct: float
    approvals_by_role: dict[str, int]
    rejections: int
    awaiting_role: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class CompletionReport:
    all_complete: bool
    total_tasks: int
    incomplete: list[str]


def _not_found(feature_slug: str, repo_name: str, task_id: str | None = None) -> Result:
    if task_id:
        return Result.fail(
            ErrorKind.NOT_FOUND, f"Task not found: {task_id} in {repo_name}/{feature_slug}"
        )
    return Result.fail(ErrorKind.NOT_FOUND, f"Feature not found: {repo_name}/{feature_slug}")


def is_ready_for_development(task_set: TaskSet) -> bool:
    """True when the feature has tasks and every one passed stakeholder review."""
    return bool(task_set.tasks) and all(
        t.status == Status.READY_FOR_DEVELOPMENT for t in task_set.tasks
    )


# ── Mutations ─────────────────────────────────────────────────────────────────


def review_task(
    db: sqlite3.Connection,
    feature_slug: str,
    task_id: str,
    role: str,
    decision: str,
    notes: str = "",
    details: dict | None = None,
    repo_name: str = "default",
    validator: WorkflowValidator | None = None,
) -> Result:
    """Record a stakeholder review decision and persist it."""
    validator = validator or _default_validator
    with feature_lock(repo_name, feature_slug):
        task_set = load_task_set(db, feature_slug, repo_name)
        if not task_set:
            return _not_found(feature_slug, repo_name)
        task = task_set.task(task_id)
        if not task:
            return _not_found(feature_slug, repo_name, task_id)

        structure = validator.validate_task_structure(task)
        if not structure.valid:
            return Result.fail(
                structure.error_kind,
                f"Invalid task structure: {'; '.join(structure.errors)}",
                value=structure,
            )
        result = validator.apply_review(task, role, decision, notes, details)
        if result.success:
            save_task_set(db, task_set)
            logger.info("Review %s by %s on %s/%s: %s", decision, role, feature_slug,
                        task_id, result.message)
        return result


def transition_task(
    db: sqlite3.Connection,
    feature_slug: str,
    task_id: str,
    from_status: str,
    to_status: str,
    actor: str,
    notes: str = "",
    metadata: dict | None = None,
    repo_name: str = "default",
    validator: WorkflowValidator | None = None,
) -> Result:
    """Apply a development transition, guarded by the caller's expected status."""
    validator = validator or _default_validator
    with feature_lock(repo_name, feature_slug):
        task_set = load_task_set(db, feature_slug, repo_name)
        if not task_set:
            return _not_found(feature_slug, repo_name)
        task = task_set.task(task_id)
        if not task:
            return _not_found(feature_slug, repo_name, task_id)

        result = validator.apply_dev_transition(
            task, from_status, to_status, actor, notes, metadata
        )
        if result.success:
            save_task_set(db, task_set)
            logger.info("Transition by %s on %s/%s: %s", actor, feature_slug, task_id,
                        result.message)
        return result


def batch_transition_tasks(
    db: sqlite3.Connection,
    feature_slug: str,
    changes: list[dict],
    actor: str,
    repo_name: str = "default",
    validator: WorkflowValidator | None = None,
) -> Result:
    """Apply several transitions and save them together.

    Each change is ``{"task_id", "to_status"}`` with optional ``from_status``
    (defaults to the task's current status) and ``notes``. Failures are
    reported per task and do not block the others.
    """
    validator = validator or _default_validator
    with feature_lock(repo_name, feature_slug):
        task_set = load_task_set(db, feature_slug, repo_name)
        if not task_set:
            return _not_found(feature_slug, repo_name)

        outcomes = []
        applied = 0
        for change in changes:
            task_id = change.get("task_id")
            task = task_set.task(task_id) if task_id else None
            if not task:
                outcomes.append({
                    "task_id": task_id,
                    "success": False,
                    "error_kind": ErrorKind.NOT_FOUND,
                    "error": f"Task not found: {task_id}",
                })
                continue
            from_status = change.get("from_status") or task.status
            result = validator.apply_dev_transition(
                task, from_status, change.get("to_status", ""), actor, change.get("notes", "")
            )
            outcome = {"task_id": task_id, "success": result.success}
            if result.success:
                applied += 1
                outcome["from_status"] = result.value.from_status
                outcome["to_status"] = result.value.to_status
            else:
                outcome["error_kind"] = result.error_kind
                outcome["error"] = result.error
            outcomes.append(outcome)

        if applied:
            save_task_set(db, task_set)
        logger.info("Batch transition on %s: %d/%d applied", feature_slug, applied, len(changes))
        return Result.ok(outcomes, message=f"{applied}/{len(changes)} transitions applied")


def update_acceptance_criteria(
    db: sqlite3.Connection,
    feature_slug: str,
    task_id: str,
    criterion_id: str,
    verified: bool,
    repo_name: str = "default",
) -> Result:
    """Mark one acceptance criterion as verified or unverified."""
    result = batch_update_acceptance_criteria(
        db,
        feature_slug,
        [{"task_id": task_id, "criterion_id": criterion_id, "verified": verified}],
        repo_name,
    )
    if not result.success:
        return result
    outcome = result.value[0]
    if not outcome["success"]:
        return Result.fail(outcome["error_kind"], outcome["error"])
    state = "verified" if verified else "unverified"
    return Result.ok(outcome, message=f"Acceptance criterion {criterion_id} marked as {state}")


def batch_update_acceptance_criteria(
    db: sqlite3.Connection,
    feature_slug: str,
    updates: list[dict],
    repo_name: str = "default",
) -> Result:
    """Set the verified flag on several criteria and save them together.

    Each update is ``{"task_id", "criterion_id", "verified"}``. Unknown tasks
    or criteria are reported per update and do not block the others.
    """
    with feature_lock(repo_name, feature_slug):
        task_set = load_task_set(db, feature_slug, repo_name)
        if not task_set:
            return _not_found(feature_slug, repo_name)

        outcomes = []
        applied = 0
        for update in updates:
            task_id = update.get("task_id")
            criterion_id = update.get("criterion_id")
            verified = bool(update.get("verified", True))
            outcome = {
                "task_id": task_id,
                "criterion_id": criterion_id,
                "verified": verified,
                "success": False,
            }
            task = task_set.task(task_id) if task_id else None
            criterion = None
            if task:
                criterion = next(
                    (c for c in task.acceptance_criteria if c.id == criterion_id), None
                )
            if not task:
                outcome["error_kind"] = ErrorKind.NOT_FOUND
                outcome["error"] = f"Task not found: {task_id}"
            elif not criterion:
                outcome["error_kind"] = ErrorKind.NOT_FOUND
                outcome["error"] = (
                    f"Acceptance criterion not found: {criterion_id} in task {task_id}"
                )
            else:
                criterion.verified = verified
                outcome["success"] = True
                applied += 1
            outcomes.append(outcome)

        if applied:
            save_task_set(db, task_set)
        logger.info("Acceptance criteria on %s: %d/%d updated", feature_slug, applied,
                    len(updates))
        return Result.ok(outcomes, message=f"{applied}/{len(updates)} criteria updated")


# ── Queries ───────────────────────────────────────────────────────────────────


def validate_workflow(
    db: sqlite3.Connection,
    feature_slug: str,
    task_id: str,
    role: str,
    decision: str = Decision.APPROVE,
    repo_name: str = "default",
    validator: WorkflowValidator | None = None,
) -> Result:
    """Dry-run a review decision without changing anything."""
    validator = validator or _default_validator
    task_set = load_task_set(db, feature_slug, repo_name)
    if not task_set:
        return _not_found(feature_slug, repo_name)
    task = task_set.task(task_id)
    if not task:
        return _not_found(feature_slug, repo_name, task_id)

    check = validator.validate_review(task.status, role, decision)
    if not check.valid:
        return Result.fail(check.error_kind, "; ".join(check.errors), value=check)
    return Result.ok(check)


def get_task_status(
    db: sqlite3.Connection,
    feature_slug: str,
    task_id: str,
    repo_name: str = "default",
    validator: WorkflowValidator | None = None,
) -> Result:
    validator = validator or _default_validator
    task_set = load_task_set(db, feature_slug, repo_name)
    if not task_set:
        return _not_found(feature_slug, repo_name)
    task = task_set.task(task_id)
    if not task:
        return _not_found(feature_slug, repo_name, task_id)
    return Result.ok({
        "task": task,
        "review_progress": validator.review_progress(task),
        "next_step": validator.next_step(task),
        "structure": validator.validate_task_structure(task),
    })


def review_summary(
    db: sqlite3.Connection,
    feature_slug: str,
    repo_name: str = "default",
    validator: WorkflowValidator | None = None,
) -> Result:
    """Counts by status, approvals per role and who is holding up review."""
    validator = validator or _default_validator
    task_set = load_task_set(db, feature_slug, repo_name)
    if not task_set:
        return _not_found(feature_slug, repo_name)

    counts: dict[str, int] = {}
    approvals = {role: 0 for role in validator.graph.review_roles}
    awaiting: dict[str, list[str]] = {}
    rejections = 0
    for task in task_set.tasks:
        counts[task.status] = counts.get(task.status, 0) + 1
        for role in validator.review_progress(task).completed_roles:
            approvals[role] += 1
        role = validator.graph.role_for_status(task.status)
        if role:
            awaiting.setdefault(role, []).append(task.task_id)
        rejections += sum(
            1 for t in task.transitions if t.metadata.get("decision") == Decision.REJECT
        )

    total = len(task_set.tasks)
    done = counts.get(validator.graph.done_status, 0)
    return Result.ok(ReviewSummary(
        repo_name=repo_name,
        feature_slug=feature_slug,
        total_tasks=total,
        counts_by_status=counts,
        completion_pct=round(done / total * 100, 1) if total else 0.0,
        approvals_by_role=approvals,
        rejections=rejections,
        awaiting_role=awaiting,
    ))


def get_tasks_by_status(
    db: sqlite3.Connection, feature_slug: str, status: str, repo_name: str = "default"
) -> Result:
    task_set = load_task_set(db, feature_slug, repo_name)
    if not task_set:
        return _not_found(feature_slug, repo_name)
    return Result.ok([t for t in task_set.tasks if t.status == status])


def get_next_task(
    db: sqlite3.Connection,
    feature_slug: str,
    statuses: list[str] | None = None,
    repo_name: str = "default",
) -> Result:
    """Pick the lowest-ordered task in ``statuses`` whose dependencies are done.

    Succeeds with ``None`` when nothing is eligible.
    """
    statuses = statuses or [Status.TODO, Status.NEEDS_CHANGES]
    task_set = load_task_set(db, feature_slug, repo_name)
    if not task_set:
        return _not_found(feature_slug, repo_name)

    done = {t.task_id for t in task_set.tasks if t.status == Status.DONE}
    candidates = [
        t for t in task_set.tasks
        if t.status in statuses and all(dep in done for dep in t.dependencies)
    ]
    if not candidates:
        return Result.ok(None, message=f"No eligible tasks in {', '.join(statuses)}")
    return Result.ok(min(candidates, key=lambda t: t.order_of_execution))


def verify_all_tasks_complete(
    db: sqlite3.Connection, feature_slug: str, repo_name: str = "default"
) -> Result:
    task_set = load_task_set(db, feature_slug, repo_name)
    if not task_set:
        return _not_found(feature_slug, repo_name)
    incomplete = [t.task_id for t in task_set.tasks if t.status != Status.DONE]
    return Result.ok(CompletionReport(
        all_complete=not incomplete,
        total_tasks=len(task_set.tasks),
        incomplete=incomplete,
    ))


def get_execution_plan(
    db: sqlite3.Connection, feature_slug: str, repo_name: str = "default"
) -> Result:
    """Plan a stored feature. A cycle fails the result but still returns the plan."""
    task_set = load_task_set(db, feature_slug, repo_name)
    if not task_set:
        return _not_found(feature_slug, repo_name)
    plan = plan_execution(task_set.tasks)
    if plan.has_cycle:
        logger.warning("Dependency cycle in %s/%s", repo_name, feature_slug)
        return Result.fail(ErrorKind.CYCLIC_DEPENDENCY, plan.warnings[0], value=plan)
    return Result.ok(plan)
