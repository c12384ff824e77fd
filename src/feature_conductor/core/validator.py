"""Validation and application of review decisions and development transitions."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from feature_conductor.core.errors import ErrorKind, Result
from feature_conductor.core.status_graph import DEFAULT_GRAPH, Decision, StatusGraph
from feature_conductor.db.models import ReviewEntry, Task, Transition


@dataclass
class ValidationResult:
    valid: bool
    current_status: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    expected_role: str | None = None
    allowed_next_statuses: list[str] = field(default_factory=list)
    error_kind: str | None = None


@dataclass
class ReviewProgress:
    completed_roles: list[str]
    pending_roles: list[str]
    current_role: str | None


@dataclass
class NextStep:
    task_id: str
    status: str
    role: str | None
    actors: list[str]
    on_success: str | None
    on_failure: str | None
    decisions: list[str]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WorkflowValidator:
    """Checks and applies status changes against an injected :class:`StatusGraph`."""

    def __init__(self, graph: StatusGraph = DEFAULT_GRAPH):
        self.graph = graph

    # ── Stakeholder review ───────────────────────────────────────────────────

    def validate_review(self, status: str, role: str, decision: str) -> ValidationResult:
        """Check whether ``role`` may record ``decision`` on a task in ``status``."""
        result = ValidationResult(
            valid=True,
            current_status=status,
            allowed_next_statuses=sorted(self.graph.allowed_dev_targets(status)),
        )
        rule = self.graph.review_rule(status)
        if rule is None:
            result.errors.append(f"Task is not in a stakeholder review stage (status: {status})")
        else:
            result.expected_role = rule.expected_role
            if role != rule.expected_role:
                result.errors.append(
                    f"Wrong reviewer: {status} expects {rule.expected_role}, got {role}"
                )

        if decision not in Decision.ALL:
            result.errors.append(
                f"Unknown decision '{decision}'. Use one of: {', '.join(sorted(Decision.ALL))}"
            )
        elif decision == Decision.REJECT and rule is not None:
            result.warnings.append(
                f"Rejecting sends the task to {rule.on_reject} and restarts review"
            )

        if result.errors:
            result.valid = False
            result.error_kind = ErrorKind.INVALID_TRANSITION
        return result

    def apply_review(
        self,
        task: Task,
        role: str,
        decision: str,
        notes: str = "",
        details: dict | None = None,
    ) -> Result:
        """Record a review decision on ``task`` in place. Returns the new transition."""
        check = self.validate_review(task.status, role, decision)
        if not check.valid:
            return Result.fail(check.error_kind, "; ".join(check.errors), value=check)

        rule = self.graph.review_rule(task.status)
        approved = decision == Decision.APPROVE
        transition = Transition(
            from_status=task.status,
            to_status=rule.on_approve if approved else rule.on_reject,
            actor=role,
            approver=role,
            timestamp=now_iso(),
            notes=notes,
            metadata={"decision": decision},
        )
        task.transitions.append(transition)
        task.status = transition.to_status
        task.stakeholder_review[role] = ReviewEntry(
            approved=approved, notes=notes, details=dict(details or {})
        )
        return Result.ok(
            transition,
            message=f"{task.task_id}: {transition.from_status} -> {transition.to_status}",
        )

    def review_progress(self, task: Task) -> ReviewProgress:
        completed = []
        pending = []
        for role in self.graph.review_roles:
            entry = task.stakeholder_review.get(role)
            if entry is not None and entry.approved:
                completed.append(role)
            else:
                pending.append(role)
        return ReviewProgress(
            completed_roles=completed,
            pending_roles=pending,
            current_role=self.graph.role_for_status(task.status),
        )

    # ── Development transitions ──────────────────────────────────────────────

    def validate_dev_transition(
        self, from_status: str, to_status: str, actor: str
    ) -> ValidationResult:
        rule = self.graph.dev_rule(from_status)
        result = ValidationResult(
            valid=True,
            current_status=from_status,
            expected_role=self.graph.role_for_status(from_status),
            allowed_next_statuses=sorted(rule.allowed_next_statuses),
        )
        if not self.graph.is_known(from_status):
            result.errors.append(f"Unknown status: {from_status}")
        elif to_status not in rule.allowed_next_statuses:
            allowed = ", ".join(result.allowed_next_statuses) or "none"
            result.errors.append(
                f"Cannot move from {from_status} to {to_status}. Allowed: {allowed}"
            )
        if self.graph.is_known(from_status) and actor not in rule.allowed_actors:
            result.errors.append(f"{actor} cannot move tasks out of {from_status}")

        if to_status == self.graph.changes_status and not result.errors:
            result.warnings.append("Task is being sent back for changes")

        if result.errors:
            result.valid = False
            result.error_kind = ErrorKind.INVALID_TRANSITION
        return result

    def apply_dev_transition(
        self,
        task: Task,
        from_status: str,
        to_status: str,
        actor: str,
        notes: str = "",
        metadata: dict | None = None,
    ) -> Result:
        """Move ``task`` in place, failing if it is no longer in ``from_status``."""
        if task.status != from_status:
            return Result.fail(
                ErrorKind.CONCURRENCY_CONFLICT,
                f"Task {task.task_id} is {task.status}, expected {from_status}",
            )
        check = self.validate_dev_transition(from_status, to_status, actor)
        if not check.valid:
            return Result.fail(check.error_kind, "; ".join(check.errors), value=check)

        transition = Transition(
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            timestamp=now_iso(),
            notes=notes,
            metadata=dict(metadata or {}),
        )
        task.transitions.append(transition)
        task.status = to_status
        return Result.ok(transition, message=f"{task.task_id}: {from_status} -> {to_status}")

    # ── Inspection ───────────────────────────────────────────────────────────

    def validate_task_structure(self, task: Task) -> ValidationResult:
        """Check a task record for missing or inconsistent fields."""
        result = ValidationResult(valid=True, current_status=task.status)
        if not task.task_id:
            result.errors.append("Task id is required")
        if not task.title:
            result.errors.append("Task title is required")
        if not self.graph.is_known(task.status):
            result.errors.append(f"Unknown status: {task.status}")
        if task.task_id and task.task_id in task.dependencies:
            result.errors.append(f"Task {task.task_id} depends on itself")
        if task.estimated_hours is not None and task.estimated_hours < 0:
            result.errors.append("Estimated hours cannot be negative")
        if task.transitions and task.transitions[-1].to_status != task.status:
            result.errors.append(
                f"Status {task.status} does not match last transition "
                f"({task.transitions[-1].to_status})"
            )
        criterion_ids = [c.id for c in task.acceptance_criteria]
        if len(set(criterion_ids)) != len(criterion_ids):
            result.errors.append("Duplicate acceptance criterion ids")
        if not task.description:
            result.warnings.append("Task has no description")

        if result.errors:
            result.valid = False
            result.error_kind = ErrorKind.INVALID_STATE
        return result

    def next_step(self, task: Task) -> NextStep:
        """Describe who acts next on ``task`` and where each outcome leads."""
        review = self.graph.review_rule(task.status)
        if review is not None:
            return NextStep(
                task_id=task.task_id,
                status=task.status,
                role=review.expected_role,
                actors=[review.expected_role],
                on_success=review.on_approve,
                on_failure=review.on_reject,
                decisions=sorted(Decision.ALL),
            )

        rule = self.graph.dev_rule(task.status)
        setbacks = {self.graph.changes_status, self.graph.refinement_status}
        forward = sorted(rule.allowed_next_statuses - setbacks)
        backward = sorted(rule.allowed_next_statuses & setbacks)
        actors = sorted(rule.allowed_actors)
        return NextStep(
            task_id=task.task_id,
            status=task.status,
            role=actors[0] if len(actors) == 1 else None,
            actors=actors,
            on_success=forward[0] if forward else None,
            on_failure=backward[0] if backward else None,
            decisions=sorted(rule.allowed_next_statuses),
        )
