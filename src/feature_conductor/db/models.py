"""Data models for the feature conductor."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class Transition:
    """One recorded status change. Never edited once appended to a task."""

    from_status: str
    to_status: str
    actor: str
    timestamp: str
    approver: str | None = None
    notes: str = ""
    metadata: dict = field(default_factory=dict)


@dataclass
class ReviewEntry:
    approved: bool
    notes: str = ""
    details: dict = field(default_factory=dict)


@dataclass
class AcceptanceCriterion:
    id: str
    criterion: str
    priority: str = "Must Have"
    verified: bool = False


@dataclass
class Task:
    task_id: str
    title: str
    status: str
    description: str = ""
    initial_status: str | None = None
    dependencies: list[str] = field(default_factory=list)
    transitions: list[Transition] = field(default_factory=list)
    stakeholder_review: dict[str, ReviewEntry] = field(default_factory=dict)
    acceptance_criteria: list[AcceptanceCriterion] = field(default_factory=list)
    order_of_execution: int = 0
    estimated_hours: float | None = None
    assigned_to: str | None = None
    tags: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.initial_status is None:
            self.initial_status = self.status


@dataclass
class TaskSet:
    """All tasks of one feature, loaded and saved as a unit."""

    repo_name: str
    feature_slug: str
    feature_name: str
    description: str = ""
    tasks: list[Task] = field(default_factory=list)
    created_at: datetime | None = None
    last_modified: datetime | None = None

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None


@dataclass(frozen=True)
class Checkpoint:
    id: int
    repo_name: str
    feature_slug: str
    description: str
    snapshot: dict[str, str]
    created_at: datetime | None = None


@dataclass
class QueueItem:
    id: int
    repo_name: str
    feature_slug: str
    status: str = "pending"
    cli_tool: str = "claude"
    worker_handle: str | None = None
    retry_count: int = 0
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
