"""Status pipeline for feature tasks, expressed as immutable rule tables."""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType


class Status:
    PENDING_PRODUCT_DIRECTOR = "PendingProductDirector"
    PENDING_ARCHITECT = "PendingArchitect"
    PENDING_UI_UX_EXPERT = "PendingUiUxExpert"
    PENDING_SECURITY_OFFICER = "PendingSecurityOfficer"
    READY_FOR_DEVELOPMENT = "ReadyForDevelopment"
    TODO = "ToDo"
    IN_PROGRESS = "InProgress"
    IN_REVIEW = "InReview"
    IN_QA = "InQA"
    DONE = "Done"
    NEEDS_REFINEMENT = "NeedsRefinement"
    NEEDS_CHANGES = "NeedsChanges"


class Role:
    PRODUCT_DIRECTOR = "productDirector"
    ARCHITECT = "architect"
    UI_UX_EXPERT = "uiUxExpert"
    SECURITY_OFFICER = "securityOfficer"


class Actor:
    SYSTEM = "system"
    DEVELOPER = "developer"
    CODE_REVIEWER = "codeReviewer"
    QA = "qa"


class Decision:
    APPROVE = "approve"
    REJECT = "reject"

    ALL = frozenset({APPROVE, REJECT})


@dataclass(frozen=True)
class ReviewRule:
    expected_role: str
    on_approve: str
    on_reject: str


@dataclass(frozen=True)
class DevRule:
    allowed_actors: frozenset[str]
    allowed_next_statuses: frozenset[str]


EMPTY_RULE = DevRule(frozenset(), frozenset())


@dataclass(frozen=True)
class StatusGraph:
    """Directed graph of legal status changes.

    ``review_rules`` covers the stakeholder review stages, keyed by the status
    a task sits in while waiting for that role. ``dev_rules`` covers every
    status and lists who may move a task and where to.
    """

    review_rules: Mapping[str, ReviewRule]
    dev_rules: Mapping[str, DevRule]
    review_roles: tuple[str, ...]
    initial_status: str
    refinement_status: str
    changes_status: str
    done_status: str

    def review_rule(self, status: str) -> ReviewRule | None:
        return self.review_rules.get(status)

    def dev_rule(self, status: str) -> DevRule:
        return self.dev_rules.get(status, EMPTY_RULE)

    def allowed_dev_targets(self, status: str) -> frozenset[str]:
        return self.dev_rule(status).allowed_next_statuses

    def can_actor_act(self, status: str, actor: str) -> bool:
        return actor in self.dev_rule(status).allowed_actors

    def is_terminal(self, status: str) -> bool:
        return not self.dev_rule(status).allowed_next_statuses

    def is_known(self, status: str) -> bool:
        return status in self.dev_rules

    def role_for_status(self, status: str) -> str | None:
        rule = self.review_rule(status)
        return rule.expected_role if rule else None

    def statuses(self) -> list[str]:
        return list(self.dev_rules)


def build_pipeline(
    review_stages: Sequence[tuple[str, str]],
    ready_status: str = Status.READY_FOR_DEVELOPMENT,
    refinement_status: str = Status.NEEDS_REFINEMENT,
    dev_rules: Mapping[str, DevRule] | None = None,
    changes_status: str = Status.NEEDS_CHANGES,
    done_status: str = Status.DONE,
) -> StatusGraph:
    """Build a graph from ordered ``(role, pending_status)`` review stages.

    Each stage approves into the next stage's pending status (the last one
    into ``ready_status``) and rejects into ``refinement_status``, which the
    system sends back to the first stage.
    """
    if not review_stages:
        raise ValueError("At least one review stage is required")

    review_rules: dict[str, ReviewRule] = {}
    rules: dict[str, DevRule] = {}
    for i, (role, pending) in enumerate(review_stages):
        approve_to = review_stages[i + 1][1] if i + 1 < len(review_stages) else ready_status
        review_rules[pending] = ReviewRule(role, approve_to, refinement_status)
        rules[pending] = DevRule(
            frozenset({role, Actor.SYSTEM}),
            frozenset({approve_to, refinement_status}),
        )

    first_stage = review_stages[0][1]
    rules[refinement_status] = DevRule(frozenset({Actor.SYSTEM}), frozenset({first_stage}))
    rules.update(dev_rules or {})

    return StatusGraph(
        review_rules=MappingProxyType(review_rules),
        dev_rules=MappingProxyType(rules),
        review_roles=tuple(role for role, _ in review_stages),
        initial_status=first_stage,
        refinement_status=refinement_status,
        changes_status=changes_status,
        done_status=done_status,
    )


DEVELOPMENT_RULES = MappingProxyType({
    Status.READY_FOR_DEVELOPMENT: DevRule(
        frozenset({Actor.SYSTEM}), frozenset({Status.TODO})
    ),
    Status.TODO: DevRule(
        frozenset({Actor.SYSTEM, Actor.DEVELOPER}), frozenset({Status.IN_PROGRESS})
    ),
    Status.IN_PROGRESS: DevRule(
        frozenset({Actor.DEVELOPER}), frozenset({Status.IN_REVIEW})
    ),
    Status.IN_REVIEW: DevRule(
        frozenset({Actor.CODE_REVIEWER}), frozenset({Status.IN_QA, Status.NEEDS_CHANGES})
    ),
    Status.IN_QA: DevRule(
        frozenset({Actor.QA}), frozenset({Status.DONE, Status.NEEDS_CHANGES})
    ),
    Status.NEEDS_CHANGES: DevRule(
        frozenset({Actor.DEVELOPER}), frozenset({Status.IN_PROGRESS})
    ),
    Status.DONE: EMPTY_RULE,
})

REVIEW_STAGES = (
    (Role.PRODUCT_DIRECTOR, Status.PENDING_PRODUCT_DIRECTOR),
    (Role.ARCHITECT, Status.PENDING_ARCHITECT),
    (Role.UI_UX_EXPERT, Status.PENDING_UI_UX_EXPERT),
    (Role.SECURITY_OFFICER, Status.PENDING_SECURITY_OFFICER),
)

DEFAULT_GRAPH = build_pipeline(REVIEW_STAGES, dev_rules=DEVELOPMENT_RULES)
