"""Tests for workflow operations on stored features."""

import threading

from feature_conductor.core import features as features_mod
from feature_conductor.core import workflow as workflow_mod
from feature_conductor.core.errors import ErrorKind
from feature_conductor.core.status_graph import Actor, Role, Status
from feature_conductor.db.engine import init_db

REVIEWERS = [Role.PRODUCT_DIRECTOR, Role.ARCHITECT, Role.UI_UX_EXPERT, Role.SECURITY_OFFICER]


def _approve_all(db, task_id, feature_slug="checkout", repo_name="shop"):
    for role in REVIEWERS:
        result = workflow_mod.review_task(db, feature_slug, task_id, role, "approve",
                                          repo_name=repo_name)
        assert result.success, result.error


def _move(db, task_id, from_status, to_status, actor):
    return workflow_mod.transition_task(db, "checkout", task_id, from_status, to_status, actor,
                                        repo_name="shop")


class TestReviewTask:
    def test_review_is_persisted(self, db, feature):
        result = workflow_mod.review_task(db, "checkout", "schema", Role.PRODUCT_DIRECTOR,
                                          "approve", "looks good", repo_name="shop")
        assert result.success
        task = features_mod.get_task(db, "checkout", "schema", "shop")
        assert task.status == Status.PENDING_ARCHITECT
        assert task.transitions[-1].notes == "looks good"
        assert task.stakeholder_review[Role.PRODUCT_DIRECTOR].approved

    def test_wrong_role_is_not_persisted(self, db, feature):
        result = workflow_mod.review_task(db, "checkout", "schema", Role.ARCHITECT, "approve",
                                          repo_name="shop")
        assert not result.success
        assert result.error_kind == ErrorKind.INVALID_TRANSITION
        task = features_mod.get_task(db, "checkout", "schema", "shop")
        assert task.status == Status.PENDING_PRODUCT_DIRECTOR
        assert task.transitions == []

    def test_missing_feature_and_task(self, db, feature):
        result = workflow_mod.review_task(db, "nope", "schema", Role.PRODUCT_DIRECTOR, "approve")
        assert result.error_kind == ErrorKind.NOT_FOUND
        result = workflow_mod.review_task(db, "checkout", "nope", Role.PRODUCT_DIRECTOR,
                                          "approve", repo_name="shop")
        assert result.error_kind == ErrorKind.NOT_FOUND

    def test_reject_then_restart_review(self, db, feature):
        workflow_mod.review_task(db, "checkout", "api", Role.PRODUCT_DIRECTOR, "approve",
                                 repo_name="shop")
        result = workflow_mod.review_task(db, "checkout", "api", Role.ARCHITECT, "reject",
                                          "needs pagination", repo_name="shop")
        assert result.success
        assert result.value.to_status == Status.NEEDS_REFINEMENT
        restart = _move(db, "api", Status.NEEDS_REFINEMENT, Status.PENDING_PRODUCT_DIRECTOR,
                        Actor.SYSTEM)
        assert restart.success


class TestTransitionTask:
    def test_full_lifecycle(self, db, feature):
        _approve_all(db, "docs")
        steps = [
            (Status.READY_FOR_DEVELOPMENT, Status.TODO, Actor.SYSTEM),
            (Status.TODO, Status.IN_PROGRESS, Actor.DEVELOPER),
            (Status.IN_PROGRESS, Status.IN_REVIEW, Actor.DEVELOPER),
            (Status.IN_REVIEW, Status.IN_QA, Actor.CODE_REVIEWER),
            (Status.IN_QA, Status.DONE, Actor.QA),
        ]
        for from_status, to_status, actor in steps:
            result = _move(db, "docs", from_status, to_status, actor)
            assert result.success, result.error
        task = features_mod.get_task(db, "checkout", "docs", "shop")
        assert task.status == Status.DONE
        assert len(task.transitions) == 9
        assert task.transitions[-1].to_status == task.status

    def test_stale_from_status_conflicts(self, db, feature):
        _approve_all(db, "docs")
        result = _move(db, "docs", Status.TODO, Status.IN_PROGRESS, Actor.DEVELOPER)
        assert result.error_kind == ErrorKind.CONCURRENCY_CONFLICT
        task = features_mod.get_task(db, "checkout", "docs", "shop")
        assert task.status == Status.READY_FOR_DEVELOPMENT

    def test_concurrent_moves_from_same_status(self, db_path, db, feature):
        _approve_all(db, "docs")
        _move(db, "docs", Status.READY_FOR_DEVELOPMENT, Status.TODO, Actor.SYSTEM)
        results = []

        def attempt():
            conn = init_db(db_path)
            try:
                results.append(workflow_mod.transition_task(
                    conn, "checkout", "docs", Status.TODO, Status.IN_PROGRESS,
                    Actor.DEVELOPER, repo_name="shop",
                ))
            finally:
                conn.close()

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(r.success for r in results) == [False, True]
        loser = next(r for r in results if not r.success)
        assert loser.error_kind == ErrorKind.CONCURRENCY_CONFLICT
        task = features_mod.get_task(db, "checkout", "docs", "shop")
        assert [t.to_status for t in task.transitions].count(Status.IN_PROGRESS) == 1


class TestBatchTransition:
    def test_partial_success(self, db, feature):
        _approve_all(db, "docs")
        _approve_all(db, "schema")
        result = workflow_mod.batch_transition_tasks(
            db,
            "checkout",
            [
                {"task_id": "docs", "to_status": Status.TODO},
                {"task_id": "schema", "to_status": Status.TODO},
                {"task_id": "ui", "to_status": Status.TODO},
                {"task_id": "ghost", "to_status": Status.TODO},
            ],
            Actor.SYSTEM,
            repo_name="shop",
        )
        assert result.success
        outcomes = {o["task_id"]: o for o in result.value}
        assert outcomes["docs"]["success"] and outcomes["schema"]["success"]
        assert outcomes["ui"]["error_kind"] == ErrorKind.INVALID_TRANSITION
        assert outcomes["ghost"]["error_kind"] == ErrorKind.NOT_FOUND
        assert result.message == "2/4 transitions applied"
        task_set = features_mod.get_feature(db, "checkout", "shop")
        assert task_set.task("docs").status == Status.TODO
        assert task_set.task("ui").status == Status.PENDING_PRODUCT_DIRECTOR


class TestQueries:
    def test_validate_workflow_does_not_mutate(self, db, feature):
        ok = workflow_mod.validate_workflow(db, "checkout", "schema", Role.PRODUCT_DIRECTOR,
                                            repo_name="shop")
        assert ok.success
        bad = workflow_mod.validate_workflow(db, "checkout", "schema", Role.ARCHITECT,
                                             repo_name="shop")
        assert not bad.success
        assert features_mod.get_task(db, "checkout", "schema", "shop").transitions == []

    def test_task_status(self, db, feature):
        workflow_mod.review_task(db, "checkout", "api", Role.PRODUCT_DIRECTOR, "approve",
                                 repo_name="shop")
        result = workflow_mod.get_task_status(db, "checkout", "api", "shop")
        assert result.value["review_progress"].completed_roles == [Role.PRODUCT_DIRECTOR]
        assert result.value["next_step"].role == Role.ARCHITECT

    def test_review_summary(self, db, feature):
        _approve_all(db, "docs")
        workflow_mod.review_task(db, "checkout", "api", Role.PRODUCT_DIRECTOR, "reject",
                                 repo_name="shop")
        summary = workflow_mod.review_summary(db, "checkout", "shop").value
        assert summary.total_tasks == 4
        assert summary.counts_by_status[Status.READY_FOR_DEVELOPMENT] == 1
        assert summary.counts_by_status[Status.NEEDS_REFINEMENT] == 1
        assert summary.approvals_by_role[Role.SECURITY_OFFICER] == 1
        assert summary.rejections == 1
        assert summary.awaiting_role[Role.PRODUCT_DIRECTOR] == ["schema", "ui"]
        assert summary.completion_pct == 0.0

    def test_next_task_respects_dependencies(self, db, feature):
        for task_id in ("schema", "api", "docs"):
            _approve_all(db, task_id)
            _move(db, task_id, Status.READY_FOR_DEVELOPMENT, Status.TODO, Actor.SYSTEM)
        result = workflow_mod.get_next_task(db, "checkout", repo_name="shop")
        assert result.value.task_id == "schema"

        features_mod.update_task(db, "checkout", "docs", "shop", order_of_execution=0)
        result = workflow_mod.get_next_task(db, "checkout", repo_name="shop")
        assert result.value.task_id == "docs"

    def test_next_task_none(self, db, feature):
        result = workflow_mod.get_next_task(db, "checkout", repo_name="shop")
        assert result.success
        assert result.value is None

    def test_tasks_by_status_and_completion(self, db, feature):
        _approve_all(db, "docs")
        ready = workflow_mod.get_tasks_by_status(db, "checkout", Status.READY_FOR_DEVELOPMENT,
                                                 "shop")
        assert [t.task_id for t in ready.value] == ["docs"]
        report = workflow_mod.verify_all_tasks_complete(db, "checkout", "shop").value
        assert not report.all_complete
        assert report.incomplete == ["schema", "api", "ui", "docs"]

    def test_execution_plan(self, db, feature):
        result = workflow_mod.get_execution_plan(db, "checkout", "shop")
        assert result.success
        assert result.value.critical_path == ["schema", "api", "ui"]

    def test_execution_plan_with_cycle(self, db, feature):
        features_mod.add_dependency(db, "checkout", "schema", "ui", "shop")
        result = workflow_mod.get_execution_plan(db, "checkout", "shop")
        assert not result.success
        assert result.error_kind == ErrorKind.CYCLIC_DEPENDENCY
        assert result.value.has_cycle

    def test_ready_for_development(self, db, feature):
        task_set = features_mod.get_feature(db, "checkout", "shop")
        assert not workflow_mod.is_ready_for_development(task_set)
        for task in task_set.tasks:
            _approve_all(db, task.task_id)
        task_set = features_mod.get_feature(db, "checkout", "shop")
        assert workflow_mod.is_ready_for_development(task_set)


class TestAcceptanceCriteria:
    def _feature(self, db):
        features_mod.create_feature(db, "pay", repo_name="shop", tasks=[
            {"task_id": "card", "title": "Card payments", "acceptance_criteria": [
                {"id": "AC-1", "criterion": "Visa accepted"},
                {"id": "AC-2", "criterion": "3DS challenge shown", "priority": "Should Have"},
            ]},
            {"task_id": "refund", "title": "Refunds", "acceptance_criteria": [
                {"id": "AC-1", "criterion": "Full refund"},
            ]},
        ])

    def test_verify_one(self, db):
        self._feature(db)
        result = workflow_mod.update_acceptance_criteria(db, "pay", "card", "AC-2", True, "shop")
        assert result.success
        assert result.message == "Acceptance criterion AC-2 marked as verified"
        criteria = features_mod.get_task(db, "pay", "card", "shop").acceptance_criteria
        assert [c.verified for c in criteria] == [False, True]

        result = workflow_mod.update_acceptance_criteria(db, "pay", "card", "AC-2", False, "shop")
        assert result.success
        criteria = features_mod.get_task(db, "pay", "card", "shop").acceptance_criteria
        assert [c.verified for c in criteria] == [False, False]

    def test_verify_unknown(self, db):
        self._feature(db)
        result = workflow_mod.update_acceptance_criteria(db, "pay", "card", "AC-9", True, "shop")
        assert result.error_kind == ErrorKind.NOT_FOUND
        assert "AC-9" in result.error
        result = workflow_mod.update_acceptance_criteria(db, "pay", "ghost", "AC-1", True, "shop")
        assert result.error_kind == ErrorKind.NOT_FOUND
        result = workflow_mod.update_acceptance_criteria(db, "nope", "card", "AC-1", True, "shop")
        assert result.error_kind == ErrorKind.NOT_FOUND

    def test_batch_partial_success(self, db):
        self._feature(db)
        result = workflow_mod.batch_update_acceptance_criteria(db, "pay", [
            {"task_id": "card", "criterion_id": "AC-1", "verified": True},
            {"task_id": "refund", "criterion_id": "AC-1", "verified": True},
            {"task_id": "refund", "criterion_id": "AC-7", "verified": True},
            {"task_id": "ghost", "criterion_id": "AC-1", "verified": True},
        ], "shop")
        assert result.success
        assert result.message == "2/4 criteria updated"
        assert [o["success"] for o in result.value] == [True, True, False, False]
        assert result.value[2]["error_kind"] == ErrorKind.NOT_FOUND

        task_set = features_mod.get_feature(db, "pay", "shop")
        assert [c.verified for c in task_set.task("card").acceptance_criteria] == [True, False]
        assert task_set.task("refund").acceptance_criteria[0].verified

    def test_batch_leaves_workflow_state_alone(self, db):
        self._feature(db)
        workflow_mod.review_task(db, "pay", "card", Role.PRODUCT_DIRECTOR, "approve",
                                 repo_name="shop")
        workflow_mod.batch_update_acceptance_criteria(db, "pay", [
            {"task_id": "card", "criterion_id": "AC-1", "verified": True},
        ], "shop")
        task = features_mod.get_task(db, "pay", "card", "shop")
        assert task.status == Status.PENDING_ARCHITECT
        assert len(task.transitions) == 1
        assert task.stakeholder_review[Role.PRODUCT_DIRECTOR].approved


class TestTaskStructure:
    def test_status_reports_structure(self, db, feature):
        result = workflow_mod.get_task_status(db, "checkout", "docs", "shop")
        structure = result.value["structure"]
        assert structure.valid
        assert structure.warnings == ["Task has no description"]

    def test_review_refuses_corrupt_task(self, db, feature):
        db.execute("UPDATE tasks SET estimated_hours = -1 WHERE task_id = 'docs'")
        db.commit()
        result = workflow_mod.review_task(db, "checkout", "docs", Role.PRODUCT_DIRECTOR,
                                          "approve", repo_name="shop")
        assert not result.success
        assert result.error_kind == ErrorKind.INVALID_STATE
        assert "Estimated hours cannot be negative" in result.error
        assert features_mod.get_task(db, "checkout", "docs", "shop").transitions == []

        status = workflow_mod.get_task_status(db, "checkout", "docs", "shop")
        assert not status.value["structure"].valid
