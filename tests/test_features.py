"""Tests for feature and task storage."""

import sqlite3
import threading
from unittest.mock import patch

import pytest

from feature_conductor.core import checkpoints as checkpoints_mod
from feature_conductor.core import features as features_mod
from feature_conductor.core import workflow as workflow_mod
from feature_conductor.core.errors import StorageError
from feature_conductor.core.status_graph import Role, Status
from feature_conductor.db.engine import init_db
from feature_conductor.db.models import AcceptanceCriterion, ReviewEntry, Transition


class TestFeatureCRUD:
    def test_create_feature(self, feature):
        assert feature.repo_name == "shop"
        assert feature.feature_slug == "checkout"
        assert feature.feature_name == "Checkout flow"
        assert [t.task_id for t in feature.tasks] == ["schema", "api", "ui", "docs"]
        assert all(t.status == Status.PENDING_PRODUCT_DIRECTOR for t in feature.tasks)
        assert feature.task("api").dependencies == ["schema"]
        assert feature.task("docs").estimated_hours == 2
        assert feature.task("ui").order_of_execution == 3

    def test_create_duplicate_raises(self, db, feature):
        with pytest.raises(ValueError, match="already exists"):
            features_mod.create_feature(db, "checkout", repo_name="shop")

    def test_create_with_unknown_dependency_raises(self, db):
        with pytest.raises(ValueError, match="not found"):
            features_mod.create_feature(
                db, "f", tasks=[{"task_id": "a", "title": "A", "dependencies": ["b"]}]
            )
        assert features_mod.get_feature(db, "f") is None

    def test_self_dependency_rejected(self, db):
        with pytest.raises(ValueError, match="itself"):
            features_mod.create_feature(
                db, "f", tasks=[{"task_id": "a", "title": "A", "dependencies": ["a"]}]
            )

    def test_list_and_repos(self, db, feature):
        features_mod.create_feature(db, "search", repo_name="catalog")
        assert [ts.feature_slug for ts in features_mod.list_features(db)] == ["search", "checkout"]
        assert [ts.feature_slug for ts in features_mod.list_features(db, "shop")] == ["checkout"]
        assert features_mod.list_repos(db) == ["catalog", "shop"]

    def test_same_slug_in_two_repos(self, db, feature):
        other = features_mod.create_feature(db, "checkout", repo_name="outlet")
        assert other.tasks == []
        assert len(features_mod.get_feature(db, "checkout", "shop").tasks) == 4

    def test_delete_feature(self, db, feature):
        assert features_mod.delete_feature(db, "checkout", "shop")
        assert features_mod.get_feature(db, "checkout", "shop") is None
        assert db.execute("SELECT COUNT(*) FROM tasks").fetchone()[0] == 0
        assert not features_mod.delete_feature(db, "checkout", "shop")

    def test_update_feature(self, db, feature):
        updated = features_mod.update_feature(db, "checkout", "shop", feature_name="Checkout v2")
        assert updated.feature_name == "Checkout v2"
        assert updated.description == ""

        features_mod.update_feature(db, "checkout", "shop", description="One-page checkout")
        stored = features_mod.get_feature(db, "checkout", "shop")
        assert stored.feature_name == "Checkout v2"
        assert stored.description == "One-page checkout"
        assert len(stored.tasks) == 4

    def test_update_feature_needs_a_change(self, db, feature):
        with pytest.raises(ValueError, match="feature_name or a description"):
            features_mod.update_feature(db, "checkout", "shop")
        assert features_mod.update_feature(db, "nope", "shop", feature_name="X") is None


class TestTaskCRUD:
    def test_add_task(self, db, feature):
        task = features_mod.add_task(db, "checkout", "tests", "Write tests", "shop",
                                     dependencies=["api"], tags=["qa"])
        assert task.order_of_execution == 5
        stored = features_mod.get_task(db, "checkout", "tests", "shop")
        assert stored.dependencies == ["api"]
        assert stored.tags == ["qa"]

    def test_add_task_missing_feature(self, db):
        with pytest.raises(ValueError, match="Feature not found"):
            features_mod.add_task(db, "nope", "t", "T")

    def test_update_task(self, db, feature):
        task = features_mod.update_task(db, "checkout", "docs", "shop",
                                        title="Write user docs", assigned_to="sam")
        assert task.title == "Write user docs"
        stored = features_mod.get_task(db, "checkout", "docs", "shop")
        assert stored.assigned_to == "sam"

    def test_invalid_task_structure_is_refused(self, db, feature):
        with pytest.raises(ValueError, match="Estimated hours cannot be negative"):
            features_mod.add_task(db, "checkout", "perf", "Load test", "shop",
                                  estimated_hours=-3)
        assert features_mod.get_task(db, "checkout", "perf", "shop") is None

        with pytest.raises(ValueError, match="title is required"):
            features_mod.update_task(db, "checkout", "docs", "shop", title="")
        with pytest.raises(ValueError, match="Estimated hours"):
            features_mod.update_task(db, "checkout", "docs", "shop", estimated_hours=-1)
        stored = features_mod.get_task(db, "checkout", "docs", "shop")
        assert stored.title == "Write docs"
        assert stored.estimated_hours == 2

    def test_add_task_with_acceptance_criteria(self, db, feature):
        task = features_mod.add_task(
            db, "checkout", "pay", "Take payment", "shop",
            acceptance_criteria=[
                {"id": "AC-1", "criterion": "Card payments succeed"},
                {"id": "AC-2", "criterion": "Receipt is emailed", "priority": "Should Have"},
            ],
        )
        assert [c.id for c in task.acceptance_criteria] == ["AC-1", "AC-2"]
        stored = features_mod.get_task(db, "checkout", "pay", "shop")
        assert stored.acceptance_criteria == [
            AcceptanceCriterion("AC-1", "Card payments succeed", "Must Have", False),
            AcceptanceCriterion("AC-2", "Receipt is emailed", "Should Have", False),
        ]

    def test_bad_acceptance_criteria(self, db, feature):
        with pytest.raises(ValueError, match="priority"):
            features_mod.add_task(db, "checkout", "pay", "Pay", "shop", acceptance_criteria=[
                {"id": "AC-1", "criterion": "x", "priority": "Urgent"},
            ])
        with pytest.raises(ValueError, match="Duplicate"):
            features_mod.add_task(db, "checkout", "pay", "Pay", "shop", acceptance_criteria=[
                {"id": "AC-1", "criterion": "x"},
                {"id": "AC-1", "criterion": "y"},
            ])
        with pytest.raises(ValueError, match="need an id"):
            features_mod.add_task(db, "checkout", "pay", "Pay", "shop",
                                  acceptance_criteria=[{"criterion": "x"}])

    def test_update_status_is_refused(self, db, feature):
        with pytest.raises(ValueError, match="status"):
            features_mod.update_task(db, "checkout", "docs", "shop", status=Status.DONE)

    def test_delete_task_drops_dependency(self, db, feature):
        assert features_mod.delete_task(db, "checkout", "api", "shop")
        task_set = features_mod.get_feature(db, "checkout", "shop")
        assert task_set.task("api") is None
        assert task_set.task("ui").dependencies == []

    def test_dependencies(self, db, feature):
        task = features_mod.add_dependency(db, "checkout", "docs", "ui", "shop")
        assert task.dependencies == ["ui"]
        with pytest.raises(ValueError):
            features_mod.add_dependency(db, "checkout", "docs", "docs", "shop")
        with pytest.raises(ValueError):
            features_mod.add_dependency(db, "checkout", "docs", "ghost", "shop")
        task = features_mod.remove_dependency(db, "checkout", "docs", "ui", "shop")
        assert task.dependencies == []
        assert features_mod.add_dependency(db, "checkout", "ghost", "ui", "shop") is None


class TestSaveLoad:
    def test_history_round_trip(self, db, feature):
        task_set = features_mod.load_task_set(db, "checkout", "shop")
        task = task_set.task("schema")
        task.transitions.append(Transition(
            from_status=Status.PENDING_PRODUCT_DIRECTOR,
            to_status=Status.PENDING_ARCHITECT,
            actor="productDirector",
            approver="productDirector",
            timestamp="2024-01-01T00:00:00+00:00",
            notes="fine",
            metadata={"decision": "approve"},
        ))
        task.status = Status.PENDING_ARCHITECT
        task.stakeholder_review["productDirector"] = ReviewEntry(True, "fine", {"score": 5})
        features_mod.save_task_set(db, task_set)

        loaded = features_mod.load_task_set(db, "checkout", "shop").task("schema")
        assert loaded.status == Status.PENDING_ARCHITECT
        assert loaded.initial_status == Status.PENDING_PRODUCT_DIRECTOR
        assert loaded.transitions == task.transitions
        assert loaded.stakeholder_review["productDirector"].details == {"score": 5}

    def test_failed_save_raises_storage_error_and_keeps_old_copy(self, db, feature):
        task_set = features_mod.load_task_set(db, "checkout", "shop")
        task_set.task("docs").title = "Changed"
        with patch.object(features_mod, "_write_task_set",
                          side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(StorageError):
                features_mod.save_task_set(db, task_set)
        assert features_mod.get_task(db, "checkout", "docs", "shop").title == "Write docs"
        assert not db.in_transaction

    def test_criteria_survive_other_writes(self, db):
        features_mod.create_feature(db, "f", tasks=[{
            "task_id": "a", "title": "A",
            "acceptance_criteria": [{"id": "AC-1", "criterion": "works", "verified": True}],
        }])
        workflow_mod.review_task(db, "f", "a", Role.PRODUCT_DIRECTOR, "approve")
        features_mod.update_task(db, "f", "a", description="now described")
        criteria = features_mod.get_task(db, "f", "a").acceptance_criteria
        assert criteria == [AcceptanceCriterion("AC-1", "works", "Must Have", True)]

    def test_load_leaves_no_open_transaction(self, db, feature):
        features_mod.load_task_set(db, "checkout", "shop")
        assert not db.in_transaction
        assert features_mod.load_task_set(db, "nope", "shop") is None
        assert not db.in_transaction

    def test_load_inside_open_transaction_keeps_it_open(self, db, feature):
        db.execute("BEGIN")
        try:
            assert features_mod.load_task_set(db, "checkout", "shop") is not None
            assert db.in_transaction
        finally:
            db.rollback()

    def test_loads_never_see_half_a_save(self, db_path, db, feature):
        """A reader on its own connection sees each save entirely or not at all."""
        done = threading.Event()
        errors = []

        def writer():
            conn = init_db(db_path)
            try:
                for _ in range(100):
                    result = workflow_mod.review_task(conn, "checkout", "schema",
                                                      Role.PRODUCT_DIRECTOR, "approve",
                                                      repo_name="shop")
                    assert result.success, result.error
                    result = checkpoints_mod.rollback_last_decision(conn, "checkout", "schema",
                                                                    "shop")
                    assert result.success, result.error
            except Exception as e:
                errors.append(e)
            finally:
                conn.close()
                done.set()

        thread = threading.Thread(target=writer)
        thread.start()
        loads = 0
        torn = 0
        while not done.is_set() or loads == 0:
            task = features_mod.load_task_set(db, "checkout", "shop").task("schema")
            expected = task.transitions[-1].to_status if task.transitions else task.initial_status
            if task.status != expected:
                torn += 1
            if bool(task.transitions) != (Role.PRODUCT_DIRECTOR in task.stakeholder_review):
                torn += 1
            loads += 1
        thread.join()

        assert errors == []
        assert torn == 0
