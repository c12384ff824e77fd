"""Tests for the status graph rule tables."""

import pytest

from feature_conductor.core.status_graph import (
    DEFAULT_GRAPH,
    Actor,
    DevRule,
    Role,
    Status,
    build_pipeline,
)


class TestDefaultGraph:
    def test_review_chain(self):
        chain = []
        status = DEFAULT_GRAPH.initial_status
        while (rule := DEFAULT_GRAPH.review_rule(status)) is not None:
            chain.append((status, rule.expected_role))
            status = rule.on_approve
        assert chain == [
            (Status.PENDING_PRODUCT_DIRECTOR, Role.PRODUCT_DIRECTOR),
            (Status.PENDING_ARCHITECT, Role.ARCHITECT),
            (Status.PENDING_UI_UX_EXPERT, Role.UI_UX_EXPERT),
            (Status.PENDING_SECURITY_OFFICER, Role.SECURITY_OFFICER),
        ]
        assert status == Status.READY_FOR_DEVELOPMENT

    def test_every_review_stage_rejects_to_refinement(self):
        for rule in DEFAULT_GRAPH.review_rules.values():
            assert rule.on_reject == Status.NEEDS_REFINEMENT

    def test_refinement_returns_to_first_stage(self):
        assert DEFAULT_GRAPH.allowed_dev_targets(Status.NEEDS_REFINEMENT) == {
            Status.PENDING_PRODUCT_DIRECTOR
        }
        assert DEFAULT_GRAPH.can_actor_act(Status.NEEDS_REFINEMENT, Actor.SYSTEM)

    def test_development_edges(self):
        g = DEFAULT_GRAPH
        assert g.allowed_dev_targets(Status.IN_REVIEW) == {Status.IN_QA, Status.NEEDS_CHANGES}
        assert g.allowed_dev_targets(Status.IN_QA) == {Status.DONE, Status.NEEDS_CHANGES}
        assert g.can_actor_act(Status.IN_REVIEW, Actor.CODE_REVIEWER)
        assert not g.can_actor_act(Status.IN_REVIEW, Actor.DEVELOPER)
        assert g.can_actor_act(Status.TODO, Actor.SYSTEM)
        assert g.can_actor_act(Status.TODO, Actor.DEVELOPER)

    def test_done_is_terminal(self):
        assert DEFAULT_GRAPH.is_terminal(Status.DONE)
        assert not DEFAULT_GRAPH.is_terminal(Status.IN_PROGRESS)

    def test_unknown_status_has_no_rules(self):
        assert DEFAULT_GRAPH.review_rule("Nope") is None
        assert DEFAULT_GRAPH.allowed_dev_targets("Nope") == frozenset()
        assert not DEFAULT_GRAPH.is_known("Nope")

    def test_tables_are_read_only(self):
        with pytest.raises(TypeError):
            DEFAULT_GRAPH.dev_rules["Extra"] = DevRule(frozenset(), frozenset())

    def test_all_statuses_present(self):
        assert len(DEFAULT_GRAPH.statuses()) == 12


class TestBuildPipeline:
    def test_custom_stages(self):
        graph = build_pipeline([("legal", "PendingLegal"), ("finance", "PendingFinance")])
        assert graph.initial_status == "PendingLegal"
        assert graph.review_rule("PendingLegal").on_approve == "PendingFinance"
        assert graph.review_rule("PendingFinance").on_approve == Status.READY_FOR_DEVELOPMENT
        assert graph.review_roles == ("legal", "finance")
        assert graph.can_actor_act("PendingLegal", "legal")
        assert graph.allowed_dev_targets(Status.NEEDS_REFINEMENT) == {"PendingLegal"}

    def test_requires_a_stage(self):
        with pytest.raises(ValueError):
            build_pipeline([])
