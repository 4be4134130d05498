"""
Tests for the transition validator
"""

import pytest
from datetime import datetime, timezone

from compliance_workflows.exceptions import InvalidTransitionError
from compliance_workflows.models import (
    InstanceStatus, Stage, Transition, WorkflowEntityType, WorkflowInstance, WorkflowTemplate
)
from compliance_workflows.principal import Principal, SYSTEM_PRINCIPAL
from compliance_workflows.transitions import TransitionValidator


NOW = datetime(2026, 4, 1, tzinfo=timezone.utc)

ANALYST = Principal.of("u-analyst", ["ANALYST"])
MANAGER = Principal.of("u-manager", ["MANAGER"])


@pytest.fixture
def validator():
    return TransitionValidator()


@pytest.fixture
def template():
    return WorkflowTemplate(
        id="tpl-1",
        created_at=NOW,
        updated_at=NOW,
        organization_id="org-1",
        name="Escalation",
        entity_type=WorkflowEntityType.INVESTIGATION,
        stages=[Stage(id=s, name=s) for s in ("open", "review", "escalated", "closed")],
        transitions=[
            Transition(from_stage="open", to_stage="review"),
            Transition(from_stage="review", to_stage="closed", allowed_roles=["MANAGER"]),
            Transition(from_stage="review", to_stage="open", requires_reason=True),
            Transition(from_stage="*", to_stage="escalated", allowed_roles=["MANAGER"], label="Escalate"),
            Transition(from_stage="escalated", to_stage="escalated", label="Re-escalate"),
        ],
        initial_stage="open",
        family_id="tpl-1",
    )


def instance_at(stage, status=InstanceStatus.ACTIVE):
    return WorkflowInstance(
        id="inst-1",
        created_at=NOW,
        updated_at=NOW,
        organization_id="org-1",
        template_id="tpl-1",
        template_version=1,
        entity_type=WorkflowEntityType.INVESTIGATION,
        entity_id="INV-1",
        current_stage=stage,
        status=status,
        stage_entered_at=NOW,
    )


class TestFindEdge:

    def test_unrestricted_edge(self, validator, template):
        edge = validator.find_edge(template, instance_at("open"), "review", ANALYST)
        assert (edge.from_stage, edge.to_stage) == ("open", "review")

    def test_missing_edge(self, validator, template):
        with pytest.raises(InvalidTransitionError) as exc:
            validator.find_edge(template, instance_at("open"), "closed", MANAGER)
        assert exc.value.from_stage == "open"
        assert exc.value.to_stage == "closed"

    def test_role_restriction(self, validator, template):
        with pytest.raises(InvalidTransitionError):
            validator.find_edge(template, instance_at("review"), "closed", ANALYST)
        assert validator.find_edge(template, instance_at("review"), "closed", MANAGER)

    def test_system_principal_has_no_implicit_roles(self, validator, template):
        assert not validator.is_legal(template, instance_at("review"), "closed", SYSTEM_PRINCIPAL)

    def test_reason_required(self, validator, template):
        review = instance_at("review")
        assert not validator.is_legal(template, review, "open", ANALYST)
        assert not validator.is_legal(template, review, "open", ANALYST, reason="   ")
        assert validator.is_legal(template, review, "open", ANALYST, reason="needs more evidence")

    def test_wildcard_source(self, validator, template):
        edge = validator.find_edge(template, instance_at("review"), "escalated", MANAGER)
        assert edge.from_stage == "*"

    def test_explicit_edge_preferred_over_wildcard(self, validator, template):
        edge = validator.find_edge(template, instance_at("escalated"), "escalated", ANALYST)
        assert edge.label == "Re-escalate"

    def test_self_transition_needs_explicit_edge(self, validator, template):
        assert not validator.is_legal(template, instance_at("open"), "open", MANAGER)

    @pytest.mark.parametrize("status", [
        InstanceStatus.PAUSED, InstanceStatus.COMPLETED, InstanceStatus.CANCELLED
    ])
    def test_only_active_instances_move(self, validator, template, status):
        assert not validator.is_legal(template, instance_at("open", status), "review", ANALYST)


class TestAllowedEdges:

    def test_filtered_by_role(self, validator, template):
        analyst_targets = [e.to_stage for e in validator.allowed_edges(template, instance_at("review"), ANALYST)]
        manager_targets = [e.to_stage for e in validator.allowed_edges(template, instance_at("review"), MANAGER)]

        assert analyst_targets == ["open"]
        assert manager_targets == ["closed", "open", "escalated"]

    def test_targets_are_unique(self, validator, template):
        edges = validator.allowed_edges(template, instance_at("escalated"), MANAGER)
        assert [e.to_stage for e in edges] == ["escalated"]
        assert edges[0].label == "Re-escalate"

    def test_empty_unless_active(self, validator, template):
        assert validator.allowed_edges(template, instance_at("open", InstanceStatus.PAUSED), MANAGER) == []
