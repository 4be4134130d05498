"""
Tests for the workflow domain model and gate variants
"""

from datetime import datetime, timezone

import pytest

from compliance_workflows.models import (
    ApprovalGate, ConditionGate, Gate, InstanceStatus, RequiredFieldsGate, SlaConfig, Stage,
    StageDisplay, StepState, StepStatus, TimeGate, Transition, TransitionRecord,
    UnrecognizedGate, WorkflowEntityType, WorkflowInstance, WorkflowTemplate, gate_from_dict
)


def _template():
    now = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
    return WorkflowTemplate(
        id="tpl-1",
        created_at=now,
        updated_at=now,
        organization_id="org-1",
        name="Disclosure Review",
        entity_type=WorkflowEntityType.DISCLOSURE,
        stages=[
            Stage(id="draft", name="Draft", sla_days=3,
                  gates=[RequiredFieldsGate(fields=["title"], error_message="Title needed")],
                  display=StageDisplay(color="#fff", icon="pen", sort_order=1)),
            Stage(id="done", name="Done", is_terminal=True),
        ],
        transitions=[
            Transition(from_stage="draft", to_stage="done", allowed_roles=["REVIEWER"],
                       requires_reason=True,
                       conditions=[ConditionGate(field="risk.score", operator="lt", value=50)]),
            Transition(from_stage="*", to_stage="draft", label="Reopen"),
        ],
        initial_stage="draft",
        default_sla_days=10,
        sla_config=SlaConfig(warning_threshold_percent=70),
        tags=["disclosure"],
        family_id="tpl-1",
        revision=3,
    )


class TestGateVariants:
    """Gate construction and configuration checks"""

    def test_gate_from_dict_builds_each_variant(self):
        assert isinstance(gate_from_dict({'type': 'required_fields', 'config': {'fields': ['a']}}),
                          RequiredFieldsGate)
        assert isinstance(gate_from_dict({'type': 'approval', 'config': {'approver_role': 'X'}}),
                          ApprovalGate)
        assert isinstance(gate_from_dict({'type': 'condition', 'config': {'field': 'a'}}), ConditionGate)
        assert isinstance(gate_from_dict({'type': 'time', 'config': {'min_hours': 2}}), TimeGate)

    def test_unknown_gate_type_is_preserved_and_invalid(self):
        gate = gate_from_dict({'type': 'webhook', 'config': {'url': 'https://x'}, 'error_message': 'nope'})

        assert isinstance(gate, UnrecognizedGate)
        assert gate.type_name == 'webhook'
        assert gate.to_dict() == {'type': 'webhook', 'config': {'url': 'https://x'}, 'error_message': 'nope'}
        assert gate.validate() == ["unknown gate type 'webhook'"]

    def test_validate_reports_configuration_problems(self):
        assert RequiredFieldsGate(fields=[]).validate()
        assert ApprovalGate(approver_role="").validate()
        assert ConditionGate(field="x", operator="matches").validate()
        assert TimeGate().validate()
        assert TimeGate(min_days=-1).validate()
        assert TimeGate(min_days=1).validate() == []

    def test_gate_base_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            Gate()


class TestTemplateModel:
    """Template helpers and serialization"""

    def test_round_trip_preserves_graph(self):
        template = _template()
        restored = WorkflowTemplate.from_dict(template.to_dict())

        assert restored == template
        assert restored.stages[0].gates[0].error_message == "Title needed"
        assert restored.transitions[0].conditions[0].value == 50

    def test_edges_from_includes_wildcard(self):
        template = _template()

        assert [t.to_stage for t in template.edges_from("done")] == ["draft"]
        assert [t.to_stage for t in template.edges_from("draft")] == ["done", "draft"]

    def test_family_defaults_to_own_id(self):
        data = _template().to_dict()
        data.pop('family_id')
        assert WorkflowTemplate.from_dict(data).family_id == "tpl-1"

    def test_get_stage(self):
        template = _template()
        assert template.get_stage("done").is_terminal
        assert template.get_stage("missing") is None
        assert template.stage_ids() == ["draft", "done"]


class TestInstanceModel:
    """Instance serialization and status helpers"""

    def test_round_trip(self):
        now = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)
        instance = WorkflowInstance(
            id="inst-1",
            created_at=now,
            updated_at=now,
            organization_id="org-1",
            template_id="tpl-1",
            template_version=2,
            entity_type=WorkflowEntityType.CASE,
            entity_id="CASE-9",
            current_stage="done",
            status=InstanceStatus.COMPLETED,
            stage_entered_at=now,
            step_states={"draft": StepState(StepStatus.COMPLETED, now, "u1")},
            history=[TransitionRecord("draft", "done", now, "u1", "ok")],
            due_date=now,
            completed_at=now,
            outcome="resolved",
            context={"priority": "high"},
            revision=4,
        )

        assert WorkflowInstance.from_dict(instance.to_dict()) == instance
        assert instance.is_terminal

    def test_terminal_statuses(self):
        assert InstanceStatus.COMPLETED.is_terminal
        assert InstanceStatus.CANCELLED.is_terminal
        assert not InstanceStatus.ACTIVE.is_terminal
        assert not InstanceStatus.PAUSED.is_terminal
