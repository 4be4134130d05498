"""
Tests for the gate evaluator
"""

import pytest
from datetime import datetime, timezone, timedelta

from compliance_workflows.gates import GateContext, GateEvaluator, resolve_path
from compliance_workflows.models import (
    ApprovalGate, ConditionGate, InstanceStatus, RequiredFieldsGate, TimeGate,
    UnrecognizedGate, WorkflowEntityType, WorkflowInstance
)


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def evaluator():
    return GateEvaluator()


@pytest.fixture
def instance():
    """Instance that entered its current stage six hours ago"""
    return WorkflowInstance(
        id="inst-1",
        created_at=NOW - timedelta(days=1),
        updated_at=NOW - timedelta(hours=6),
        organization_id="org-1",
        template_id="tpl-1",
        template_version=1,
        entity_type=WorkflowEntityType.CASE,
        entity_id="CASE-1",
        current_stage="review",
        status=InstanceStatus.ACTIVE,
        stage_entered_at=NOW - timedelta(hours=6),
    )


def context(instance, entity=None, approved_roles=()):
    return GateContext(
        instance=instance,
        entity=entity or {},
        has_approval=lambda role: role in approved_roles,
        now=NOW,
    )


class TestRequiredFields:

    def test_missing_and_blank_fields_fail(self, evaluator, instance):
        gate = RequiredFieldsGate(fields=["approver", "summary", "owner.email"])
        result = evaluator.evaluate([gate], context(instance, {"summary": "  ", "owner": {}}))

        assert not result.passed
        assert result.failures[0].gate_type == "required_fields"
        assert "approver" in result.failures[0].message
        assert "owner.email" in result.failures[0].message

    def test_present_fields_pass(self, evaluator, instance):
        gate = RequiredFieldsGate(fields=["approver", "owner.email"])
        entity = {"approver": "jane", "owner": {"email": "o@example.com"}}
        assert evaluator.evaluate([gate], context(instance, entity)).passed

    def test_configured_error_message_is_returned_verbatim(self, evaluator, instance):
        gate = RequiredFieldsGate(fields=["approver"], error_message="Assign an approver first")
        result = evaluator.evaluate([gate], context(instance))
        assert result.failures[0].message == "Assign an approver first"

    def test_false_and_zero_count_as_present(self, evaluator, instance):
        gate = RequiredFieldsGate(fields=["flag", "count"])
        assert evaluator.evaluate([gate], context(instance, {"flag": False, "count": 0})).passed


class TestApproval:

    def test_requires_matching_role(self, evaluator, instance):
        gate = ApprovalGate(approver_role="COMPLIANCE_OFFICER")

        assert not evaluator.evaluate([gate], context(instance, approved_roles={"MANAGER"})).passed
        assert evaluator.evaluate([gate], context(instance, approved_roles={"COMPLIANCE_OFFICER"})).passed


class TestTime:

    def test_minimum_time_in_stage(self, evaluator, instance):
        assert evaluator.evaluate([TimeGate(min_hours=4)], context(instance)).passed
        assert not evaluator.evaluate([TimeGate(min_hours=8)], context(instance)).passed
        assert not evaluator.evaluate([TimeGate(min_days=1)], context(instance)).passed


class TestCondition:

    @pytest.mark.parametrize("operator,value,expected", [
        ("eq", "high", True),
        ("neq", "high", False),
        ("in", ["low", "high"], True),
        ("not_in", ["low"], True),
        ("exists", None, True),
    ])
    def test_string_operators(self, evaluator, instance, operator, value, expected):
        gate = ConditionGate(field="priority", operator=operator, value=value)
        result = evaluator.evaluate([gate], context(instance, {"priority": "high"}))
        assert result.passed is expected

    @pytest.mark.parametrize("operator,value,expected", [
        ("gt", 70, True),
        ("gte", 75, True),
        ("lt", 75, False),
        ("lte", 75, True),
    ])
    def test_numeric_operators(self, evaluator, instance, operator, value, expected):
        gate = ConditionGate(field="risk.score", operator=operator, value=value)
        result = evaluator.evaluate([gate], context(instance, {"risk": {"score": 75}}))
        assert result.passed is expected

    def test_contains(self, evaluator, instance):
        gate = ConditionGate(field="tags", operator="contains", value="aml")
        assert evaluator.evaluate([gate], context(instance, {"tags": ["aml", "kyc"]})).passed
        assert not evaluator.evaluate([gate], context(instance, {"tags": ["kyc"]})).passed

    def test_missing_field_fails_comparisons(self, evaluator, instance):
        assert not evaluator.evaluate([ConditionGate(field="amount", operator="gt", value=1)],
                                      context(instance)).passed
        assert not evaluator.evaluate([ConditionGate(field="amount", operator="exists")],
                                      context(instance)).passed

    def test_mismatched_types_do_not_raise(self, evaluator, instance):
        gate = ConditionGate(field="amount", operator="gt", value=10)
        assert not evaluator.evaluate([gate], context(instance, {"amount": "lots"})).passed


class TestEvaluation:

    def test_all_failures_are_collected(self, evaluator, instance):
        gates = [
            RequiredFieldsGate(fields=["approver"], error_message="first"),
            ApprovalGate(approver_role="LEGAL", error_message="second"),
            TimeGate(min_hours=1),
        ]
        result = evaluator.evaluate(gates, context(instance))

        assert [f.message for f in result.failures] == ["first", "second"]

    def test_unrecognized_gate_fails_closed(self, evaluator, instance):
        gate = UnrecognizedGate(type_label="webhook")
        result = evaluator.evaluate([gate], context(instance))

        assert not result.passed
        assert result.failures[0].gate_type == "webhook"

    def test_no_gates_pass(self, evaluator, instance):
        result = evaluator.evaluate([], context(instance))
        assert result.passed
        assert result.failures == []


def test_resolve_path_handles_lists():
    data = {"parties": [{"name": "A"}, {"name": "B"}]}
    assert resolve_path(data, "parties.1.name") == "B"
    assert resolve_path(data, "parties.0.name") == "A"
