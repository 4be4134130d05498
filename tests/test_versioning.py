"""
Tests for fork-on-write template versioning
"""

import pytest

from compliance_workflows.audit import AuditEventType
from compliance_workflows.events import WorkflowEvent
from compliance_workflows.exceptions import InvalidStateError, ValidationError
from compliance_workflows.models import Stage, TemplatePatch, Transition

from conftest import ORG


def _with_stage_d():
    """Patch adding a D stage between B and C"""
    return TemplatePatch(
        stages=[
            Stage(id="A", name="Intake"),
            Stage(id="B", name="Review"),
            Stage(id="D", name="Second Review"),
            Stage(id="C", name="Done", is_terminal=True),
        ],
        transitions=[
            Transition(from_stage="A", to_stage="B"),
            Transition(from_stage="B", to_stage="D"),
            Transition(from_stage="D", to_stage="C"),
        ],
    )


class TestInPlace:
    """Edits with no in-flight instances"""

    def test_updates_row_without_version_bump(self, engine, active_template):
        updated = engine.update_template(ORG, active_template.id, TemplatePatch(description="Revised"))

        assert updated.id == active_template.id
        assert updated.version == 1
        assert updated.description == "Revised"
        assert updated.revision == active_template.revision + 1
        assert engine.templates.get(ORG, active_template.id).description == "Revised"

    def test_finished_instances_do_not_force_a_fork(self, engine, active_template):
        instance = engine.start_workflow(ORG, "CASE", "CASE-1")
        engine.cancel(ORG, instance.id)

        updated = engine.update_template(ORG, active_template.id, _with_stage_d())
        assert updated.id == active_template.id
        assert updated.version == 1

    def test_empty_patch_is_a_no_op(self, engine, active_template):
        same = engine.update_template(ORG, active_template.id, TemplatePatch())
        assert same.revision == active_template.revision

    def test_invalid_patch_leaves_template_untouched(self, engine, active_template):
        with pytest.raises(ValidationError):
            engine.update_template(ORG, active_template.id, TemplatePatch(initial_stage="Z"))
        assert engine.templates.get(ORG, active_template.id) == active_template


class TestFork:
    """Edits while instances are in flight"""

    def test_running_instance_is_pinned_to_old_version(self, engine, active_template):
        instance = engine.start_workflow(ORG, "CASE", "CASE-1")

        fork = engine.update_template(ORG, active_template.id, _with_stage_d())

        assert fork.id != active_template.id
        assert fork.version == 2
        assert fork.family_id == active_template.family_id
        assert fork.source_template_id == active_template.id
        assert fork.is_active

        old = engine.templates.get(ORG, active_template.id)
        assert not old.is_active
        assert old.stage_ids() == ["A", "B", "C"]

        pinned = engine.get_template_for_instance(ORG, instance.id)
        assert pinned.id == active_template.id
        assert pinned.version == 1

        # The old graph still governs the running instance
        engine.transition(ORG, instance.id, "B")
        assert engine.transition(ORG, instance.id, "C").current_stage == "C"

    def test_default_flag_moves_to_the_fork(self, engine, active_template):
        engine.start_workflow(ORG, "CASE", "CASE-1")
        fork = engine.update_template(ORG, active_template.id, _with_stage_d())

        assert fork.is_default
        assert not engine.templates.get(ORG, active_template.id).is_default

        new_instance = engine.start_workflow(ORG, "CASE", "CASE-2")
        assert new_instance.template_id == fork.id
        assert new_instance.template_version == 2

    def test_paused_instances_count_as_in_flight(self, engine, active_template):
        instance = engine.start_workflow(ORG, "CASE", "CASE-1")
        engine.pause(ORG, instance.id)

        fork = engine.update_template(ORG, active_template.id, TemplatePatch(description="Revised"))
        assert fork.version == 2

    def test_superseded_version_cannot_be_edited(self, engine, active_template):
        engine.start_workflow(ORG, "CASE", "CASE-1")
        engine.update_template(ORG, active_template.id, TemplatePatch(description="v2"))

        with pytest.raises(InvalidStateError):
            engine.update_template(ORG, active_template.id, TemplatePatch(description="v3"))

    def test_superseded_version_cannot_be_republished(self, engine, active_template):
        engine.start_workflow(ORG, "CASE", "CASE-1")
        engine.update_template(ORG, active_template.id, TemplatePatch(description="v2"))

        with pytest.raises(InvalidStateError):
            engine.templates.publish(ORG, active_template.id)

    def test_successive_forks_keep_incrementing(self, engine, active_template):
        engine.start_workflow(ORG, "CASE", "CASE-1")
        v2 = engine.update_template(ORG, active_template.id, TemplatePatch(description="v2"))
        engine.start_workflow(ORG, "CASE", "CASE-2")
        v3 = engine.update_template(ORG, v2.id, TemplatePatch(description="v3"))

        lineage = engine.templates.find_lineage(ORG, active_template.id)
        assert [t.version for t in lineage] == [3, 2, 1]
        assert [t.id for t in lineage] == [v3.id, v2.id, active_template.id]
        assert [t.is_active for t in lineage] == [True, False, False]

    def test_find_versions_groups_by_name(self, engine, active_template):
        engine.start_workflow(ORG, "CASE", "CASE-1")
        engine.update_template(ORG, active_template.id, TemplatePatch(description="v2"))

        versions = engine.templates.find_versions(ORG, "Linear Review")
        assert [t.version for t in versions] == [2, 1]

    def test_renaming_fork_checks_active_names(self, engine, active_template, make_definition):
        engine.templates.create(ORG, make_definition(name="Taken"))
        engine.start_workflow(ORG, "CASE", "CASE-1")

        with pytest.raises(ValidationError):
            engine.update_template(ORG, active_template.id, TemplatePatch(name="Taken"))
        assert engine.templates.get(ORG, active_template.id).is_active

    def test_fork_is_audited_and_published(self, engine, audit_trail, received, active_template):
        engine.start_workflow(ORG, "CASE", "CASE-1")
        fork = engine.update_template(ORG, active_template.id, TemplatePatch(description="v2"))

        audit = audit_trail.get_events_for_entity('workflow_template', fork.id)
        assert audit[-1].event_type == AuditEventType.TEMPLATE_VERSIONED
        assert audit[-1].metadata['previous_template_id'] == active_template.id

        versioned = [e for e in received if e.event_type == WorkflowEvent.TEMPLATE_VERSIONED]
        assert len(versioned) == 1
        assert versioned[0].data['in_flight_instances'] == 1
