"""
Demo data: the Case Investigation Pipeline template.
"""

from .engine import WorkflowEngine
from .models import (
    ApprovalGate, Stage, StageDisplay, TemplateDefinition, Transition, WorkflowEntityType,
    WorkflowTemplate
)
from .principal import Principal, SYSTEM_PRINCIPAL


CASE_PIPELINE_NAME = "Case Investigation Pipeline"
COMPLIANCE_OFFICER = "COMPLIANCE_OFFICER"


def case_investigation_pipeline() -> TemplateDefinition:
    """New -> Triage -> Investigation -> Review -> Closed; closing needs officer approval"""
    stages = [
        Stage(id="New", name="New", sla_days=1, display=StageDisplay(color="#64748b", sort_order=0)),
        Stage(id="Triage", name="Triage", sla_days=2, display=StageDisplay(color="#0ea5e9", sort_order=1)),
        Stage(id="Investigation", name="Investigation", sla_days=14,
              display=StageDisplay(color="#f59e0b", sort_order=2)),
        Stage(id="Review", name="Review", sla_days=5, display=StageDisplay(color="#8b5cf6", sort_order=3)),
        Stage(id="Closed", name="Closed", is_terminal=True,
              display=StageDisplay(color="#22c55e", sort_order=4)),
    ]
    transitions = [
        Transition(from_stage="New", to_stage="Triage", label="Start triage"),
        Transition(from_stage="Triage", to_stage="Investigation", label="Open investigation"),
        Transition(from_stage="Investigation", to_stage="Review", label="Submit for review"),
        Transition(
            from_stage="Review", to_stage="Closed", label="Close case",
            conditions=[ApprovalGate(
                approver_role=COMPLIANCE_OFFICER,
                error_message="A compliance officer must approve before the case can be closed"
            )]
        ),
    ]
    return TemplateDefinition(
        name=CASE_PIPELINE_NAME,
        entity_type=WorkflowEntityType.CASE,
        description="Standard intake-to-closure pipeline for compliance cases",
        stages=stages,
        transitions=transitions,
        initial_stage="New",
        default_sla_days=30,
        tags=["cases", "investigations"],
        is_default=True,
        is_active=True,
    )


def seed_case_investigation_pipeline(engine: WorkflowEngine, organization_id: str,
                                     actor: Principal = SYSTEM_PRINCIPAL) -> WorkflowTemplate:
    """Create the pipeline for an organization unless an active copy already exists"""
    for template in engine.templates.find_versions(organization_id, CASE_PIPELINE_NAME):
        if template.is_active and template.entity_type == WorkflowEntityType.CASE:
            return template
    return engine.templates.create(organization_id, case_investigation_pipeline(), actor)
