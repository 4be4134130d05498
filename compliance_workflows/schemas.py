"""
Pydantic request models for the REST API
"""

from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field

from .models import (
    SlaConfig, Stage, StageDisplay, TemplateDefinition, TemplatePatch, Transition,
    WorkflowEntityType, gate_from_dict
)


class GateModel(BaseModel):
    type: str = Field(..., description="Gate type (required_fields, approval, condition, time)")
    config: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None

    def to_gate(self):
        return gate_from_dict(self.model_dump())


class StageDisplayModel(BaseModel):
    color: Optional[str] = None
    icon: Optional[str] = None
    sort_order: Optional[int] = None


class StageModel(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    sla_days: Optional[float] = None
    gates: List[GateModel] = Field(default_factory=list)
    is_terminal: bool = False
    display: Optional[StageDisplayModel] = None

    def to_stage(self) -> Stage:
        return Stage(
            id=self.id,
            name=self.name,
            description=self.description,
            sla_days=self.sla_days,
            gates=[gate.to_gate() for gate in self.gates],
            is_terminal=self.is_terminal,
            display=StageDisplay(**self.display.model_dump()) if self.display else None
        )


class TransitionModel(BaseModel):
    from_stage: str = Field(..., description="Source stage id, or '*' for any stage")
    to_stage: str
    label: Optional[str] = None
    allowed_roles: List[str] = Field(default_factory=list)
    requires_reason: bool = False
    conditions: List[GateModel] = Field(default_factory=list)

    def to_transition(self) -> Transition:
        return Transition(
            from_stage=self.from_stage,
            to_stage=self.to_stage,
            label=self.label,
            allowed_roles=list(self.allowed_roles),
            requires_reason=self.requires_reason,
            conditions=[gate.to_gate() for gate in self.conditions]
        )


class SlaConfigModel(BaseModel):
    warning_threshold_percent: Optional[float] = Field(None, ge=0, le=100)
    critical_threshold_hours: Optional[float] = Field(None, ge=0)

    def to_sla_config(self) -> SlaConfig:
        return SlaConfig(**self.model_dump())


class CreateTemplateRequest(BaseModel):
    name: str
    entity_type: WorkflowEntityType
    description: Optional[str] = None
    stages: List[StageModel]
    transitions: List[TransitionModel] = Field(default_factory=list)
    initial_stage: str
    default_sla_days: Optional[float] = None
    sla_config: Optional[SlaConfigModel] = None
    tags: List[str] = Field(default_factory=list)
    is_default: bool = False
    is_active: bool = False

    def to_definition(self) -> TemplateDefinition:
        return TemplateDefinition(
            name=self.name,
            entity_type=self.entity_type,
            stages=[stage.to_stage() for stage in self.stages],
            transitions=[t.to_transition() for t in self.transitions],
            initial_stage=self.initial_stage,
            description=self.description,
            default_sla_days=self.default_sla_days,
            sla_config=self.sla_config.to_sla_config() if self.sla_config else None,
            tags=list(self.tags),
            is_default=self.is_default,
            is_active=self.is_active
        )


class UpdateTemplateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    stages: Optional[List[StageModel]] = None
    transitions: Optional[List[TransitionModel]] = None
    initial_stage: Optional[str] = None
    default_sla_days: Optional[float] = None
    sla_config: Optional[SlaConfigModel] = None
    tags: Optional[List[str]] = None

    def to_patch(self) -> TemplatePatch:
        return TemplatePatch(
            name=self.name,
            description=self.description,
            stages=[s.to_stage() for s in self.stages] if self.stages is not None else None,
            transitions=([t.to_transition() for t in self.transitions]
                         if self.transitions is not None else None),
            initial_stage=self.initial_stage,
            default_sla_days=self.default_sla_days,
            sla_config=self.sla_config.to_sla_config() if self.sla_config else None,
            tags=self.tags
        )


class StartWorkflowRequest(BaseModel):
    entity_type: WorkflowEntityType
    entity_id: str = Field(..., min_length=1)
    template_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class TransitionRequest(BaseModel):
    to_stage: str
    reason: Optional[str] = None


class CompleteRequest(BaseModel):
    outcome: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class ApprovalRequest(BaseModel):
    role: str = Field(..., min_length=1)
    comments: Optional[str] = None


class EntitySnapshotRequest(BaseModel):
    fields: Dict[str, Any] = Field(default_factory=dict)
