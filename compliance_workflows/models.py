"""
Workflow Domain Model

Templates define a graph of stages and transitions; instances track one
entity's position in that graph. Gates are a closed set of variants, each
with a typed configuration.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from .storage import StorageRecord


ANY_STAGE = "*"

TEMPLATES_TABLE = "workflow_templates"
INSTANCES_TABLE = "workflow_instances"


class WorkflowEntityType(Enum):
    """Entity types that can be governed by a workflow"""
    CASE = "CASE"
    INVESTIGATION = "INVESTIGATION"
    DISCLOSURE = "DISCLOSURE"
    POLICY = "POLICY"
    CAMPAIGN = "CAMPAIGN"


class InstanceStatus(Enum):
    """Status of a workflow instance"""
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceStatus.COMPLETED, InstanceStatus.CANCELLED)


class SlaStatus(Enum):
    """SLA tracking status"""
    ON_TRACK = "ON_TRACK"
    WARNING = "WARNING"
    OVERDUE = "OVERDUE"


class StepStatus(Enum):
    """Status recorded for a stage once the instance leaves it"""
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class GateType(Enum):
    """Gate variants"""
    REQUIRED_FIELDS = "required_fields"
    APPROVAL = "approval"
    CONDITION = "condition"
    TIME = "time"


CONDITION_OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "in", "not_in", "contains", "exists")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# Gates

class Gate(ABC):
    """Base class for gate variants"""
    gate_type: ClassVar[Optional[GateType]] = None
    error_message: Optional[str]

    @abstractmethod
    def config(self) -> Dict[str, Any]:
        """Variant-specific settings as stored in the template"""
        pass

    def validate(self) -> List[str]:
        """Return configuration problems, empty when the gate is usable"""
        return []

    @property
    def type_name(self) -> str:
        return self.gate_type.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type_name,
            'config': self.config(),
            'error_message': self.error_message,
        }


@dataclass
class RequiredFieldsGate(Gate):
    """Every listed field path must be present and non-empty on the entity"""
    fields: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    gate_type: ClassVar[GateType] = GateType.REQUIRED_FIELDS

    def config(self) -> Dict[str, Any]:
        return {'fields': list(self.fields)}

    def validate(self) -> List[str]:
        if not self.fields:
            return ["required_fields gate must list at least one field"]
        return []


@dataclass
class ApprovalGate(Gate):
    """An approval by the given role must exist for the current stage"""
    approver_role: str = ""
    error_message: Optional[str] = None
    gate_type: ClassVar[GateType] = GateType.APPROVAL

    def config(self) -> Dict[str, Any]:
        return {'approver_role': self.approver_role}

    def validate(self) -> List[str]:
        if not self.approver_role:
            return ["approval gate requires approver_role"]
        return []


@dataclass
class ConditionGate(Gate):
    """``field operator value`` evaluated against the entity snapshot"""
    field: str = ""
    operator: str = "eq"
    value: Any = None
    error_message: Optional[str] = None
    gate_type: ClassVar[GateType] = GateType.CONDITION

    def config(self) -> Dict[str, Any]:
        return {'field': self.field, 'operator': self.operator, 'value': self.value}

    def validate(self) -> List[str]:
        problems = []
        if not self.field:
            problems.append("condition gate requires field")
        if self.operator not in CONDITION_OPERATORS:
            problems.append(f"condition gate has unknown operator '{self.operator}'")
        return problems


@dataclass
class TimeGate(Gate):
    """Minimum time spent in the current stage"""
    min_days: float = 0
    min_hours: float = 0
    error_message: Optional[str] = None
    gate_type: ClassVar[GateType] = GateType.TIME

    def config(self) -> Dict[str, Any]:
        return {'min_days': self.min_days, 'min_hours': self.min_hours}

    def validate(self) -> List[str]:
        if self.min_days < 0 or self.min_hours < 0:
            return ["time gate durations must not be negative"]
        if not self.min_days and not self.min_hours:
            return ["time gate requires min_days or min_hours"]
        return []


@dataclass
class UnrecognizedGate(Gate):
    """Stored gate whose type this version does not know; always fails"""
    type_label: str = ""
    raw_config: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None

    @property
    def type_name(self) -> str:
        return self.type_label

    def config(self) -> Dict[str, Any]:
        return dict(self.raw_config)

    def validate(self) -> List[str]:
        return [f"unknown gate type '{self.type_label}'"]


def gate_from_dict(data: Dict[str, Any]) -> Gate:
    """Build the gate variant named by ``data['type']``"""
    gate_type = data.get('type', '')
    config = data.get('config') or {}
    error_message = data.get('error_message')

    if gate_type == GateType.REQUIRED_FIELDS.value:
        return RequiredFieldsGate(fields=list(config.get('fields', [])), error_message=error_message)
    if gate_type == GateType.APPROVAL.value:
        return ApprovalGate(approver_role=config.get('approver_role', ''), error_message=error_message)
    if gate_type == GateType.CONDITION.value:
        return ConditionGate(
            field=config.get('field', ''),
            operator=config.get('operator', 'eq'),
            value=config.get('value'),
            error_message=error_message
        )
    if gate_type == GateType.TIME.value:
        return TimeGate(
            min_days=config.get('min_days', 0) or 0,
            min_hours=config.get('min_hours', 0) or 0,
            error_message=error_message
        )
    return UnrecognizedGate(type_label=str(gate_type), raw_config=dict(config), error_message=error_message)


# Template parts

@dataclass
class StageDisplay:
    """UI display configuration for a stage"""
    color: Optional[str] = None
    icon: Optional[str] = None
    sort_order: Optional[int] = None


@dataclass
class Stage:
    """A stage in the workflow graph"""
    id: str
    name: str
    description: Optional[str] = None
    sla_days: Optional[float] = None
    gates: List[Gate] = field(default_factory=list)
    is_terminal: bool = False
    display: Optional[StageDisplay] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'sla_days': self.sla_days,
            'gates': [gate.to_dict() for gate in self.gates],
            'is_terminal': self.is_terminal,
            'display': vars(self.display).copy() if self.display else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Stage':
        display = data.get('display')
        return cls(
            id=data['id'],
            name=data.get('name', data['id']),
            description=data.get('description'),
            sla_days=data.get('sla_days'),
            gates=[gate_from_dict(g) for g in data.get('gates') or []],
            is_terminal=data.get('is_terminal', False),
            display=StageDisplay(**display) if display else None,
        )


@dataclass
class Transition:
    """A directed edge between two stages; ``from_stage='*'`` matches any stage"""
    from_stage: str
    to_stage: str
    label: Optional[str] = None
    allowed_roles: List[str] = field(default_factory=list)
    requires_reason: bool = False
    conditions: List[Gate] = field(default_factory=list)

    def leaves(self, stage_id: str) -> bool:
        return self.from_stage == stage_id or self.from_stage == ANY_STAGE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'from_stage': self.from_stage,
            'to_stage': self.to_stage,
            'label': self.label,
            'allowed_roles': list(self.allowed_roles),
            'requires_reason': self.requires_reason,
            'conditions': [gate.to_dict() for gate in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transition':
        return cls(
            from_stage=data['from_stage'],
            to_stage=data['to_stage'],
            label=data.get('label'),
            allowed_roles=list(data.get('allowed_roles') or []),
            requires_reason=data.get('requires_reason', False),
            conditions=[gate_from_dict(g) for g in data.get('conditions') or []],
        )


@dataclass
class SlaConfig:
    """Per-template SLA thresholds; None falls back to configuration"""
    warning_threshold_percent: Optional[float] = None
    critical_threshold_hours: Optional[float] = None


@dataclass
class TemplateDefinition:
    """Input for creating a template"""
    name: str
    entity_type: WorkflowEntityType
    stages: List[Stage]
    transitions: List[Transition]
    initial_stage: str
    description: Optional[str] = None
    default_sla_days: Optional[float] = None
    sla_config: Optional[SlaConfig] = None
    tags: List[str] = field(default_factory=list)
    is_default: bool = False
    is_active: bool = False


@dataclass
class TemplatePatch:
    """Partial template update; None leaves a field unchanged"""
    name: Optional[str] = None
    description: Optional[str] = None
    stages: Optional[List[Stage]] = None
    transitions: Optional[List[Transition]] = None
    initial_stage: Optional[str] = None
    default_sla_days: Optional[float] = None
    sla_config: Optional[SlaConfig] = None
    tags: Optional[List[str]] = None

    def is_empty(self) -> bool:
        return all(value is None for value in vars(self).values())


@dataclass
class WorkflowTemplate(StorageRecord):
    """Versioned workflow definition"""
    organization_id: str
    name: str
    entity_type: WorkflowEntityType
    stages: List[Stage]
    transitions: List[Transition]
    initial_stage: str
    description: Optional[str] = None
    version: int = 1
    is_active: bool = False
    is_default: bool = False
    default_sla_days: Optional[float] = None
    sla_config: SlaConfig = field(default_factory=SlaConfig)
    source_template_id: Optional[str] = None
    family_id: str = ""
    tags: List[str] = field(default_factory=list)
    created_by: Optional[str] = None
    revision: int = 0

    def stage_ids(self) -> List[str]:
        return [stage.id for stage in self.stages]

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None

    def edges_from(self, stage_id: str) -> List[Transition]:
        return [t for t in self.transitions if t.leaves(stage_id)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'organization_id': self.organization_id,
            'name': self.name,
            'entity_type': self.entity_type.value,
            'stages': [stage.to_dict() for stage in self.stages],
            'transitions': [t.to_dict() for t in self.transitions],
            'initial_stage': self.initial_stage,
            'description': self.description,
            'version': self.version,
            'is_active': self.is_active,
            'is_default': self.is_default,
            'default_sla_days': self.default_sla_days,
            'sla_config': vars(self.sla_config).copy(),
            'source_template_id': self.source_template_id,
            'family_id': self.family_id,
            'tags': list(self.tags),
            'created_by': self.created_by,
            'revision': self.revision,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowTemplate':
        return cls(
            id=data['id'],
            created_at=_dt(data['created_at']),
            updated_at=_dt(data['updated_at']),
            organization_id=data['organization_id'],
            name=data['name'],
            entity_type=WorkflowEntityType(data['entity_type']),
            stages=[Stage.from_dict(s) for s in data.get('stages', [])],
            transitions=[Transition.from_dict(t) for t in data.get('transitions', [])],
            initial_stage=data['initial_stage'],
            description=data.get('description'),
            version=data.get('version', 1),
            is_active=data.get('is_active', False),
            is_default=data.get('is_default', False),
            default_sla_days=data.get('default_sla_days'),
            sla_config=SlaConfig(**(data.get('sla_config') or {})),
            source_template_id=data.get('source_template_id'),
            family_id=data.get('family_id') or data['id'],
            tags=list(data.get('tags') or []),
            created_by=data.get('created_by'),
            revision=data.get('revision', 0),
        )


# Instances

@dataclass
class StepState:
    """Outcome recorded for a stage when the instance left it"""
    status: StepStatus
    completed_at: datetime
    completed_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'completed_at': self.completed_at.isoformat(),
            'completed_by': self.completed_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepState':
        return cls(
            status=StepStatus(data['status']),
            completed_at=_dt(data['completed_at']),
            completed_by=data.get('completed_by'),
        )


@dataclass
class TransitionRecord:
    """One entry of an instance's append-only movement history"""
    from_stage: str
    to_stage: str
    transitioned_at: datetime
    actor_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'from_stage': self.from_stage,
            'to_stage': self.to_stage,
            'transitioned_at': self.transitioned_at.isoformat(),
            'actor_id': self.actor_id,
            'reason': self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransitionRecord':
        data = dict(data)
        data['transitioned_at'] = _dt(data['transitioned_at'])
        return cls(**data)


@dataclass
class WorkflowInstance(StorageRecord):
    """A running (or finished) workflow pinned to one template version"""
    organization_id: str
    template_id: str
    template_version: int
    entity_type: WorkflowEntityType
    entity_id: str
    current_stage: str
    status: InstanceStatus
    stage_entered_at: datetime
    step_states: Dict[str, StepState] = field(default_factory=dict)
    history: List[TransitionRecord] = field(default_factory=list)
    due_date: Optional[datetime] = None
    sla_started_at: Optional[datetime] = None
    sla_status: SlaStatus = SlaStatus.ON_TRACK
    sla_breached_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    outcome: Optional[str] = None
    started_by: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    revision: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'organization_id': self.organization_id,
            'template_id': self.template_id,
            'template_version': self.template_version,
            'entity_type': self.entity_type.value,
            'entity_id': self.entity_id,
            'current_stage': self.current_stage,
            'status': self.status.value,
            'stage_entered_at': self.stage_entered_at.isoformat(),
            'step_states': {k: v.to_dict() for k, v in self.step_states.items()},
            'history': [record.to_dict() for record in self.history],
            'due_date': _iso(self.due_date),
            'sla_started_at': _iso(self.sla_started_at),
            'sla_status': self.sla_status.value,
            'sla_breached_at': _iso(self.sla_breached_at),
            'paused_at': _iso(self.paused_at),
            'completed_at': _iso(self.completed_at),
            'cancelled_at': _iso(self.cancelled_at),
            'outcome': self.outcome,
            'started_by': self.started_by,
            'context': self.context,
            'revision': self.revision,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowInstance':
        return cls(
            id=data['id'],
            created_at=_dt(data['created_at']),
            updated_at=_dt(data['updated_at']),
            organization_id=data['organization_id'],
            template_id=data['template_id'],
            template_version=data['template_version'],
            entity_type=WorkflowEntityType(data['entity_type']),
            entity_id=data['entity_id'],
            current_stage=data['current_stage'],
            status=InstanceStatus(data['status']),
            stage_entered_at=_dt(data['stage_entered_at']),
            step_states={k: StepState.from_dict(v) for k, v in (data.get('step_states') or {}).items()},
            history=[TransitionRecord.from_dict(r) for r in data.get('history') or []],
            due_date=_dt(data.get('due_date')),
            sla_started_at=_dt(data.get('sla_started_at')),
            sla_status=SlaStatus(data.get('sla_status', SlaStatus.ON_TRACK.value)),
            sla_breached_at=_dt(data.get('sla_breached_at')),
            paused_at=_dt(data.get('paused_at')),
            completed_at=_dt(data.get('completed_at')),
            cancelled_at=_dt(data.get('cancelled_at')),
            outcome=data.get('outcome'),
            started_by=data.get('started_by'),
            context=data.get('context') or {},
            revision=data.get('revision', 0),
        )
