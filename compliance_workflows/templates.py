"""
Template Store Module

Persists workflow templates and enforces their structural integrity:
unique stage ids, a valid initial stage, transition endpoints that name real
stages, known gate types, and a unique name among the organization's active
templates for an entity type.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any, Union

from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, EventPayload, WorkflowEvent
from .exceptions import (
    ConflictError, InvalidStateError, NotFoundError, TemplateInUseError, ValidationError
)
from .locks import KeyedLocks
from .logging_config import get_logger, log_action
from .models import (
    ANY_STAGE, INSTANCES_TABLE, TEMPLATES_TABLE, InstanceStatus, SlaConfig, Stage,
    TemplateDefinition, Transition, WorkflowEntityType, WorkflowTemplate
)
from .principal import Principal, SYSTEM_PRINCIPAL
from .storage import StorageInterface


IN_FLIGHT_STATUSES = (InstanceStatus.ACTIVE, InstanceStatus.PAUSED)


def coerce_entity_type(value: Union[str, WorkflowEntityType]) -> WorkflowEntityType:
    """Convert a string to WorkflowEntityType, raising ValidationError when unknown"""
    if isinstance(value, WorkflowEntityType):
        return value
    try:
        return WorkflowEntityType(str(value).upper())
    except ValueError:
        raise ValidationError(f"Unknown entity type '{value}'")


def validate_structure(stages: List[Stage], transitions: List[Transition],
                       initial_stage: str,
                       default_sla_days: Optional[float] = None) -> List[str]:
    """
    Validate a template graph.

    Raises ValidationError listing every problem found. Returns warnings
    that do not block saving (for example a graph with no terminal stage).
    """
    errors = []
    warnings = []

    if not stages:
        errors.append("Template must have at least one stage")

    stage_ids = set()
    for stage in stages:
        if not stage.id:
            errors.append("Stage id must not be empty")
            continue
        if stage.id == ANY_STAGE:
            errors.append(f"'{ANY_STAGE}' is reserved and cannot be a stage id")
        if stage.id in stage_ids:
            errors.append(f"Duplicate stage id '{stage.id}'")
        stage_ids.add(stage.id)
        if stage.sla_days is not None and stage.sla_days < 0:
            errors.append(f"Stage '{stage.id}' has negative sla_days")
        for gate in stage.gates:
            errors.extend(f"Stage '{stage.id}': {problem}" for problem in gate.validate())

    if stages and initial_stage not in stage_ids:
        errors.append(f"Initial stage '{initial_stage}' does not exist")

    for transition in transitions:
        edge = f"{transition.from_stage} -> {transition.to_stage}"
        if transition.from_stage != ANY_STAGE and transition.from_stage not in stage_ids:
            errors.append(f"Transition {edge}: source stage '{transition.from_stage}' does not exist")
        if transition.to_stage not in stage_ids:
            errors.append(f"Transition {edge}: target stage '{transition.to_stage}' does not exist")
        for gate in transition.conditions:
            errors.extend(f"Transition {edge}: {problem}" for problem in gate.validate())

    if default_sla_days is not None and default_sla_days < 0:
        errors.append("default_sla_days must not be negative")

    if errors:
        raise ValidationError(f"Invalid workflow template: {'; '.join(errors)}", errors)

    if stages and not any(stage.is_terminal for stage in stages):
        warnings.append("No terminal stage defined; instances can only finish through complete()")

    return warnings


class TemplateStore:
    """
    Organization-scoped persistence for workflow templates.

    Every write goes through compare-and-swap on the row's revision; a lost
    race raises ConflictError.
    """

    def __init__(self, storage: StorageInterface, audit_manager: Optional[AuditTrail] = None,
                 events: Optional[EventDispatcher] = None, locks: Optional[KeyedLocks] = None):
        self.storage = storage
        self.audit = audit_manager
        self.events = events
        self.locks = locks or KeyedLocks()
        self.table_name = TEMPLATES_TABLE
        self.logger = get_logger("templates")

    # Reads

    def find(self, organization_id: str, template_id: str) -> Optional[WorkflowTemplate]:
        """Get a template, or None when it does not exist in the organization"""
        data = self.storage.load(self.table_name, template_id)
        if not data or data.get('organization_id') != organization_id:
            return None
        return WorkflowTemplate.from_dict(data)

    def get(self, organization_id: str, template_id: str) -> WorkflowTemplate:
        """Get a template, raising NotFoundError"""
        template = self.find(organization_id, template_id)
        if template is None:
            raise NotFoundError("Workflow template", template_id)
        return template

    def list(self, organization_id: str,
             entity_type: Optional[Union[str, WorkflowEntityType]] = None,
             is_active: Optional[bool] = None) -> List[WorkflowTemplate]:
        """List templates ordered by name then version descending"""
        filters: Dict[str, Any] = {'organization_id': organization_id}
        if entity_type is not None:
            filters['entity_type'] = coerce_entity_type(entity_type).value
        if is_active is not None:
            filters['is_active'] = is_active
        templates = [WorkflowTemplate.from_dict(row) for row in self.storage.find(self.table_name, filters)]
        templates.sort(key=lambda t: (t.name, -t.version))
        return templates

    def find_default(self, organization_id: str,
                     entity_type: Union[str, WorkflowEntityType]) -> Optional[WorkflowTemplate]:
        """Get the active default template for an entity type"""
        candidates = self.storage.find(self.table_name, {
            'organization_id': organization_id,
            'entity_type': coerce_entity_type(entity_type).value,
            'is_default': True,
            'is_active': True,
        })
        if not candidates:
            return None
        if len(candidates) > 1:
            self.logger.warning(
                f"Organization {organization_id} has {len(candidates)} active defaults "
                f"for {entity_type}; using the newest version"
            )
        return max((WorkflowTemplate.from_dict(row) for row in candidates), key=lambda t: t.version)

    def find_versions(self, organization_id: str, name: str) -> List[WorkflowTemplate]:
        """All templates sharing ``name``, newest version first"""
        rows = self.storage.find(self.table_name, {'organization_id': organization_id, 'name': name})
        return sorted((WorkflowTemplate.from_dict(row) for row in rows), key=lambda t: -t.version)

    def find_lineage(self, organization_id: str, template_id: str) -> List[WorkflowTemplate]:
        """All versions in the template's family, newest version first"""
        template = self.get(organization_id, template_id)
        rows = self.storage.find(self.table_name, {
            'organization_id': organization_id,
            'family_id': template.family_id,
        })
        return sorted((WorkflowTemplate.from_dict(row) for row in rows), key=lambda t: -t.version)

    def is_superseded(self, template: WorkflowTemplate) -> bool:
        """True when a newer version exists in the template's family"""
        return any(t.version > template.version
                   for t in self.find_lineage(template.organization_id, template.id))

    def count_instances(self, template_id: str,
                        statuses: Optional[tuple] = None) -> int:
        """Count instances pinned to a template row, optionally by status"""
        if statuses is None:
            return len(self.storage.find(INSTANCES_TABLE, {'template_id': template_id}))
        return sum(
            len(self.storage.find(INSTANCES_TABLE, {'template_id': template_id, 'status': status.value}))
            for status in statuses
        )

    def count_in_flight(self, template_id: str) -> int:
        """Count ACTIVE and PAUSED instances pinned to a template row"""
        return self.count_instances(template_id, IN_FLIGHT_STATUSES)

    # Writes

    def create(self, organization_id: str, definition: TemplateDefinition,
               actor: Principal = SYSTEM_PRINCIPAL) -> WorkflowTemplate:
        """
        Create a template from a definition.

        Templates are drafts unless the definition marks them active. A draft
        marked as default takes the default over from the live template only
        when it is published.
        """
        entity_type = coerce_entity_type(definition.entity_type)
        name = (definition.name or "").strip()
        if not name:
            raise ValidationError("Template name is required")
        warnings = validate_structure(
            definition.stages, definition.transitions, definition.initial_stage,
            definition.default_sla_days
        )

        now = datetime.now(timezone.utc)
        template_id = str(uuid.uuid4())
        template = WorkflowTemplate(
            id=template_id,
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            name=name,
            entity_type=entity_type,
            stages=list(definition.stages),
            transitions=list(definition.transitions),
            initial_stage=definition.initial_stage,
            description=definition.description,
            version=1,
            is_active=definition.is_active,
            is_default=definition.is_default,
            default_sla_days=definition.default_sla_days,
            sla_config=definition.sla_config or SlaConfig(),
            family_id=template_id,
            tags=list(definition.tags),
            created_by=actor.user_id,
        )

        with self.locks.hold(self._default_key(organization_id, entity_type)):
            if template.is_active:
                self.ensure_name_available(organization_id, entity_type, name)
            with self.storage.atomic():
                if template.is_default and template.is_active:
                    self._clear_defaults(organization_id, entity_type, keep_id=template.id)
                self.write(template, None)

        for warning in warnings:
            self.logger.warning(f"Template {template.id} ({name}): {warning}")
        self.record_change(AuditEventType.TEMPLATE_CREATED, WorkflowEvent.TEMPLATE_CREATED, template, actor,
                           {'name': name, 'version': 1, 'entity_type': entity_type.value})
        return template

    def clone(self, organization_id: str, template_id: str,
              actor: Principal = SYSTEM_PRINCIPAL) -> WorkflowTemplate:
        """Copy a template into a new draft family"""
        original = self.get(organization_id, template_id)
        now = datetime.now(timezone.utc)
        clone_id = str(uuid.uuid4())
        copy = WorkflowTemplate.from_dict(original.to_dict())
        copy.id = clone_id
        copy.created_at = now
        copy.updated_at = now
        copy.name = f"{original.name} (Copy)"
        copy.version = 1
        copy.is_active = False
        copy.is_default = False
        copy.source_template_id = original.id
        copy.family_id = clone_id
        copy.created_by = actor.user_id
        self.write(copy, None)

        self.record_change(AuditEventType.TEMPLATE_CLONED, WorkflowEvent.TEMPLATE_CREATED, copy, actor,
                           {'source_template_id': original.id, 'name': copy.name})
        return copy

    def publish(self, organization_id: str, template_id: str,
                actor: Principal = SYSTEM_PRINCIPAL) -> WorkflowTemplate:
        """Make a template available for new instances"""
        template = self.get(organization_id, template_id)
        if template.is_active:
            return template
        with self.locks.hold(f"template:{template_id}",
                             self._default_key(organization_id, template.entity_type)):
            template = self.get(organization_id, template_id)
            if self.is_superseded(template):
                raise InvalidStateError(
                    f"Template {template_id} version {template.version} has been superseded"
                )
            self.ensure_name_available(organization_id, template.entity_type, template.name,
                                       exclude_family=template.family_id)
            template.is_active = True
            with self.storage.atomic():
                if template.is_default:
                    self._clear_defaults(organization_id, template.entity_type, keep_id=template.id)
                self.write(template, template.revision)

        self.record_change(AuditEventType.TEMPLATE_PUBLISHED, WorkflowEvent.TEMPLATE_UPDATED, template, actor,
                           {'is_active': True})
        return template

    def deactivate(self, organization_id: str, template_id: str,
                   actor: Principal = SYSTEM_PRINCIPAL) -> WorkflowTemplate:
        """Stop a template from being used for new instances"""
        with self.locks.hold(f"template:{template_id}"):
            template = self.get(organization_id, template_id)
            if not template.is_active and not template.is_default:
                return template
            template.is_active = False
            template.is_default = False
            self.write(template, template.revision)

        self.record_change(AuditEventType.TEMPLATE_DEACTIVATED, WorkflowEvent.TEMPLATE_UPDATED, template, actor,
                           {'is_active': False})
        return template

    def set_default(self, organization_id: str, template_id: str,
                    actor: Principal = SYSTEM_PRINCIPAL) -> WorkflowTemplate:
        """Make an active template the default for its entity type"""
        template = self.get(organization_id, template_id)
        with self.locks.hold(f"template:{template_id}",
                             self._default_key(organization_id, template.entity_type)):
            template = self.get(organization_id, template_id)
            if not template.is_active:
                raise InvalidStateError(f"Template {template_id} must be active to become the default")
            if template.is_default:
                return template
            with self.storage.atomic():
                self._clear_defaults(organization_id, template.entity_type, keep_id=template.id)
                template.is_default = True
                self.write(template, template.revision)

        self.record_change(AuditEventType.TEMPLATE_UPDATED, WorkflowEvent.TEMPLATE_UPDATED, template, actor,
                           {'is_default': True})
        return template

    def delete(self, organization_id: str, template_id: str,
               actor: Principal = SYSTEM_PRINCIPAL) -> None:
        """Delete a template no instance references"""
        with self.locks.hold(f"template:{template_id}"):
            template = self.get(organization_id, template_id)
            in_use = self.count_instances(template_id)
            if in_use:
                raise TemplateInUseError(
                    f"Template {template_id} is referenced by {in_use} workflow instance(s)"
                )
            self.storage.delete(self.table_name, template_id)

        if self.audit:
            self.audit.log_event(
                AuditEventType.TEMPLATE_DELETED, 'workflow_template', template_id,
                {'name': template.name, 'version': template.version},
                actor.user_id, organization_id
            )
        log_action(self.logger, "info", f"Deleted workflow template {template_id}",
                   organization_id=organization_id, user_id=actor.user_id,
                   action="delete", resource="workflow_template")

    # Helpers shared with the versioning coordinator

    def write(self, template: WorkflowTemplate, expected_revision: Optional[int]) -> WorkflowTemplate:
        """
        Persist a template with compare-and-swap.

        ``expected_revision=None`` inserts a new row. Bumps ``revision`` and
        ``updated_at`` on success; raises ConflictError when the stored
        revision moved on.
        """
        previous_revision = template.revision
        previous_updated = template.updated_at
        template.revision = (expected_revision or 0) + 1
        if expected_revision is not None:
            template.updated_at = datetime.now(timezone.utc)
        if not self.storage.compare_and_swap(self.table_name, template.id, template.to_dict(),
                                             expected_revision):
            template.revision = previous_revision
            template.updated_at = previous_updated
            raise ConflictError(f"Workflow template {template.id} was modified concurrently")
        return template

    def ensure_name_available(self, organization_id: str, entity_type: WorkflowEntityType,
                              name: str, exclude_family: Optional[str] = None) -> None:
        """Raise ValidationError if an active template of this entity type already uses ``name``"""
        rows = self.storage.find(self.table_name, {
            'organization_id': organization_id,
            'entity_type': entity_type.value,
            'name': name,
            'is_active': True,
        })
        clashes = [row for row in rows if row.get('family_id', row['id']) != exclude_family]
        if clashes:
            raise ValidationError(
                f"An active {entity_type.value} template named '{name}' already exists"
            )

    @staticmethod
    def _default_key(organization_id: str, entity_type: WorkflowEntityType) -> str:
        return f"template-default:{organization_id}:{entity_type.value}"

    def _clear_defaults(self, organization_id: str, entity_type: WorkflowEntityType,
                        keep_id: Optional[str] = None) -> None:
        rows = self.storage.find(self.table_name, {
            'organization_id': organization_id,
            'entity_type': entity_type.value,
            'is_default': True,
        })
        for row in rows:
            if row['id'] == keep_id:
                continue
            other = WorkflowTemplate.from_dict(row)
            other.is_default = False
            self.write(other, other.revision)

    def record_change(self, audit_type: AuditEventType, event_type: WorkflowEvent,
                      template: WorkflowTemplate, actor: Principal, data: Dict[str, Any]) -> None:
        """Audit, log and publish a template change"""
        if self.audit:
            self.audit.log_event(audit_type, 'workflow_template', template.id, data,
                                 actor.user_id, template.organization_id)
        log_action(self.logger, "info", f"{audit_type.value}: {template.name} v{template.version}",
                   organization_id=template.organization_id, user_id=actor.user_id,
                   action=audit_type.value, resource=f"workflow_template:{template.id}")
        if self.events:
            payload = dict(data)
            payload.update({'template_id': template.id, 'version': template.version})
            self.events.publish(EventPayload(
                event_type=event_type,
                organization_id=template.organization_id,
                entity_type='workflow_template',
                entity_id=template.id,
                data=payload,
                actor_id=actor.user_id
            ))
