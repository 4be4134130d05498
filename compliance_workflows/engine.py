"""
Workflow Engine Module

Instance lifecycle manager. Starts workflows against a pinned template
version, moves instances between stages through the transition validator
and gate evaluator, and handles pause, resume, complete and cancel.

Every mutation is serialized per instance with an in-process lock and
persisted with compare-and-swap on the instance's revision; a lost race is
retried a bounded number of times with fresh state.
"""

import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Any, Tuple, TypeVar, Union

from .approvals import ApprovalRecord, ApprovalStore
from .audit import AuditTrail, AuditEventType
from .config import WorkflowSettings, get_config
from .entities import EntitySnapshotProvider, StoredEntitySnapshots
from .events import EventDispatcher, EventPayload, WorkflowEvent
from .exceptions import (
    ConflictError, DuplicateInstanceError, GateFailedError, InvalidStateError,
    NotFoundError, PermissionDeniedError, ValidationError
)
from .gates import GateContext, GateEvaluator
from .locks import KeyedLocks
from .logging_config import get_logger, log_action
from .models import (
    INSTANCES_TABLE, InstanceStatus, SlaStatus, StepState, StepStatus, TemplatePatch,
    Transition, TransitionRecord, WorkflowEntityType, WorkflowInstance, WorkflowTemplate
)
from .principal import Principal, SYSTEM_PRINCIPAL
from .sla import SlaTracker, due_date_for_stage, is_escalation
from .storage import StorageInterface
from .templates import TemplateStore, coerce_entity_type
from .transitions import TransitionValidator
from .versioning import VersioningCoordinator


T = TypeVar("T")

CLAIMS_TABLE = "workflow_entity_claims"


class WorkflowEngine:
    """
    Workflow instance lifecycle manager.

    Wires the template store, versioning coordinator, transition validator,
    gate evaluator and SLA tracker around one storage backend.
    """

    def __init__(self, storage: StorageInterface, audit_manager: Optional[AuditTrail] = None,
                 events: Optional[EventDispatcher] = None,
                 entity_snapshots: Optional[EntitySnapshotProvider] = None,
                 settings: Optional[WorkflowSettings] = None):
        self.storage = storage
        self.settings = settings or get_config()
        self.audit = audit_manager if self.settings.enable_audit_logging else None
        self.events = events or EventDispatcher()
        self.locks = KeyedLocks()
        self.templates = TemplateStore(storage, self.audit, self.events, self.locks)
        self.versioning = VersioningCoordinator(self.templates)
        self.validator = TransitionValidator()
        self.gates = GateEvaluator()
        self.approvals = ApprovalStore(storage)
        self.entities = entity_snapshots or StoredEntitySnapshots(storage)
        self.sla = SlaTracker(self.settings)
        self.table_name = INSTANCES_TABLE
        self.logger = get_logger("engine")

    # Templates

    def update_template(self, organization_id: str, template_id: str, patch: TemplatePatch,
                        actor: Principal = SYSTEM_PRINCIPAL) -> WorkflowTemplate:
        """Edit a template, forking a new version when instances are in flight"""
        return self._with_retry(
            "update_template",
            lambda: self.versioning.update(organization_id, template_id, patch, actor)
        )

    # Instance reads

    def _find(self, organization_id: str, instance_id: str) -> Optional[WorkflowInstance]:
        data = self.storage.load(self.table_name, instance_id)
        if not data or data.get('organization_id') != organization_id:
            return None
        return WorkflowInstance.from_dict(data)

    def _load(self, organization_id: str, instance_id: str) -> WorkflowInstance:
        instance = self._find(organization_id, instance_id)
        if instance is None:
            raise NotFoundError("Workflow instance", instance_id)
        return instance

    def _pinned_template(self, instance: WorkflowInstance) -> WorkflowTemplate:
        return self.templates.get(instance.organization_id, instance.template_id)

    def _with_current_sla(self, instance: WorkflowInstance,
                          template: Optional[WorkflowTemplate] = None) -> WorkflowInstance:
        if instance.is_terminal:
            return instance
        if template is None:
            template = self.templates.find(instance.organization_id, instance.template_id)
        instance.sla_status = self.sla.calculate_for_instance(instance, template).sla_status
        return instance

    def get_instance(self, organization_id: str, instance_id: str) -> WorkflowInstance:
        """Get a workflow instance with its SLA status evaluated now"""
        return self._with_current_sla(self._load(organization_id, instance_id))

    def get_instance_by_entity(self, organization_id: str,
                               entity_type: Union[str, WorkflowEntityType],
                               entity_id: str) -> Optional[WorkflowInstance]:
        """Get the workflow instance governing an entity, if any"""
        rows = self.storage.find(self.table_name, {
            'organization_id': organization_id,
            'entity_type': coerce_entity_type(entity_type).value,
            'entity_id': entity_id,
        })
        if not rows:
            return None
        return self._with_current_sla(WorkflowInstance.from_dict(rows[0]))

    def list_instances(self, organization_id: str,
                       status: Optional[InstanceStatus] = None,
                       entity_type: Optional[Union[str, WorkflowEntityType]] = None,
                       template_id: Optional[str] = None,
                       sla_status: Optional[SlaStatus] = None) -> List[WorkflowInstance]:
        """List instances, newest first"""
        filters: Dict[str, Any] = {'organization_id': organization_id}
        if status is not None:
            filters['status'] = status.value
        if entity_type is not None:
            filters['entity_type'] = coerce_entity_type(entity_type).value
        if template_id is not None:
            filters['template_id'] = template_id

        templates: Dict[str, Optional[WorkflowTemplate]] = {}
        instances = []
        for row in self.storage.find(self.table_name, filters):
            instance = WorkflowInstance.from_dict(row)
            if instance.template_id not in templates:
                templates[instance.template_id] = self.templates.find(organization_id, instance.template_id)
            self._with_current_sla(instance, templates[instance.template_id])
            if sla_status is None or instance.sla_status == sla_status:
                instances.append(instance)

        instances.sort(key=lambda i: i.created_at, reverse=True)
        return instances

    def get_template_for_instance(self, organization_id: str, instance_id: str) -> WorkflowTemplate:
        """Get the exact template version an instance is pinned to"""
        return self._pinned_template(self._load(organization_id, instance_id))

    def get_allowed_transitions(self, organization_id: str, instance_id: str,
                                actor: Principal = SYSTEM_PRINCIPAL) -> List[Transition]:
        """Edges the actor may take from the current stage; empty unless ACTIVE"""
        instance = self._load(organization_id, instance_id)
        if instance.status != InstanceStatus.ACTIVE:
            return []
        return self.validator.allowed_edges(self._pinned_template(instance), instance, actor)

    def get_history(self, organization_id: str, instance_id: str) -> List[TransitionRecord]:
        """Get the transition history of an instance"""
        return list(self._load(organization_id, instance_id).history)

    def list_approvals(self, organization_id: str, instance_id: str) -> List[ApprovalRecord]:
        """List approvals recorded on an instance"""
        self._load(organization_id, instance_id)
        return self.approvals.list_for_instance(organization_id, instance_id)

    # Start

    def start_workflow(self, organization_id: str, entity_type: Union[str, WorkflowEntityType],
                       entity_id: str, template_id: Optional[str] = None,
                       actor: Principal = SYSTEM_PRINCIPAL,
                       context: Optional[Dict[str, Any]] = None) -> WorkflowInstance:
        """
        Start a workflow for an entity.

        Uses ``template_id`` when given, otherwise the organization's active
        default template for the entity type. The instance records the
        template's id and version and never follows later edits.

        Raises:
            DuplicateInstanceError: the entity already has an instance
            NotFoundError: no such template, or no default for the entity type
            InvalidStateError: the template is not active
        """
        entity_type = coerce_entity_type(entity_type)
        if not entity_id:
            raise ValidationError("entity_id is required")
        return self._with_retry(
            "start_workflow",
            lambda: self._start(organization_id, entity_type, entity_id, template_id, actor, context or {})
        )

    def _resolve_template(self, organization_id: str, entity_type: WorkflowEntityType,
                          template_id: Optional[str]) -> WorkflowTemplate:
        if template_id:
            template = self.templates.get(organization_id, template_id)
            if not template.is_active:
                raise InvalidStateError(f"Workflow template {template_id} is not active")
            if template.entity_type != entity_type:
                raise ValidationError(
                    f"Template {template_id} is for {template.entity_type.value}, not {entity_type.value}"
                )
            return template
        template = self.templates.find_default(organization_id, entity_type)
        if template is None:
            raise NotFoundError("Default workflow template for", entity_type.value)
        return template

    def _start(self, organization_id: str, entity_type: WorkflowEntityType, entity_id: str,
               template_id: Optional[str], actor: Principal,
               context: Dict[str, Any]) -> WorkflowInstance:
        resolved = self._resolve_template(organization_id, entity_type, template_id)
        claim_key = f"{entity_type.value}:{entity_id}"

        with self.locks.hold(f"template:{resolved.id}", f"entity:{claim_key}"):
            # A fork may have retired the template while we waited for the lock
            template = self.templates.get(organization_id, resolved.id)
            if not template.is_active:
                raise ConflictError(f"Workflow template {template.id} changed while starting")

            if self.storage.exists(CLAIMS_TABLE, claim_key) or self.storage.find(
                    self.table_name, {'entity_type': entity_type.value, 'entity_id': entity_id}):
                raise DuplicateInstanceError(entity_type.value, entity_id)

            now = datetime.now(timezone.utc)
            initial = template.get_stage(template.initial_stage)
            instance = WorkflowInstance(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                organization_id=organization_id,
                template_id=template.id,
                template_version=template.version,
                entity_type=entity_type,
                entity_id=entity_id,
                current_stage=template.initial_stage,
                status=InstanceStatus.ACTIVE,
                stage_entered_at=now,
                due_date=due_date_for_stage(template, initial, now, self.settings.default_sla_days),
                sla_started_at=now,
                started_by=actor.user_id,
                context=dict(context),
            )
            instance.sla_status = self.sla.calculate_for_instance(instance, template, now).sla_status

            with self.storage.atomic():
                claimed = self.storage.compare_and_swap(CLAIMS_TABLE, claim_key, {
                    'id': claim_key,
                    'organization_id': organization_id,
                    'instance_id': instance.id,
                    'revision': 1,
                }, None)
                if not claimed:
                    raise DuplicateInstanceError(entity_type.value, entity_id)
                self._write(instance, None)

        self._after_change(instance, actor, AuditEventType.INSTANCE_CREATED, WorkflowEvent.INSTANCE_CREATED, {
            'template_id': template.id,
            'template_version': template.version,
            'initial_stage': instance.current_stage,
            'due_date': instance.due_date.isoformat() if instance.due_date else None,
        })
        return instance

    # Mutations

    def transition(self, organization_id: str, instance_id: str, to_stage: str,
                   actor: Principal = SYSTEM_PRINCIPAL,
                   reason: Optional[str] = None) -> WorkflowInstance:
        """
        Move an ACTIVE instance to ``to_stage``.

        Runs the transition validator, then the edge's conditions and the
        target stage's entry gates. On failure the instance is unchanged.

        Raises:
            InvalidStateError: instance is not ACTIVE
            InvalidTransitionError: no usable edge for this actor
            GateFailedError: one or more gates did not pass
        """
        def apply(instance: WorkflowInstance, template: WorkflowTemplate, now: datetime):
            self._require_status(instance, "transition", InstanceStatus.ACTIVE)
            edge = self.validator.find_edge(template, instance, to_stage, actor, reason)
            target = template.get_stage(to_stage)

            gates = list(edge.conditions) + (list(target.gates) if target else [])
            if gates:
                result = self.gates.evaluate(gates, GateContext(
                    instance=instance,
                    entity=self.entity_snapshot(instance),
                    has_approval=lambda role: self.approvals.has_approval(
                        organization_id, instance.id, instance.current_stage, role
                    ),
                    now=now
                ))
                if not result.passed:
                    raise GateFailedError(result.failures)

            from_stage = instance.current_stage
            self._leave_stage(instance, StepStatus.COMPLETED, now, actor)
            instance.history.append(TransitionRecord(
                from_stage=from_stage,
                to_stage=to_stage,
                transitioned_at=now,
                actor_id=actor.user_id,
                reason=reason
            ))
            instance.current_stage = to_stage
            instance.stage_entered_at = now
            if target is not None and target.sla_days:
                instance.sla_started_at = now
                instance.due_date = due_date_for_stage(template, target, now)
                instance.sla_breached_at = None

            return AuditEventType.INSTANCE_TRANSITIONED, WorkflowEvent.TRANSITIONED, {
                'from_stage': from_stage,
                'to_stage': to_stage,
                'reason': reason,
            }

        return self._mutate(organization_id, instance_id, actor, "transition", apply)

    def complete(self, organization_id: str, instance_id: str, outcome: Optional[str] = None,
                 actor: Principal = SYSTEM_PRINCIPAL) -> WorkflowInstance:
        """Mark an ACTIVE instance COMPLETED"""
        def apply(instance: WorkflowInstance, template: WorkflowTemplate, now: datetime):
            self._require_status(instance, "complete", InstanceStatus.ACTIVE)
            self._leave_stage(instance, StepStatus.COMPLETED, now, actor)
            instance.status = InstanceStatus.COMPLETED
            instance.completed_at = now
            instance.outcome = outcome
            return AuditEventType.INSTANCE_COMPLETED, WorkflowEvent.COMPLETED, {
                'final_stage': instance.current_stage,
                'outcome': outcome,
            }

        return self._mutate(organization_id, instance_id, actor, "complete", apply)

    def cancel(self, organization_id: str, instance_id: str, reason: Optional[str] = None,
               actor: Principal = SYSTEM_PRINCIPAL) -> WorkflowInstance:
        """Cancel an ACTIVE or PAUSED instance"""
        def apply(instance: WorkflowInstance, template: WorkflowTemplate, now: datetime):
            self._require_status(instance, "cancel", InstanceStatus.ACTIVE, InstanceStatus.PAUSED)
            self._leave_stage(instance, StepStatus.CANCELLED, now, actor)
            instance.status = InstanceStatus.CANCELLED
            instance.cancelled_at = now
            instance.outcome = f"cancelled: {reason}" if reason else "cancelled"
            return AuditEventType.INSTANCE_CANCELLED, WorkflowEvent.CANCELLED, {
                'stage': instance.current_stage,
                'reason': reason,
            }

        return self._mutate(organization_id, instance_id, actor, "cancel", apply)

    def pause(self, organization_id: str, instance_id: str, reason: Optional[str] = None,
              actor: Principal = SYSTEM_PRINCIPAL) -> WorkflowInstance:
        """Pause an ACTIVE instance, freezing its SLA clock"""
        def apply(instance: WorkflowInstance, template: WorkflowTemplate, now: datetime):
            self._require_status(instance, "pause", InstanceStatus.ACTIVE)
            instance.status = InstanceStatus.PAUSED
            instance.paused_at = now
            return AuditEventType.INSTANCE_PAUSED, WorkflowEvent.PAUSED, {
                'stage': instance.current_stage,
                'reason': reason,
            }

        return self._mutate(organization_id, instance_id, actor, "pause", apply)

    def resume(self, organization_id: str, instance_id: str,
               actor: Principal = SYSTEM_PRINCIPAL) -> WorkflowInstance:
        """Resume a PAUSED instance; the due date moves out by the time spent paused"""
        def apply(instance: WorkflowInstance, template: WorkflowTemplate, now: datetime):
            self._require_status(instance, "resume", InstanceStatus.PAUSED)
            paused_for = now - instance.paused_at if instance.paused_at else None
            if paused_for and self.settings.extend_due_date_on_resume and instance.due_date:
                instance.due_date = instance.due_date + paused_for
                if instance.sla_started_at:
                    instance.sla_started_at = instance.sla_started_at + paused_for
            instance.status = InstanceStatus.ACTIVE
            instance.paused_at = None
            return AuditEventType.INSTANCE_RESUMED, WorkflowEvent.RESUMED, {
                'stage': instance.current_stage,
                'paused_seconds': paused_for.total_seconds() if paused_for else 0,
            }

        return self._mutate(organization_id, instance_id, actor, "resume", apply)

    def record_approval(self, organization_id: str, instance_id: str, role: str,
                        actor: Principal, comments: Optional[str] = None) -> ApprovalRecord:
        """
        Record an approval for the instance's current stage.

        The actor must hold ``role``; approval gates on edges out of this
        stage then pass for that role.
        """
        if not role:
            raise ValidationError("role is required")
        with self.locks.hold(f"instance:{instance_id}"):
            instance = self._load(organization_id, instance_id)
            self._require_status(instance, "record an approval on", InstanceStatus.ACTIVE)
            if not actor.has_any_role([role]):
                raise PermissionDeniedError(f"Actor {actor.user_id} does not hold role {role}")
            approval = self.approvals.record(
                organization_id, instance.id, instance.current_stage, role, actor.user_id, comments
            )

        if self.audit:
            self.audit.log_event(
                AuditEventType.APPROVAL_RECORDED, 'workflow_instance', instance.id,
                {'stage': instance.current_stage, 'role': role, 'approval_id': approval.id},
                actor.user_id, organization_id
            )
        log_action(self.logger, "info",
                   f"Approval by {role} recorded on {instance.id} at stage {instance.current_stage}",
                   organization_id=organization_id, user_id=actor.user_id,
                   action="approve", resource=f"workflow_instance:{instance.id}")
        return approval

    def delete_instance(self, organization_id: str, instance_id: str,
                        actor: Principal = SYSTEM_PRINCIPAL) -> None:
        """Delete a finished instance, freeing the entity for a new workflow"""
        with self.locks.hold(f"instance:{instance_id}"):
            instance = self._load(organization_id, instance_id)
            if not instance.is_terminal:
                raise InvalidStateError(
                    f"Instance {instance_id} is {instance.status.value}; cancel or complete it first"
                )
            with self.storage.atomic():
                self.storage.delete(self.table_name, instance.id)
                self.storage.delete(CLAIMS_TABLE, f"{instance.entity_type.value}:{instance.entity_id}")
                self.approvals.delete_for_instance(organization_id, instance.id)

        if self.audit:
            self.audit.log_event(
                AuditEventType.INSTANCE_DELETED, 'workflow_instance', instance.id,
                {'entity_type': instance.entity_type.value, 'entity_id': instance.entity_id},
                actor.user_id, organization_id
            )
        log_action(self.logger, "info", f"Deleted workflow instance {instance.id}",
                   organization_id=organization_id, user_id=actor.user_id,
                   action="delete", resource=f"workflow_instance:{instance.id}")

    # Helpers

    def entity_snapshot(self, instance: WorkflowInstance) -> Dict[str, Any]:
        """Instance context overlaid with the entity provider's current fields"""
        snapshot = dict(instance.context)
        snapshot.update(self.entities.get_snapshot(
            instance.organization_id, instance.entity_type.value, instance.entity_id
        ))
        return snapshot

    @staticmethod
    def _require_status(instance: WorkflowInstance, operation: str, *allowed: InstanceStatus) -> None:
        if instance.status not in allowed:
            raise InvalidStateError(
                f"Cannot {operation} instance {instance.id} in status {instance.status.value}"
            )

    @staticmethod
    def _leave_stage(instance: WorkflowInstance, status: StepStatus, now: datetime,
                     actor: Principal) -> None:
        # First exit wins; revisits are tracked in history
        if instance.current_stage not in instance.step_states:
            instance.step_states[instance.current_stage] = StepState(
                status=status, completed_at=now, completed_by=actor.user_id
            )

    def _write(self, instance: WorkflowInstance, expected_revision: Optional[int]) -> None:
        instance.revision = (expected_revision or 0) + 1
        if not self.storage.compare_and_swap(self.table_name, instance.id, instance.to_dict(),
                                             expected_revision):
            raise ConflictError(f"Workflow instance {instance.id} was modified concurrently")

    def _with_retry(self, operation: str, fn: Callable[[], T]) -> T:
        attempts = max(1, self.settings.conflict_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except ConflictError:
                if attempt == attempts:
                    raise
                self.logger.warning(f"{operation}: concurrent modification, retrying ({attempt}/{attempts})")
        raise AssertionError("unreachable")

    def _mutate(self, organization_id: str, instance_id: str, actor: Principal, operation: str,
                apply: Callable[[WorkflowInstance, WorkflowTemplate, datetime],
                                Tuple[AuditEventType, WorkflowEvent, Dict[str, Any]]]) -> WorkflowInstance:
        def attempt() -> WorkflowInstance:
            with self.locks.hold(f"instance:{instance_id}"):
                instance = self._load(organization_id, instance_id)
                template = self._pinned_template(instance)
                now = datetime.now(timezone.utc)
                expected_revision = instance.revision
                previous_sla = instance.sla_status

                # SLA is evaluated before the status change so pause and
                # cancel record the level reached at that moment
                calculation = self.sla.calculate_for_instance(instance, template, now)
                audit_type, event_type, data = apply(instance, template, now)
                if not instance.is_terminal:
                    calculation = self.sla.calculate_for_instance(instance, template, now)
                instance.sla_status = calculation.sla_status
                if instance.sla_status == SlaStatus.OVERDUE and instance.sla_breached_at is None:
                    instance.sla_breached_at = now
                instance.updated_at = now

                self._write(instance, expected_revision)

            self._after_change(instance, actor, audit_type, event_type, data)
            if is_escalation(previous_sla, instance.sla_status):
                self._publish_sla_change(instance, previous_sla, calculation.level.value, actor)
            return instance

        return self._with_retry(operation, attempt)

    def _after_change(self, instance: WorkflowInstance, actor: Principal,
                      audit_type: AuditEventType, event_type: WorkflowEvent,
                      data: Dict[str, Any]) -> None:
        data = dict(data)
        data.update({
            'instance_id': instance.id,
            'template_id': instance.template_id,
            'template_version': instance.template_version,
            'status': instance.status.value,
            'current_stage': instance.current_stage,
        })
        if self.audit:
            self.audit.log_event(audit_type, 'workflow_instance', instance.id, data,
                                 actor.user_id, instance.organization_id)
        log_action(self.logger, "info",
                   f"{audit_type.value}: {instance.entity_type.value}:{instance.entity_id} "
                   f"at {instance.current_stage} ({instance.status.value})",
                   organization_id=instance.organization_id, user_id=actor.user_id,
                   action=audit_type.value, resource=f"workflow_instance:{instance.id}")
        self.events.publish(EventPayload(
            event_type=event_type,
            organization_id=instance.organization_id,
            entity_type=instance.entity_type.value,
            entity_id=instance.entity_id,
            data=data,
            actor_id=actor.user_id
        ))

    def _publish_sla_change(self, instance: WorkflowInstance, previous: SlaStatus,
                            level: str, actor: Principal) -> None:
        event_type = (WorkflowEvent.SLA_BREACHED if instance.sla_status == SlaStatus.OVERDUE
                      else WorkflowEvent.SLA_WARNING)
        self.logger.warning(
            f"Instance {instance.id} SLA {previous.value} -> {instance.sla_status.value} ({level})"
        )
        self.events.publish(EventPayload(
            event_type=event_type,
            organization_id=instance.organization_id,
            entity_type=instance.entity_type.value,
            entity_id=instance.entity_id,
            data={
                'instance_id': instance.id,
                'previous_sla_status': previous.value,
                'sla_status': instance.sla_status.value,
                'level': level,
                'due_date': instance.due_date.isoformat() if instance.due_date else None,
                'sla_breached_at': instance.sla_breached_at.isoformat() if instance.sla_breached_at else None,
            },
            actor_id=actor.user_id
        ))
