"""
Versioning Coordinator Module

Decides, for each template edit, whether to mutate the row in place or fork
a new version. A template row that running instances are pinned to is never
changed; the edit lands on a new row instead.
"""

import uuid
from datetime import datetime, timezone

from .audit import AuditEventType
from .events import WorkflowEvent
from .exceptions import InvalidStateError, ValidationError
from .logging_config import get_logger
from .models import TemplatePatch, WorkflowTemplate
from .principal import Principal, SYSTEM_PRINCIPAL
from .templates import TemplateStore, validate_structure


class VersioningCoordinator:
    """Applies template patches with fork-on-write semantics"""

    def __init__(self, store: TemplateStore):
        self.store = store
        self.logger = get_logger("versioning")

    def update(self, organization_id: str, template_id: str, patch: TemplatePatch,
               actor: Principal = SYSTEM_PRINCIPAL) -> WorkflowTemplate:
        """
        Apply ``patch`` to a template.

        With no ACTIVE or PAUSED instances on the row the template is updated
        in place and keeps its version. Otherwise a new row is created with
        ``version + 1``; the old row is deactivated and hands its default flag
        to the new one.

        Returns:
            The updated template or the newly forked version
        """
        if patch.is_empty():
            return self.store.get(organization_id, template_id)

        with self.store.locks.hold(f"template:{template_id}"):
            current = self.store.get(organization_id, template_id)
            if self.store.is_superseded(current):
                raise InvalidStateError(
                    f"Template {template_id} version {current.version} has been superseded; "
                    f"edit the latest version instead"
                )

            patched = self._apply(current, patch)
            in_flight = self.store.count_in_flight(template_id)

            if in_flight == 0:
                return self._update_in_place(current, patched, patch, actor)
            return self._fork(current, patched, in_flight, actor)

    def _apply(self, current: WorkflowTemplate, patch: TemplatePatch) -> WorkflowTemplate:
        patched = WorkflowTemplate.from_dict(current.to_dict())
        if patch.name is not None:
            name = patch.name.strip()
            if not name:
                raise ValidationError("Template name is required")
            patched.name = name
        if patch.description is not None:
            patched.description = patch.description
        if patch.stages is not None:
            patched.stages = list(patch.stages)
        if patch.transitions is not None:
            patched.transitions = list(patch.transitions)
        if patch.initial_stage is not None:
            patched.initial_stage = patch.initial_stage
        if patch.default_sla_days is not None:
            patched.default_sla_days = patch.default_sla_days
        if patch.sla_config is not None:
            patched.sla_config = patch.sla_config
        if patch.tags is not None:
            patched.tags = list(patch.tags)

        warnings = validate_structure(patched.stages, patched.transitions,
                                      patched.initial_stage, patched.default_sla_days)
        for warning in warnings:
            self.logger.warning(f"Template {current.id} ({patched.name}): {warning}")
        return patched

    def _update_in_place(self, current: WorkflowTemplate, patched: WorkflowTemplate,
                         patch: TemplatePatch, actor: Principal) -> WorkflowTemplate:
        if patched.is_active and patched.name != current.name:
            self.store.ensure_name_available(patched.organization_id, patched.entity_type,
                                             patched.name, exclude_family=patched.family_id)
        self.store.write(patched, current.revision)

        changed = sorted(k for k, v in vars(patch).items() if v is not None)
        self.store.record_change(
            AuditEventType.TEMPLATE_UPDATED, WorkflowEvent.TEMPLATE_UPDATED, patched, actor,
            {'template_id': patched.id, 'version': patched.version, 'changed_fields': changed})
        return patched

    def _fork(self, current: WorkflowTemplate, patched: WorkflowTemplate, in_flight: int,
              actor: Principal) -> WorkflowTemplate:
        self.store.ensure_name_available(patched.organization_id, patched.entity_type,
                                         patched.name, exclude_family=patched.family_id)

        now = datetime.now(timezone.utc)
        fork = patched
        fork.id = str(uuid.uuid4())
        fork.created_at = now
        fork.updated_at = now
        fork.version = current.version + 1
        fork.is_active = True
        fork.is_default = current.is_default
        fork.source_template_id = current.id
        fork.family_id = current.family_id
        fork.created_by = actor.user_id
        fork.revision = 0

        with self.store.storage.atomic():
            current.is_active = False
            current.is_default = False
            self.store.write(current, current.revision)
            self.store.write(fork, None)

        self.logger.info(
            f"Forked template {current.id} v{current.version} -> {fork.id} v{fork.version} "
            f"({in_flight} instance(s) stay on v{current.version})"
        )
        self.store.record_change(AuditEventType.TEMPLATE_VERSIONED, WorkflowEvent.TEMPLATE_VERSIONED, fork, actor, {
            'template_id': fork.id,
            'previous_template_id': current.id,
            'previous_version': current.version,
            'version': fork.version,
            'in_flight_instances': in_flight,
        })
        return fork

