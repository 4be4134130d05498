"""
FastAPI REST API Module

REST endpoints for workflow templates and instances. The organization comes
from the X-Organization-ID header and the acting user from X-User-ID and
X-User-Roles (comma separated); authentication happens in front of this
service. Requests without X-User-ID act as a role-less anonymous user.
"""

from datetime import datetime, timezone
from typing import Dict, Optional, Any

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .audit import AuditTrail
from .config import WorkflowSettings, get_config
from .engine import WorkflowEngine
from .entities import StoredEntitySnapshots
from .events import EventDispatcher
from .exceptions import (
    ConflictError, DuplicateInstanceError, GateFailedError, InvalidStateError,
    InvalidTransitionError, NotFoundError, PermissionDeniedError, TemplateInUseError,
    ValidationError, WorkflowError
)
from .logging_config import get_logger
from .models import InstanceStatus, SlaStatus, WorkflowEntityType
from .principal import ANONYMOUS_PRINCIPAL, Principal
from .schemas import (
    ApprovalRequest, CompleteRequest, CreateTemplateRequest, EntitySnapshotRequest,
    ReasonRequest, StartWorkflowRequest, TransitionRequest, UpdateTemplateRequest
)
from .storage import StorageInterface, create_storage
from . import __version__


logger = get_logger("api")


class WorkflowSystem:
    """Workflow engine with all components initialized"""

    def __init__(self, settings: Optional[WorkflowSettings] = None,
                 storage: Optional[StorageInterface] = None):
        self.settings = settings or get_config()
        self.storage = storage or create_storage(self.settings.database_url)
        self.audit_trail = AuditTrail(self.storage)
        self.events = EventDispatcher()
        self.entity_snapshots = StoredEntitySnapshots(self.storage)
        self.engine = WorkflowEngine(
            self.storage, self.audit_trail, self.events, self.entity_snapshots, self.settings
        )

    def close(self) -> None:
        self.storage.close()


ERROR_STATUS = (
    (ValidationError, 422),
    (GateFailedError, 422),
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
    (InvalidTransitionError, 409),
    (InvalidStateError, 409),
    (ConflictError, 409),
    (DuplicateInstanceError, 409),
    (TemplateInUseError, 409),
)


def error_response(exc: WorkflowError) -> JSONResponse:
    """Map a workflow error to an HTTP response"""
    status_code = 400
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break

    body: Dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, GateFailedError):
        body["failures"] = [failure.to_dict() for failure in exc.failures]
    elif isinstance(exc, ValidationError):
        body["errors"] = exc.errors
    elif isinstance(exc, InvalidTransitionError):
        body["from_stage"] = exc.from_stage
        body["to_stage"] = exc.to_stage
    return JSONResponse(status_code=status_code, content=body)


def get_organization_id(x_organization_id: str = Header(..., min_length=1)) -> str:
    return x_organization_id


def get_principal(x_user_id: Optional[str] = Header(None),
                  x_user_roles: Optional[str] = Header(None)) -> Principal:
    if not x_user_id:
        return ANONYMOUS_PRINCIPAL
    roles = [role.strip() for role in (x_user_roles or "").split(",")]
    return Principal.of(x_user_id, roles)


def create_app(system: Optional[WorkflowSystem] = None) -> FastAPI:
    """Build the FastAPI application around a workflow system"""
    workflow_system = system or WorkflowSystem()

    app = FastAPI(
        title="Compliance Workflow Engine API",
        description="Versioned workflow templates and instance lifecycle for compliance entities",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.workflow_system = workflow_system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        logger.info(f"{request.method} {request.url.path} -> {type(exc).__name__}: {exc}")
        return error_response(exc)

    def get_engine() -> WorkflowEngine:
        return workflow_system.engine

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    # Templates

    @app.get("/workflows/templates")
    async def list_templates(
        entity_type: Optional[WorkflowEntityType] = None,
        is_active: Optional[bool] = None,
        organization_id: str = Depends(get_organization_id),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """List workflow templates"""
        return [t.to_dict() for t in engine.templates.list(organization_id, entity_type, is_active)]

    @app.post("/workflows/templates", status_code=status.HTTP_201_CREATED)
    async def create_template(
        request: CreateTemplateRequest,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Create a workflow template"""
        return engine.templates.create(organization_id, request.to_definition(), actor).to_dict()

    @app.get("/workflows/templates/default/{entity_type}")
    async def get_default_template(
        entity_type: WorkflowEntityType,
        organization_id: str = Depends(get_organization_id),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Get the default template for an entity type (null when none)"""
        template = engine.templates.find_default(organization_id, entity_type)
        return template.to_dict() if template else None

    @app.get("/workflows/templates/{template_id}")
    async def get_template(
        template_id: str,
        organization_id: str = Depends(get_organization_id),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Get a workflow template"""
        return engine.templates.get(organization_id, template_id).to_dict()

    @app.patch("/workflows/templates/{template_id}")
    async def update_template(
        template_id: str,
        request: UpdateTemplateRequest,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Update a template; returns the forked version when instances are in flight"""
        return engine.update_template(organization_id, template_id, request.to_patch(), actor).to_dict()

    @app.delete("/workflows/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_template(
        template_id: str,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Delete a template no instance references"""
        engine.templates.delete(organization_id, template_id, actor)

    @app.post("/workflows/templates/{template_id}/clone", status_code=status.HTTP_201_CREATED)
    async def clone_template(
        template_id: str,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Clone a template into a new draft"""
        return engine.templates.clone(organization_id, template_id, actor).to_dict()

    @app.post("/workflows/templates/{template_id}/publish")
    async def publish_template(
        template_id: str,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Activate a template"""
        return engine.templates.publish(organization_id, template_id, actor).to_dict()

    @app.post("/workflows/templates/{template_id}/deactivate")
    async def deactivate_template(
        template_id: str,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Deactivate a template"""
        return engine.templates.deactivate(organization_id, template_id, actor).to_dict()

    @app.post("/workflows/templates/{template_id}/default")
    async def set_default_template(
        template_id: str,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Make a template the default for its entity type"""
        return engine.templates.set_default(organization_id, template_id, actor).to_dict()

    @app.get("/workflows/templates/{template_id}/versions")
    async def list_template_versions(
        template_id: str,
        organization_id: str = Depends(get_organization_id),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """All templates sharing this template's name"""
        template = engine.templates.get(organization_id, template_id)
        return [t.to_dict() for t in engine.templates.find_versions(organization_id, template.name)]

    @app.get("/workflows/templates/{template_id}/lineage")
    async def list_template_lineage(
        template_id: str,
        organization_id: str = Depends(get_organization_id),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """All versions forked from the same original template"""
        return [t.to_dict() for t in engine.templates.find_lineage(organization_id, template_id)]

    # Instances

    @app.get("/workflows/instances")
    async def list_instances(
        status: Optional[InstanceStatus] = None,
        entity_type: Optional[WorkflowEntityType] = None,
        template_id: Optional[str] = None,
        sla_status: Optional[SlaStatus] = None,
        organization_id: str = Depends(get_organization_id),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """List workflow instances"""
        instances = engine.list_instances(organization_id, status, entity_type, template_id, sla_status)
        return [i.to_dict() for i in instances]

    @app.post("/workflows/instances", status_code=status.HTTP_201_CREATED)
    async def start_workflow(
        request: StartWorkflowRequest,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Start a workflow for an entity"""
        instance = engine.start_workflow(
            organization_id, request.entity_type, request.entity_id,
            template_id=request.template_id, actor=actor, context=request.context
        )
        return instance.to_dict()

    @app.get("/workflows/instances/{instance_id}")
    async def get_instance(
        instance_id: str,
        organization_id: str = Depends(get_organization_id),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Get a workflow instance"""
        return engine.get_instance(organization_id, instance_id).to_dict()

    @app.delete("/workflows/instances/{instance_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_instance(
        instance_id: str,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Delete a completed or cancelled instance"""
        engine.delete_instance(organization_id, instance_id, actor)

    @app.get("/workflows/instances/{instance_id}/transitions")
    async def get_allowed_transitions(
        instance_id: str,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Transitions the caller may take from the current stage"""
        template = engine.get_template_for_instance(organization_id, instance_id)
        result = []
        for edge in engine.get_allowed_transitions(organization_id, instance_id, actor):
            stage = template.get_stage(edge.to_stage)
            result.append({
                **edge.to_dict(),
                'to_stage_name': stage.name if stage else edge.to_stage,
            })
        return result

    @app.post("/workflows/instances/{instance_id}/transition")
    async def transition_instance(
        instance_id: str,
        request: TransitionRequest,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Move an instance to another stage"""
        instance = engine.transition(organization_id, instance_id, request.to_stage, actor, request.reason)
        return instance.to_dict()

    @app.post("/workflows/instances/{instance_id}/complete")
    async def complete_instance(
        instance_id: str,
        request: CompleteRequest,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Complete an instance"""
        return engine.complete(organization_id, instance_id, request.outcome, actor).to_dict()

    @app.post("/workflows/instances/{instance_id}/cancel")
    async def cancel_instance(
        instance_id: str,
        request: ReasonRequest,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Cancel an instance"""
        return engine.cancel(organization_id, instance_id, request.reason, actor).to_dict()

    @app.post("/workflows/instances/{instance_id}/pause")
    async def pause_instance(
        instance_id: str,
        request: ReasonRequest,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Pause an instance"""
        return engine.pause(organization_id, instance_id, request.reason, actor).to_dict()

    @app.post("/workflows/instances/{instance_id}/resume")
    async def resume_instance(
        instance_id: str,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Resume a paused instance"""
        return engine.resume(organization_id, instance_id, actor).to_dict()

    @app.get("/workflows/instances/{instance_id}/approvals")
    async def list_approvals(
        instance_id: str,
        organization_id: str = Depends(get_organization_id),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """List approvals recorded on an instance"""
        return [a.to_dict() for a in engine.list_approvals(organization_id, instance_id)]

    @app.post("/workflows/instances/{instance_id}/approvals", status_code=status.HTTP_201_CREATED)
    async def record_approval(
        instance_id: str,
        request: ApprovalRequest,
        organization_id: str = Depends(get_organization_id),
        actor: Principal = Depends(get_principal),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Record an approval for the instance's current stage"""
        return engine.record_approval(organization_id, instance_id, request.role, actor,
                                      request.comments).to_dict()

    @app.get("/workflows/instances/{instance_id}/audit")
    async def get_instance_audit(
        instance_id: str,
        organization_id: str = Depends(get_organization_id),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Audit events for an instance"""
        engine.get_instance(organization_id, instance_id)
        events = workflow_system.audit_trail.get_events_for_entity('workflow_instance', instance_id)
        return [e.to_dict() for e in events]

    # Entities

    @app.get("/workflows/entity/{entity_type}/{entity_id}")
    async def get_instance_for_entity(
        entity_type: WorkflowEntityType,
        entity_id: str,
        organization_id: str = Depends(get_organization_id),
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """Get the workflow instance for an entity (null when none)"""
        instance = engine.get_instance_by_entity(organization_id, entity_type, entity_id)
        return instance.to_dict() if instance else None

    @app.put("/workflows/entity/{entity_type}/{entity_id}/snapshot")
    async def put_entity_snapshot(
        entity_type: WorkflowEntityType,
        entity_id: str,
        request: EntitySnapshotRequest,
        organization_id: str = Depends(get_organization_id)
    ):
        """Store the field values gates evaluate for an entity"""
        workflow_system.entity_snapshots.put(organization_id, entity_type.value, entity_id, request.fields)
        return {"entity_type": entity_type.value, "entity_id": entity_id, "fields": request.fields}

    # Audit

    @app.get("/audit/integrity")
    async def verify_audit_integrity():
        """Verify the audit hash chain"""
        return workflow_system.audit_trail.verify_integrity()

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    settings = get_config()
    uvicorn.run(
        "compliance_workflows.api:create_app",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=debug,
        log_level=settings.log_level.lower()
    )
