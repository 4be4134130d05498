"""
Workflow Errors

Every error the engine raises derives from WorkflowError. Only ConflictError
is safe to retry blindly; the rest need the caller to change something.
"""

from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .gates import GateFailure


class WorkflowError(Exception):
    """Base class for workflow engine errors"""


class ValidationError(WorkflowError, ValueError):
    """Malformed template definition or patch; nothing was persisted"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class NotFoundError(WorkflowError, LookupError):
    """Template or instance does not resolve within the organization"""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class InvalidTransitionError(WorkflowError):
    """No usable edge: missing edge, role not permitted, or reason missing"""

    def __init__(self, message: str, from_stage: Optional[str] = None,
                 to_stage: Optional[str] = None):
        super().__init__(message)
        self.from_stage = from_stage
        self.to_stage = to_stage


class GateFailedError(WorkflowError):
    """The edge is legal but one or more gates did not pass"""

    def __init__(self, failures: List["GateFailure"]):
        self.failures = failures
        messages = "; ".join(f.message for f in failures)
        super().__init__(f"Gate validation failed: {messages}")


class InvalidStateError(WorkflowError):
    """Operation not allowed in the instance's (or template's) current status"""


class ConflictError(WorkflowError):
    """Concurrent modification detected; retry with fresh state"""


class DuplicateInstanceError(WorkflowError):
    """The entity already has a workflow instance"""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"A workflow instance already exists for {entity_type}:{entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class TemplateInUseError(WorkflowError):
    """Template cannot be deleted while instances reference it"""


class PermissionDeniedError(WorkflowError):
    """The actor does not hold the role the operation requires"""
