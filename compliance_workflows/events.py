"""
Event System Module

Publish/subscribe dispatcher for workflow events. Handlers are notified
after a state change has been persisted; a failing handler is logged and
never affects the operation that published the event.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class WorkflowEvent(Enum):
    """Events emitted by the workflow engine"""

    # Instance lifecycle
    INSTANCE_CREATED = "workflow.instance.created"
    TRANSITIONED = "workflow.transitioned"
    COMPLETED = "workflow.completed"
    CANCELLED = "workflow.cancelled"
    PAUSED = "workflow.paused"
    RESUMED = "workflow.resumed"

    # SLA
    SLA_WARNING = "workflow.sla_warning"
    SLA_BREACHED = "workflow.sla_breached"

    # Templates
    TEMPLATE_CREATED = "workflow.template.created"
    TEMPLATE_UPDATED = "workflow.template.updated"
    TEMPLATE_VERSIONED = "workflow.template.versioned"


@dataclass
class EventPayload:
    """Payload for workflow events"""
    event_type: WorkflowEvent
    organization_id: str
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    actor_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def actor_type(self) -> str:
        return "USER" if self.actor_id and self.actor_id != "system" else "SYSTEM"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'organization_id': self.organization_id,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'actor_id': self.actor_id,
            'actor_type': self.actor_type,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        timestamp = data['timestamp']
        return cls(
            event_type=WorkflowEvent(data['event_type']),
            organization_id=data['organization_id'],
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            actor_id=data.get('actor_id'),
            timestamp=datetime.fromisoformat(timestamp) if isinstance(timestamp, str) else timestamp,
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[WorkflowEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("compliance_workflows.events")

    def subscribe(self, event_type: WorkflowEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: WorkflowEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def unsubscribe_all(self, handler: Callable) -> None:
        """Remove a global handler"""
        with self._lock:
            try:
                self._global_handlers.remove(handler)
            except ValueError:
                self.logger.warning(f"Global handler {_handler_name(handler)} was not subscribed")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}"
                )

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[WorkflowEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)
