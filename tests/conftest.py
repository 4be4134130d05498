"""
Shared fixtures for the workflow engine test suite
"""

import pytest

from compliance_workflows.audit import AuditTrail
from compliance_workflows.config import WorkflowSettings
from compliance_workflows.engine import WorkflowEngine
from compliance_workflows.events import EventDispatcher
from compliance_workflows.models import (
    Stage, TemplateDefinition, Transition, WorkflowEntityType
)
from compliance_workflows.storage import InMemoryStorage


ORG = "org-acme"
OTHER_ORG = "org-globex"


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def settings():
    """Settings with test-friendly defaults"""
    return WorkflowSettings(
        database_url="memory://",
        default_sla_days=None,
        sla_warning_threshold_percent=80.0,
        sla_critical_threshold_hours=24.0,
        conflict_retry_attempts=3,
        enable_audit_logging=True,
        extend_due_date_on_resume=True,
    )


@pytest.fixture
def audit_trail(storage):
    """Create audit trail for testing"""
    return AuditTrail(storage)


@pytest.fixture
def events():
    """Create event dispatcher for testing"""
    return EventDispatcher()


@pytest.fixture
def received(events):
    """Every event published during the test"""
    captured = []
    events.subscribe_all(captured.append)
    return captured


@pytest.fixture
def engine(storage, audit_trail, events, settings):
    """Create workflow engine for testing"""
    return WorkflowEngine(storage, audit_trail, events, settings=settings)


@pytest.fixture
def make_definition():
    """
    Factory for a linear A -> B -> C template (C terminal).

    Keyword arguments override TemplateDefinition fields.
    """
    def factory(**overrides):
        fields = dict(
            name="Linear Review",
            entity_type=WorkflowEntityType.CASE,
            stages=[
                Stage(id="A", name="Intake"),
                Stage(id="B", name="Review"),
                Stage(id="C", name="Done", is_terminal=True),
            ],
            transitions=[
                Transition(from_stage="A", to_stage="B"),
                Transition(from_stage="B", to_stage="C"),
            ],
            initial_stage="A",
            is_active=True,
        )
        fields.update(overrides)
        return TemplateDefinition(**fields)

    return factory


@pytest.fixture
def active_template(engine, make_definition):
    """An active default A -> B -> C template in ORG"""
    return engine.templates.create(ORG, make_definition(is_default=True))
