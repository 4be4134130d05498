"""
Tests for the Event System (Observer Pattern)

Tests the dispatcher on its own and the events the engine publishes.
"""

import pytest
from datetime import datetime
from unittest.mock import Mock

from compliance_workflows.events import EventDispatcher, EventPayload, WorkflowEvent
from compliance_workflows.principal import Principal

from conftest import ORG


def _payload(event_type=WorkflowEvent.TRANSITIONED, **overrides):
    fields = dict(
        event_type=event_type,
        organization_id=ORG,
        entity_type="CASE",
        entity_id="CASE-1",
        data={"from_stage": "A", "to_stage": "B"},
        actor_id="u-1",
    )
    fields.update(overrides)
    return EventPayload(**fields)


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_defaults(self):
        event = _payload()
        assert isinstance(event.timestamp, datetime)
        assert event.timestamp.tzinfo is not None
        assert len(event.event_id) > 0
        assert event.actor_type == "USER"

    def test_system_actor(self):
        assert _payload(actor_id="system").actor_type == "SYSTEM"
        assert _payload(actor_id=None).actor_type == "SYSTEM"

    def test_round_trip(self):
        event = _payload()
        data = event.to_dict()

        assert data['event_type'] == "workflow.transitioned"
        assert EventPayload.from_dict(data) == event


class TestEventDispatcher:
    """Test subscription and delivery"""

    @pytest.fixture
    def dispatcher(self):
        return EventDispatcher()

    def test_typed_subscription(self, dispatcher):
        handler = Mock()
        dispatcher.subscribe(WorkflowEvent.COMPLETED, handler)

        dispatcher.publish(_payload(WorkflowEvent.TRANSITIONED))
        handler.assert_not_called()

        completed = _payload(WorkflowEvent.COMPLETED)
        dispatcher.publish(completed)
        handler.assert_called_once_with(completed)

    def test_global_subscription(self, dispatcher):
        handler = Mock()
        dispatcher.subscribe_all(handler)

        dispatcher.publish(_payload(WorkflowEvent.PAUSED))
        dispatcher.publish(_payload(WorkflowEvent.RESUMED))
        assert handler.call_count == 2

    def test_failing_handler_does_not_stop_others(self, dispatcher):
        failing = Mock(side_effect=RuntimeError("listener down"))
        healthy = Mock()
        dispatcher.subscribe(WorkflowEvent.CANCELLED, failing)
        dispatcher.subscribe(WorkflowEvent.CANCELLED, healthy)

        dispatcher.publish(_payload(WorkflowEvent.CANCELLED))

        failing.assert_called_once()
        healthy.assert_called_once()

    def test_unsubscribe(self, dispatcher):
        handler = Mock()
        dispatcher.subscribe(WorkflowEvent.PAUSED, handler)
        dispatcher.subscribe_all(handler)
        assert dispatcher.get_handler_count() == 2

        dispatcher.unsubscribe(WorkflowEvent.PAUSED, handler)
        dispatcher.unsubscribe_all(handler)
        dispatcher.publish(_payload(WorkflowEvent.PAUSED))

        handler.assert_not_called()
        assert dispatcher.get_handler_count() == 0

    def test_clear(self, dispatcher):
        dispatcher.subscribe(WorkflowEvent.PAUSED, Mock())
        dispatcher.clear()
        assert dispatcher.get_handler_count(WorkflowEvent.PAUSED) == 0


class TestEngineEvents:
    """Events published by the engine"""

    def test_failing_listener_does_not_undo_transition(self, engine, events, active_template):
        events.subscribe(WorkflowEvent.TRANSITIONED, Mock(side_effect=RuntimeError("boom")))
        instance = engine.start_workflow(ORG, "CASE", "CASE-1")

        moved = engine.transition(ORG, instance.id, "B")

        assert moved.current_stage == "B"
        assert engine.get_instance(ORG, instance.id).current_stage == "B"

    def test_events_carry_actor_and_instance(self, engine, received, active_template):
        instance = engine.start_workflow(ORG, "CASE", "CASE-1", actor=Principal.of("u-7", ["ANALYST"]))

        created = received[-1]
        assert created.event_type == WorkflowEvent.INSTANCE_CREATED
        assert created.actor_id == "u-7"
        assert created.data['instance_id'] == instance.id
        assert created.data['current_stage'] == "A"

    def test_template_events(self, engine, received, make_definition):
        template = engine.templates.create(ORG, make_definition(is_active=False))
        engine.templates.publish(ORG, template.id)
        engine.templates.deactivate(ORG, template.id)

        assert [e.event_type for e in received] == [
            WorkflowEvent.TEMPLATE_CREATED,
            WorkflowEvent.TEMPLATE_UPDATED,
            WorkflowEvent.TEMPLATE_UPDATED,
        ]
        assert all(e.entity_id == template.id for e in received)
