"""
Gate Evaluator Module

Evaluates the gates attached to a transition edge and to the target stage.
Every gate is evaluated (no short circuit) so a caller sees all failures in
one response.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .logging_config import get_logger
from .models import (
    Gate, RequiredFieldsGate, ApprovalGate, ConditionGate, TimeGate,
    UnrecognizedGate, WorkflowInstance
)


_MISSING = object()


@dataclass
class GateFailure:
    """A gate that did not pass"""
    gate_type: str
    message: str
    gate: Optional[Gate] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'gate_type': self.gate_type, 'message': self.message}


@dataclass
class GateResult:
    """Outcome of evaluating a list of gates"""
    passed: bool
    failures: List[GateFailure] = field(default_factory=list)


@dataclass
class GateContext:
    """
    Everything a gate may look at.

    ``entity`` is the snapshot used by field and condition gates;
    ``has_approval(role)`` answers whether the instance's current stage has an
    approval from that role.
    """
    instance: WorkflowInstance
    entity: Dict[str, Any]
    has_approval: Callable[[str], bool]
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def resolve_path(data: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts; returns _MISSING when absent"""
    current = data
    for part in path.split('.'):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _is_blank(value: Any) -> bool:
    if value is _MISSING or value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


def _compare(actual: Any, operator: str, expected: Any) -> bool:
    if operator == "exists":
        present = not _is_blank(actual)
        return present if expected is None else present == bool(expected)
    if actual is _MISSING:
        return operator in ("neq", "not_in")
    if operator == "eq":
        return actual == expected
    if operator == "neq":
        return actual != expected
    if operator == "in":
        return isinstance(expected, (list, tuple)) and actual in expected
    if operator == "not_in":
        return isinstance(expected, (list, tuple)) and actual not in expected
    if operator == "contains":
        if isinstance(actual, (list, tuple, str)):
            try:
                return expected in actual
            except TypeError:
                return False
        return False
    # Ordering operators compare numbers with numbers and strings with strings
    if isinstance(actual, bool) or isinstance(expected, bool):
        return False
    comparable = (
        (isinstance(actual, (int, float)) and isinstance(expected, (int, float)))
        or (isinstance(actual, str) and isinstance(expected, str))
    )
    if not comparable:
        return False
    if operator == "gt":
        return actual > expected
    if operator == "gte":
        return actual >= expected
    if operator == "lt":
        return actual < expected
    if operator == "lte":
        return actual <= expected
    return False


class GateEvaluator:
    """Evaluates gate variants against an instance and entity snapshot"""

    def __init__(self):
        self.logger = get_logger("gates")

    def evaluate(self, gates: List[Gate], context: GateContext) -> GateResult:
        """Evaluate every gate and collect failures"""
        failures = []
        for gate in gates:
            failure = self._check(gate, context)
            if failure:
                failures.append(failure)

        if failures:
            self.logger.info(
                f"Instance {context.instance.id}: {len(failures)} of {len(gates)} gates failed"
            )
        return GateResult(passed=not failures, failures=failures)

    def _check(self, gate: Gate, context: GateContext) -> Optional[GateFailure]:
        if isinstance(gate, RequiredFieldsGate):
            missing = [f for f in gate.fields if _is_blank(resolve_path(context.entity, f))]
            if missing:
                return self._fail(gate, f"Required fields missing: {', '.join(missing)}")
            return None

        if isinstance(gate, ApprovalGate):
            if not context.has_approval(gate.approver_role):
                return self._fail(gate, f"Approval required from role {gate.approver_role}")
            return None

        if isinstance(gate, ConditionGate):
            actual = resolve_path(context.entity, gate.field)
            if not _compare(actual, gate.operator, gate.value):
                return self._fail(
                    gate, f"Condition not met: {gate.field} {gate.operator} {gate.value!r}"
                )
            return None

        if isinstance(gate, TimeGate):
            required = timedelta(days=gate.min_days, hours=gate.min_hours)
            elapsed = context.now - context.instance.stage_entered_at
            if elapsed < required:
                return self._fail(gate, f"Minimum time in stage not reached ({required} required)")
            return None

        if isinstance(gate, UnrecognizedGate):
            self.logger.warning(f"Unrecognized gate type '{gate.type_label}' evaluated as failed")
            return self._fail(gate, f"Unrecognized gate type '{gate.type_label}'")

        raise TypeError(f"Unsupported gate: {type(gate).__name__}")

    @staticmethod
    def _fail(gate: Gate, default_message: str) -> GateFailure:
        return GateFailure(
            gate_type=gate.type_name,
            message=gate.error_message or default_message,
            gate=gate
        )
