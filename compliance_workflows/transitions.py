"""
Transition Validator Module

Decides whether a move between two stages is legal for an instance and an
actor. Gates are not evaluated here; see gates.py.
"""

from typing import List, Optional

from .exceptions import InvalidTransitionError
from .models import Transition, WorkflowInstance, WorkflowTemplate, InstanceStatus
from .principal import Principal


class TransitionValidator:
    """Checks edges, roles and reasons for a requested transition"""

    @staticmethod
    def _role_allowed(edge: Transition, actor: Principal) -> bool:
        return not edge.allowed_roles or actor.has_any_role(edge.allowed_roles)

    def find_edge(self, template: WorkflowTemplate, instance: WorkflowInstance,
                  target_stage: str, actor: Principal,
                  reason: Optional[str] = None) -> Transition:
        """
        Return the edge to use for moving to ``target_stage``.

        An explicit edge from the current stage wins over a ``"*"`` edge.
        Raises InvalidTransitionError when no edge exists, the actor's roles
        are not allowed, or a required reason is blank.
        """
        current = instance.current_stage
        if instance.status != InstanceStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Instance is {instance.status.value}; only ACTIVE instances can transition",
                current, target_stage
            )

        candidates = [t for t in template.edges_from(current) if t.to_stage == target_stage]
        if not candidates:
            raise InvalidTransitionError(
                f"No transition from '{current}' to '{target_stage}'", current, target_stage
            )

        candidates.sort(key=lambda t: t.from_stage != current)
        permitted = [t for t in candidates if self._role_allowed(t, actor)]
        if not permitted:
            raise InvalidTransitionError(
                f"Actor {actor.user_id} lacks a role allowed to move from '{current}' to '{target_stage}'",
                current, target_stage
            )

        edge = permitted[0]
        if edge.requires_reason and not (reason and reason.strip()):
            raise InvalidTransitionError(
                f"A reason is required to move from '{current}' to '{target_stage}'",
                current, target_stage
            )
        return edge

    def is_legal(self, template: WorkflowTemplate, instance: WorkflowInstance,
                 target_stage: str, actor: Principal, reason: Optional[str] = None) -> bool:
        """Check whether the transition is legal, ignoring gates"""
        try:
            self.find_edge(template, instance, target_stage, actor, reason)
        except InvalidTransitionError:
            return False
        return True

    def allowed_edges(self, template: WorkflowTemplate, instance: WorkflowInstance,
                      actor: Principal) -> List[Transition]:
        """Edges out of the current stage that the actor may take"""
        if instance.status != InstanceStatus.ACTIVE:
            return []
        edges = []
        seen = set()
        for edge in sorted(template.edges_from(instance.current_stage),
                           key=lambda t: t.from_stage != instance.current_stage):
            if edge.to_stage in seen or not self._role_allowed(edge, actor):
                continue
            seen.add(edge.to_stage)
            edges.append(edge)
        return edges
