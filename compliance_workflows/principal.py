"""
Acting principal passed into every mutating workflow operation.

Authentication happens upstream; the engine trusts the roles it is given.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable


SYSTEM_USER_ID = "system"
SYSTEM_ROLE = "SYSTEM"
ANONYMOUS_USER_ID = "anonymous"


@dataclass(frozen=True)
class Principal:
    """User (or the system) performing an operation"""
    user_id: str
    roles: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, user_id: str, roles: Iterable[str] = ()) -> 'Principal':
        return cls(user_id=user_id, roles=frozenset(r for r in roles if r))

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return bool(self.roles.intersection(roles))


# Used when no authenticated user is behind an action (imports, listeners,
# public intake). Never backed by a stored user row.
SYSTEM_PRINCIPAL = Principal(user_id=SYSTEM_USER_ID, roles=frozenset({SYSTEM_ROLE}))

# API callers that send no user header. Holds no roles, so role-restricted
# edges and approvals are closed to it.
ANONYMOUS_PRINCIPAL = Principal(user_id=ANONYMOUS_USER_ID)
