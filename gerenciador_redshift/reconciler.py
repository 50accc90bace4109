from __future__ import annotations

"""Compute the statements that bring catalog privileges to a declared state."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from . import statements
from .data_models import (
    DefaultPrivilegeConfig,
    GrantConfig,
    RoleGrantConfig,
    normalize_privileges,
)
from .state_reader import CurrentState
from .statements import Statement

logger = logging.getLogger(__name__)
logger.propagate = True


@dataclass
class Plan:
    """Ordered list of statements produced by a planner function."""

    statements: List[Statement] = field(default_factory=list)

    @property
    def grants(self) -> List[Statement]:
        return [s for s in self.statements if s.action in ("grant", "grant_role")]

    @property
    def revokes(self) -> List[Statement]:
        return [
            s for s in self.statements
            if s.action in ("revoke", "revoke_all", "revoke_role")
        ]

    @property
    def is_empty(self) -> bool:
        return not self.statements

    def __len__(self) -> int:
        return len(self.statements)

    def __iter__(self):
        return iter(self.statements)


# ------------------------------------------------------------------
# Object privileges


def plan_grant(
    config: GrantConfig, current: CurrentState, database: Optional[str] = None
) -> Plan:
    """Return the plan that sets *config.privileges* exactly on every object.

    A privilege is granted unless every object already holds it and revoked
    when any object holds it without it being desired, so a target whose
    objects disagree converges to the uniform declared set.  At most one
    REVOKE and one GRANT are emitted, REVOKE first.
    """

    ot = config.target.object_type
    desired = normalize_privileges(config.privileges, ot)
    to_grant = desired - current.held_by_all
    to_revoke = current.held_by_any - desired

    plan = Plan()
    if to_revoke:
        plan.statements.append(
            statements.revoke(config.principal, config.target, to_revoke, database)
        )
    if to_grant:
        plan.statements.append(
            statements.grant(config.principal, config.target, to_grant, database)
        )
    logger.debug(
        "Planned %s for %s on %s: grant=%s revoke=%s",
        len(plan), config.principal.name, ot.value, sorted(to_grant), sorted(to_revoke),
    )
    return plan


def plan_grant_delete(
    config: GrantConfig, current: CurrentState, database: Optional[str] = None
) -> Plan:
    """Revoke everything the principal currently holds on the target."""
    held = current.held_by_any
    plan = Plan()
    if held:
        plan.statements.append(
            statements.revoke(config.principal, config.target, held, database)
        )
    return plan


# ------------------------------------------------------------------
# Default privileges


def plan_default_privileges(config: DefaultPrivilegeConfig) -> Plan:
    """REVOKE ALL for the rule tuple, then GRANT the full desired set if any.

    The current state is deliberately not consulted: there is no "set
    exactly" primitive for default privileges.
    """

    desired = normalize_privileges(config.privileges, config.object_type, default=True)
    plan = Plan(
        [
            statements.alter_default_revoke_all(
                config.grantee, config.owner, config.object_type, config.schema
            )
        ]
    )
    if desired:
        plan.statements.append(
            statements.alter_default_grant(
                config.grantee, config.owner, config.object_type, desired, config.schema
            )
        )
    return plan


def plan_default_privileges_delete(config: DefaultPrivilegeConfig) -> Plan:
    return Plan(
        [
            statements.alter_default_revoke_all(
                config.grantee, config.owner, config.object_type, config.schema
            )
        ]
    )


# ------------------------------------------------------------------
# Role membership


def plan_role_grant(config: RoleGrantConfig, exists: bool) -> Plan:
    if exists:
        return Plan()
    return Plan([statements.grant_role(config.role, config.grantee)])


def plan_role_revoke(config: RoleGrantConfig, exists: bool) -> Plan:
    if not exists:
        return Plan()
    return Plan([statements.revoke_role(config.role, config.grantee)])
