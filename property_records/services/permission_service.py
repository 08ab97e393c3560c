"""
Permission Service — business-unit-scoped RBAC over an explicit capability context.

The capability context is a list of ``Assignment`` values, one per active
membership: the business unit, the role held there, the role's level and
its per-module grants.  It is built once per request by ``load_assignments``
and handed to the pure evaluators below, which never touch the database.

Evaluation is deterministic and deny-by-default:
  - no assignment for the business unit → denied
  - no grant row for the module → denied
  - unknown module or capability → denied, never an exception
"""

import logging
from dataclasses import dataclass, field

from property_records.models import db
from property_records.models.auth import (
    CAPABILITY_COLUMNS,
    PERMISSION_MODULES,
    BusinessUnitMember,
)

logger = logging.getLogger(__name__)

CAPABILITIES = frozenset(CAPABILITY_COLUMNS)


@dataclass(frozen=True)
class PermissionGrant:
    module: str
    can_create: bool = False
    can_read: bool = False
    can_update: bool = False
    can_delete: bool = False
    can_approve: bool = False

    def allows(self, capability: str) -> bool:
        column = CAPABILITY_COLUMNS.get(capability)
        if column is None:
            return False
        return bool(getattr(self, column))


@dataclass(frozen=True)
class Assignment:
    """One user's role in one business unit."""

    business_unit_id: int
    role_id: int
    role_name: str
    role_level: int
    permissions: tuple[PermissionGrant, ...] = field(default_factory=tuple)

    def grant_for(self, module: str) -> PermissionGrant | None:
        for grant in self.permissions:
            if grant.module == module:
                return grant
        return None


# ═══════════════════════════════════════════════════════════════
# Pure evaluators
# ═══════════════════════════════════════════════════════════════
def get_assignment(assignments, business_unit_id) -> Assignment | None:
    """Return the assignment for *business_unit_id*, or None."""
    if not assignments or business_unit_id is None:
        return None
    for a in assignments:
        if a.business_unit_id == business_unit_id:
            return a
    return None


def is_member(assignments, business_unit_id) -> bool:
    return get_assignment(assignments, business_unit_id) is not None


def has_permission(assignments, business_unit_id, module: str, capability: str) -> bool:
    """True iff the role held in *business_unit_id* grants *capability* on *module*."""
    if module not in PERMISSION_MODULES or capability not in CAPABILITIES:
        return False
    assignment = get_assignment(assignments, business_unit_id)
    if assignment is None:
        return False
    grant = assignment.grant_for(module)
    if grant is None:
        return False
    return grant.allows(capability)


def can_approve_at_level(assignments, required_level, business_unit_id=None) -> bool:
    """True if an assignment's role level is at least *required_level*.

    With *business_unit_id* only that business unit's assignment counts;
    without it, any assignment does.
    """
    if not assignments or required_level is None:
        return False
    if business_unit_id is not None:
        assignment = get_assignment(assignments, business_unit_id)
        return assignment is not None and assignment.role_level >= required_level
    return any(a.role_level >= required_level for a in assignments)


# ═══════════════════════════════════════════════════════════════
# Context loading
# ═══════════════════════════════════════════════════════════════
def _to_assignment(member: BusinessUnitMember) -> Assignment:
    role = member.role
    grants = tuple(
        PermissionGrant(
            module=p.module,
            can_create=p.can_create,
            can_read=p.can_read,
            can_update=p.can_update,
            can_delete=p.can_delete,
            can_approve=p.can_approve,
        )
        for p in role.permissions
    )
    return Assignment(
        business_unit_id=member.business_unit_id,
        role_id=role.id,
        role_name=role.name,
        role_level=role.level,
        permissions=grants,
    )


def load_assignments(user_id) -> list[Assignment]:
    """Build the capability context from the user's active memberships."""
    if user_id is None:
        return []
    members = (
        db.session.query(BusinessUnitMember)
        .filter_by(user_id=user_id, is_active=True)
        .order_by(BusinessUnitMember.business_unit_id)
        .all()
    )
    assignments = [_to_assignment(m) for m in members]
    logger.debug("Loaded %d assignments for user %s", len(assignments), user_id)
    return assignments
