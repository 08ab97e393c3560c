"""
Role & Membership Service — role definitions, module grants, BU memberships.

Features:
  - Create / update roles with a 0..4 authority level
  - Replace a role's module grants (one row per module)
  - Delete guard: a role still held by a member or named by an approval
    step cannot be deleted
  - Assign a user's single role in a business unit (create or update,
    re-activating a removed membership)
  - Soft-remove a membership
"""

import logging

from property_records.core.exceptions import ConflictError, NotFoundError, ValidationError
from property_records.models import db
from property_records.models.approval import ApprovalStep
from property_records.models.audit import write_audit
from property_records.models.auth import (
    CAPABILITY_COLUMNS,
    MAX_ROLE_LEVEL,
    MIN_ROLE_LEVEL,
    PERMISSION_MODULES,
    BusinessUnit,
    BusinessUnitMember,
    Role,
    RolePermission,
    User,
)
from property_records.utils.helpers import commit_or_raise, parse_int

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════

def _validate_level(level, errors: dict) -> int | None:
    value = parse_int(level)
    if value is None or not MIN_ROLE_LEVEL <= value <= MAX_ROLE_LEVEL:
        errors["level"] = f"level must be an integer between {MIN_ROLE_LEVEL} and {MAX_ROLE_LEVEL}"
        return None
    return value


def _validate_permissions(permissions, errors: dict) -> list[dict]:
    if permissions is None:
        return []
    if not isinstance(permissions, list):
        errors["permissions"] = "permissions must be a list"
        return []
    seen = set()
    rows = []
    for i, raw in enumerate(permissions):
        if not isinstance(raw, dict):
            errors[f"permissions[{i}]"] = "permission must be an object"
            continue
        module = raw.get("module")
        if module not in PERMISSION_MODULES:
            errors[f"permissions[{i}].module"] = f"module must be one of {sorted(PERMISSION_MODULES)}"
            continue
        if module in seen:
            errors[f"permissions[{i}].module"] = f"duplicate module {module}"
            continue
        seen.add(module)
        flags = {}
        for col in CAPABILITY_COLUMNS.values():
            value = raw.get(col, False)
            if not isinstance(value, bool):
                errors[f"permissions[{i}].{col}"] = f"{col} must be a boolean"
            flags[col] = value is True
        rows.append({"module": module, **flags})
    return rows


def _get_role(role_id) -> Role:
    role = db.session.get(Role, role_id)
    if role is None:
        raise NotFoundError(resource="Role", resource_id=role_id)
    return role


def _name_taken(name: str, exclude_id: int | None = None) -> bool:
    q = Role.query.filter(Role.name == name)
    if exclude_id is not None:
        q = q.filter(Role.id != exclude_id)
    return q.first() is not None


# ═══════════════════════════════════════════════════════════════
# Role CRUD
# ═══════════════════════════════════════════════════════════════

def list_roles():
    """All roles, highest authority first."""
    return Role.query.order_by(Role.level.desc(), Role.name).all()


def create_role(name, description=None, level=0, permissions=None, actor_id=None) -> Role:
    errors: dict = {}
    if not isinstance(name, str) or not name.strip():
        errors["name"] = "name is required"
    level = _validate_level(level, errors)
    rows = _validate_permissions(permissions, errors)
    if errors:
        raise ValidationError("Invalid role", details=errors)

    name = name.strip()
    if _name_taken(name):
        raise ConflictError(f"Role '{name}' already exists")

    role = Role(name=name, description=description, level=level)
    role.permissions = [RolePermission(**row) for row in rows]
    db.session.add(role)
    db.session.flush()
    write_audit(
        entity_type="role", entity_id=role.id, action="role.create", actor_user_id=actor_id,
        diff={"name": name, "level": level, "modules": [r["module"] for r in rows]},
    )
    commit_or_raise(f"Role '{name}' already exists")
    logger.info("Created role '%s' (level %s)", name, level, extra={"user_id": actor_id, "event_type": "role.create"})
    return role


def update_role(role_id, patch, actor_id=None) -> Role:
    role = _get_role(role_id)
    data = patch or {}
    errors: dict = {}
    for key in sorted(set(data) - {"name", "description", "level"}):
        errors[key] = "field cannot be updated here"
    if "name" in data and (not isinstance(data["name"], str) or not data["name"].strip()):
        errors["name"] = "name is required"
    level = _validate_level(data["level"], errors) if "level" in data else role.level
    if errors:
        raise ValidationError("Invalid role", details=errors)

    diff = {}
    if "name" in data:
        name = data["name"].strip()
        if _name_taken(name, exclude_id=role.id):
            raise ConflictError(f"Role '{name}' already exists")
        if name != role.name:
            diff["name"] = {"old": role.name, "new": name}
            role.name = name
    if "description" in data and data["description"] != role.description:
        diff["description"] = {"old": role.description, "new": data["description"]}
        role.description = data["description"]
    if level != role.level:
        diff["level"] = {"old": role.level, "new": level}
        role.level = level

    write_audit(entity_type="role", entity_id=role.id, action="role.update", actor_user_id=actor_id, diff=diff)
    commit_or_raise("Role name already exists")
    return role


def replace_role_permissions(role_id, permissions, actor_id=None) -> Role:
    """Replace the role's module grants wholesale."""
    role = _get_role(role_id)
    errors: dict = {}
    rows = _validate_permissions(permissions, errors)
    if errors:
        raise ValidationError("Invalid permissions", details=errors)

    old_modules = [p.module for p in role.permissions]
    role.permissions.clear()
    db.session.flush()
    for row in rows:
        role.permissions.append(RolePermission(**row))

    write_audit(
        entity_type="role", entity_id=role.id, action="role.replace_permissions", actor_user_id=actor_id,
        diff={"modules": {"old": old_modules, "new": [r["module"] for r in rows]}},
    )
    commit_or_raise("Duplicate module grant")
    logger.info(
        "Replaced permissions on role %s: %d modules", role.id, len(rows),
        extra={"user_id": actor_id, "event_type": "role.replace_permissions"},
    )
    return role


def delete_role(role_id, actor_id=None) -> None:
    role = _get_role(role_id)
    members = BusinessUnitMember.query.filter_by(role_id=role.id).count()
    steps = ApprovalStep.query.filter_by(role_id=role.id).count()
    if members or steps:
        raise ConflictError(
            f"Role '{role.name}' is still referenced by {members} membership(s) "
            f"and {steps} approval step(s)"
        )
    write_audit(entity_type="role", entity_id=role.id, action="role.delete", actor_user_id=actor_id,
                diff={"name": role.name})
    db.session.delete(role)
    commit_or_raise("Role is still referenced")
    logger.info("Deleted role %s", role_id, extra={"user_id": actor_id, "event_type": "role.delete"})


# ═══════════════════════════════════════════════════════════════
# Memberships
# ═══════════════════════════════════════════════════════════════

def assign_member(user_id, business_unit_id, role_id, actor_id=None) -> BusinessUnitMember:
    """Give *user_id* the role *role_id* in *business_unit_id*.

    Updates the existing membership when there is one, re-activating it
    if it had been removed.
    """
    if db.session.get(User, user_id) is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    if db.session.get(BusinessUnit, business_unit_id) is None:
        raise NotFoundError(resource="BusinessUnit", resource_id=business_unit_id)
    role = db.session.get(Role, role_id) if role_id is not None else None
    if role is None:
        raise ValidationError("Invalid membership", details={"role_id": f"role {role_id} does not exist"})

    member = BusinessUnitMember.query.filter_by(
        user_id=user_id, business_unit_id=business_unit_id,
    ).first()
    if member is None:
        member = BusinessUnitMember(user_id=user_id, business_unit_id=business_unit_id, role_id=role.id)
        db.session.add(member)
        diff = {"role_id": role.id, "created": True}
    else:
        diff = {"role_id": {"old": member.role_id, "new": role.id},
                "is_active": {"old": member.is_active, "new": True}}
        member.role_id = role.id
        member.is_active = True
    db.session.flush()

    write_audit(
        entity_type="business_unit_member", entity_id=member.id, action="member.assign",
        actor_user_id=actor_id, business_unit_id=business_unit_id, diff=diff,
    )
    commit_or_raise("User already has a membership in this business unit")
    logger.info(
        "User %s assigned role %s in business unit %s", user_id, role.id, business_unit_id,
        extra={"business_unit_id": business_unit_id, "user_id": actor_id, "event_type": "member.assign"},
    )
    return member


def deactivate_member(user_id, business_unit_id, actor_id=None) -> BusinessUnitMember:
    """Soft-remove a membership; the row stays for historical responses."""
    member = BusinessUnitMember.query.filter_by(
        user_id=user_id, business_unit_id=business_unit_id, is_active=True,
    ).first()
    if member is None:
        raise NotFoundError(resource="BusinessUnitMember", resource_id=user_id)
    member.is_active = False
    write_audit(
        entity_type="business_unit_member", entity_id=member.id, action="member.deactivate",
        actor_user_id=actor_id, business_unit_id=business_unit_id,
    )
    commit_or_raise()
    logger.info(
        "User %s removed from business unit %s", user_id, business_unit_id,
        extra={"business_unit_id": business_unit_id, "user_id": actor_id, "event_type": "member.deactivate"},
    )
    return member
