"""
Admin Blueprint — roles, role permissions, business-unit memberships.

Routes (all under /api/v1/business-units/<bu_id>):
  GET    /roles                          – roles, highest level first
  POST   /roles                          – { name, description?, level, permissions? }
  PUT    /roles/<role_id>                – { name?, description?, level? }
  PUT    /roles/<role_id>/permissions    – { permissions: [{module, can_*}] }
  DELETE /roles/<role_id>                – only when unreferenced
  PUT    /members/<user_id>              – { role_id } assign / re-activate
  DELETE /members/<user_id>              – soft removal

Roles are global; the URL's business unit is where the caller's
USER_MANAGEMENT grants are checked.
"""

from flask import Blueprint, g

from property_records.blueprints import json_body, register_error_handlers
from property_records.middleware.permission_required import require_permission
from property_records.services import role_service
from property_records.utils.errors import api_success
from property_records.utils.helpers import parse_int

admin_bp = Blueprint("admin", __name__, url_prefix="/api/v1/business-units/<int:bu_id>")
register_error_handlers(admin_bp)


# ═════════════════════════════════════════════════════════════════════════════
# ROLES
# ═════════════════════════════════════════════════════════════════════════════

@admin_bp.route("/roles", methods=["GET"])
@require_permission("USER_MANAGEMENT", "read")
def list_roles(bu_id):
    roles = role_service.list_roles()
    return api_success({"items": [r.to_dict(include_permissions=True) for r in roles]})


@admin_bp.route("/roles", methods=["POST"])
@require_permission("USER_MANAGEMENT", "create")
def create_role(bu_id):
    data = json_body()
    role = role_service.create_role(
        data.get("name"),
        description=data.get("description"),
        level=data.get("level", 0),
        permissions=data.get("permissions"),
        actor_id=g.jwt_user_id,
    )
    return api_success({"role_id": role.id, "role": role.to_dict(include_permissions=True)}, status=201)


@admin_bp.route("/roles/<int:role_id>", methods=["PUT"])
@require_permission("USER_MANAGEMENT", "update")
def update_role(bu_id, role_id):
    role = role_service.update_role(role_id, json_body(), actor_id=g.jwt_user_id)
    return api_success({"role": role.to_dict(include_permissions=True)})


@admin_bp.route("/roles/<int:role_id>/permissions", methods=["PUT"])
@require_permission("USER_MANAGEMENT", "update")
def replace_permissions(bu_id, role_id):
    data = json_body()
    role = role_service.replace_role_permissions(role_id, data.get("permissions"), actor_id=g.jwt_user_id)
    return api_success({"role": role.to_dict(include_permissions=True)})


@admin_bp.route("/roles/<int:role_id>", methods=["DELETE"])
@require_permission("USER_MANAGEMENT", "delete")
def delete_role(bu_id, role_id):
    role_service.delete_role(role_id, actor_id=g.jwt_user_id)
    return api_success({"deleted": True})


# ═════════════════════════════════════════════════════════════════════════════
# MEMBERSHIPS
# ═════════════════════════════════════════════════════════════════════════════

@admin_bp.route("/members/<int:user_id>", methods=["PUT"])
@require_permission("USER_MANAGEMENT", "update")
def assign_member(bu_id, user_id):
    data = json_body()
    member = role_service.assign_member(
        user_id, bu_id, parse_int(data.get("role_id")), actor_id=g.jwt_user_id,
    )
    return api_success({"member": member.to_dict()})


@admin_bp.route("/members/<int:user_id>", methods=["DELETE"])
@require_permission("USER_MANAGEMENT", "update")
def deactivate_member(bu_id, user_id):
    member = role_service.deactivate_member(user_id, bu_id, actor_id=g.jwt_user_id)
    return api_success({"member": member.to_dict()})
