"""
Approval Workflow Blueprint — workflow definitions.

Routes (all under /api/v1/business-units/<bu_id>):
  GET    /workflows                      – list (entity_type?, is_active?)
  POST   /workflows                      – create workflow with steps
  GET    /workflows/stats                – overview counts
  GET    /workflows/<wid>                – workflow with current steps
  PUT    /workflows/<wid>                – update top-level fields
  PUT    /workflows/<wid>/steps          – replace steps (new version)
  POST   /workflows/<wid>/toggle         – flip is_active
  POST   /workflows/<wid>/duplicate      – copy under a new name
  DELETE /workflows/<wid>                – delete (never-used workflows only)

Workflows are shared across business units; the business unit in the URL
is the scope the caller's APPROVAL grants are checked in.
"""

import logging

from flask import Blueprint, g, request

from property_records.blueprints import (
    json_body,
    paginate_query,
    parse_enum_arg,
    register_error_handlers,
)
from property_records.middleware.permission_required import require_permission
from property_records.models.approval import ApprovalEntityType
from property_records.services import workflow_service
from property_records.utils.errors import api_success

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflows", __name__, url_prefix="/api/v1/business-units/<int:bu_id>")
register_error_handlers(workflow_bp)


def _bool_arg(name):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return raw.lower() in ("1", "true", "yes")


@workflow_bp.route("/workflows", methods=["GET"])
@require_permission("APPROVAL", "read")
def list_workflows(bu_id):
    entity_type = parse_enum_arg(
        ApprovalEntityType, request.args.get("entity_type"), "entity_type", required=False,
    )
    q = workflow_service.list_workflows(entity_type=entity_type, is_active=_bool_arg("is_active"))
    items, total = paginate_query(q)
    return api_success({"items": [w.to_dict() for w in items], "total": total})


@workflow_bp.route("/workflows", methods=["POST"])
@require_permission("APPROVAL", "create")
def create_workflow(bu_id):
    """Create a workflow.

    Body: { name, description?, entity_type, is_active?, steps: [
              {step_name, role_id, step_order, is_required?, can_override?, override_min_level?}
          ] }
    """
    data = json_body()
    parse_enum_arg(ApprovalEntityType, data.get("entity_type"), "entity_type")
    wf = workflow_service.create_workflow(data, actor_id=g.jwt_user_id)
    return api_success({"workflow_id": wf.id, "workflow": wf.to_dict(include_steps=True)}, status=201)


@workflow_bp.route("/workflows/stats", methods=["GET"])
@require_permission("APPROVAL", "read")
def workflow_stats(bu_id):
    return api_success({"stats": workflow_service.get_workflow_stats()})


@workflow_bp.route("/workflows/<int:wid>", methods=["GET"])
@require_permission("APPROVAL", "read")
def get_workflow(bu_id, wid):
    wf = workflow_service.get_workflow(wid)
    return api_success({"workflow": wf.to_dict(include_steps=True)})


@workflow_bp.route("/workflows/<int:wid>", methods=["PUT"])
@require_permission("APPROVAL", "update")
def update_workflow(bu_id, wid):
    data = json_body()
    if "entity_type" in data:
        parse_enum_arg(ApprovalEntityType, data.get("entity_type"), "entity_type")
    wf = workflow_service.update_workflow(wid, data, actor_id=g.jwt_user_id)
    return api_success({"workflow": wf.to_dict(include_steps=True)})


@workflow_bp.route("/workflows/<int:wid>/steps", methods=["PUT"])
@require_permission("APPROVAL", "update")
def replace_steps(bu_id, wid):
    """Body: { steps: [...] } — same step shape as create."""
    data = json_body()
    wf = workflow_service.replace_steps(wid, data.get("steps"), actor_id=g.jwt_user_id)
    return api_success({"workflow": wf.to_dict(include_steps=True)})


@workflow_bp.route("/workflows/<int:wid>/toggle", methods=["POST"])
@require_permission("APPROVAL", "update")
def toggle_workflow(bu_id, wid):
    wf = workflow_service.toggle_active(wid, actor_id=g.jwt_user_id)
    return api_success({"workflow_id": wf.id, "is_active": wf.is_active})


@workflow_bp.route("/workflows/<int:wid>/duplicate", methods=["POST"])
@require_permission("APPROVAL", "create")
def duplicate_workflow(bu_id, wid):
    """Body: { new_name }"""
    data = json_body()
    wf = workflow_service.duplicate(wid, data.get("new_name"), actor_id=g.jwt_user_id)
    return api_success({"workflow_id": wf.id}, status=201)


@workflow_bp.route("/workflows/<int:wid>", methods=["DELETE"])
@require_permission("APPROVAL", "delete")
def delete_workflow(bu_id, wid):
    workflow_service.delete(wid, actor_id=g.jwt_user_id)
    return api_success({"deleted": True})
