"""
Approval Request Blueprint — open, respond, cancel, inspect.

Routes (all under /api/v1/business-units/<bu_id>):
  POST   /approvals                      – open a request against a workflow
  GET    /approvals                      – list (status?, workflow_id?, entity_type?)
  GET    /approvals/actionable           – PENDING requests the caller may answer
  GET    /approvals/stats                – counts per status / workflow, avg days
  GET    /approvals/<rid>                – request with steps and responses
  POST   /approvals/<rid>/respond        – { step_id, decision, comments? }
  POST   /approvals/<rid>/cancel         – requester withdraws

Responding only needs membership; the role/override check lives in the
state machine because it depends on the step being answered.
"""

import logging

from flask import Blueprint, g, request

from property_records.blueprints import (
    json_body,
    paginate_query,
    parse_enum_arg,
    register_error_handlers,
)
from property_records.core.exceptions import NotFoundError, ValidationError
from property_records.middleware.permission_required import require_member, require_permission
from property_records.models.approval import (
    ApprovalDecision,
    ApprovalEntityType,
    ApprovalRequestStatus,
)
from property_records.services import approval_service
from property_records.utils.errors import api_success
from property_records.utils.helpers import parse_int

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approvals", __name__, url_prefix="/api/v1/business-units/<int:bu_id>")
register_error_handlers(approval_bp)


@approval_bp.route("/approvals", methods=["POST"])
@require_permission("APPROVAL", "create")
def create_request(bu_id):
    """Body: { workflow_id, entity_type, entity_id, property_id? }"""
    data = json_body()
    entity_type = parse_enum_arg(ApprovalEntityType, data.get("entity_type"), "entity_type")
    workflow_id = parse_int(data.get("workflow_id"))
    entity_id = data.get("entity_id")
    property_id = parse_int(data.get("property_id"))
    errors = {}
    if data.get("property_id") is not None and property_id is None:
        errors["property_id"] = "property_id must be an integer"
    if workflow_id is None:
        errors["workflow_id"] = "workflow_id is required"
    if entity_id is None or str(entity_id).strip() == "":
        errors["entity_id"] = "entity_id is required"
    if errors:
        raise ValidationError("Invalid approval request", details=errors)

    req = approval_service.create_request(
        workflow_id, entity_type, entity_id, g.jwt_user_id, bu_id,
        property_id=property_id,
    )
    return api_success({"request_id": req.id, "request": req.to_dict()}, status=201)


@approval_bp.route("/approvals", methods=["GET"])
@require_permission("APPROVAL", "read")
def list_requests(bu_id):
    status = parse_enum_arg(ApprovalRequestStatus, request.args.get("status"), "status", required=False)
    entity_type = parse_enum_arg(
        ApprovalEntityType, request.args.get("entity_type"), "entity_type", required=False,
    )
    q = approval_service.list_requests(
        bu_id, status=status, workflow_id=request.args.get("workflow_id", type=int),
        entity_type=entity_type,
    )
    items, total = paginate_query(q)
    return api_success({"items": [r.to_dict() for r in items], "total": total})


@approval_bp.route("/approvals/actionable", methods=["GET"])
@require_member()
def list_actionable(bu_id):
    items = approval_service.list_actionable_requests(g.assignments, bu_id, g.jwt_user_id)
    return api_success({"items": [r.to_dict() for r in items], "total": len(items)})


@approval_bp.route("/approvals/stats", methods=["GET"])
@require_permission("APPROVAL", "read")
def approval_stats(bu_id):
    return api_success({"stats": approval_service.get_approval_stats(bu_id)})


@approval_bp.route("/approvals/<int:rid>", methods=["GET"])
@require_permission("APPROVAL", "read")
def get_request(bu_id, rid):
    req = approval_service.get_request(bu_id, rid)
    if req is None:
        raise NotFoundError(resource="ApprovalRequest", resource_id=rid)
    return api_success({"request": req.to_dict(include_details=True)})


@approval_bp.route("/approvals/<int:rid>/respond", methods=["POST"])
@require_member()
def respond(bu_id, rid):
    """Body: { step_id, decision: APPROVED|REJECTED, comments? }"""
    data = json_body()
    decision = parse_enum_arg(ApprovalDecision, data.get("decision"), "decision")
    step_id = parse_int(data.get("step_id"))
    if step_id is None:
        raise ValidationError("step_id is required", details={"step_id": "step_id is required"})
    comments = data.get("comments")
    if comments is not None and not isinstance(comments, str):
        raise ValidationError("Invalid comments", details={"comments": "comments must be a string"})

    result = approval_service.submit_response(
        rid, step_id, g.jwt_user_id, g.assignments, decision, comments,
        business_unit_id=bu_id,
    )
    return api_success(result.to_dict())


@approval_bp.route("/approvals/<int:rid>/cancel", methods=["POST"])
@require_member()
def cancel_request(bu_id, rid):
    req = approval_service.cancel_request(rid, g.jwt_user_id, business_unit_id=bu_id)
    return api_success({"request": req.to_dict()})
