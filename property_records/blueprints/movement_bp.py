"""
Property Movement Blueprint — releases, turnovers, returns.

Routes (all under /api/v1/business-units/<bu_id>):
  GET    /<kind>                         – list (status?)
  POST   /releases                       – open a release + its approval request
  POST   /turnovers                      – open a turnover + its approval request
  POST   /returns                        – open a return + its approval request
  GET    /<kind>/stats                   – counts per status (releases: per type, overdue)
  GET    /<kind>/<mid>                   – one movement
  PUT    /<kind>/<mid>                   – edit a PENDING movement's descriptive fields
  POST   /<kind>/<mid>/complete          – APPROVED → COMPLETED { received_by_id? }
  POST   /<kind>/<mid>/cancel            – PENDING/APPROVED → CANCELLED

<kind> is one of releases, turnovers, returns.
"""

from flask import Blueprint, g, request

from property_records.blueprints import (
    json_body,
    paginate_query,
    parse_enum_arg,
    register_error_handlers,
)
from property_records.middleware.permission_required import require_permission
from property_records.models.property import TransactionStatus
from property_records.services import movement_service
from property_records.utils.errors import api_success
from property_records.utils.helpers import parse_int

movement_bp = Blueprint("movements", __name__, url_prefix="/api/v1/business-units/<int:bu_id>")
register_error_handlers(movement_bp)

_KIND_PATTERN = "<any(releases, turnovers, returns):kind>"

_CREATORS = {
    "releases": movement_service.create_release,
    "turnovers": movement_service.create_turnover,
    "returns": movement_service.create_return,
}


@movement_bp.route(f"/{_KIND_PATTERN}", methods=["GET"])
@require_permission("PROPERTY", "read")
def list_movements(bu_id, kind):
    status = parse_enum_arg(TransactionStatus, request.args.get("status"), "status", required=False)
    items, total = paginate_query(movement_service.list_movements(kind, bu_id, status=status))
    return api_success({"items": [m.to_dict() for m in items], "total": total})


@movement_bp.route(f"/{_KIND_PATTERN}", methods=["POST"])
@require_permission("PROPERTY", "create")
def create_movement(bu_id, kind):
    movement = _CREATORS[kind](bu_id, json_body(), g.jwt_user_id)
    return api_success({
        "movement_id": movement.id,
        "approval_request_id": movement.approval_request_id,
        "movement": movement.to_dict(),
    }, status=201)


@movement_bp.route(f"/{_KIND_PATTERN}/stats", methods=["GET"])
@require_permission("PROPERTY", "read")
def movement_stats(bu_id, kind):
    return api_success({"stats": movement_service.get_movement_stats(kind, bu_id)})


@movement_bp.route(f"/{_KIND_PATTERN}/<int:mid>", methods=["GET"])
@require_permission("PROPERTY", "read")
def get_movement(bu_id, kind, mid):
    movement = movement_service.get_movement(kind, bu_id, mid)
    return api_success({"movement": movement.to_dict()})


@movement_bp.route(f"/{_KIND_PATTERN}/<int:mid>", methods=["PUT"])
@require_permission("PROPERTY", "update")
def update_movement(bu_id, kind, mid):
    movement = movement_service.update_movement(kind, bu_id, mid, json_body(), g.jwt_user_id)
    return api_success({"movement": movement.to_dict()})


@movement_bp.route(f"/{_KIND_PATTERN}/<int:mid>/complete", methods=["POST"])
@require_permission("PROPERTY", "update")
def complete_movement(bu_id, kind, mid):
    data = json_body()
    movement = movement_service.complete_movement(
        kind, bu_id, mid, g.jwt_user_id, received_by_id=parse_int(data.get("received_by_id")),
    )
    return api_success({"movement": movement.to_dict()})


@movement_bp.route(f"/{_KIND_PATTERN}/<int:mid>/cancel", methods=["POST"])
@require_permission("PROPERTY", "update")
def cancel_movement(bu_id, kind, mid):
    movement = movement_service.cancel_movement(kind, bu_id, mid, g.jwt_user_id)
    return api_success({"movement": movement.to_dict()})
