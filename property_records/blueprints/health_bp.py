"""
Health endpoints (no token required).

    GET /api/v1/health        process is up
    GET /api/v1/health/live   database round-trip and resolution handlers;
                              503 when either is missing
"""

import logging
import time

from flask import Blueprint, jsonify
from sqlalchemy.exc import SQLAlchemyError

from property_records.models import db
from property_records.models.approval import ApprovalEntityType
from property_records.services.approval_service import get_resolution_handler

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

_MOVEMENT_ENTITY_TYPES = (
    ApprovalEntityType.PROPERTY_RELEASE,
    ApprovalEntityType.PROPERTY_TURNOVER,
    ApprovalEntityType.PROPERTY_RETURN,
)


@health_bp.route("", methods=["GET"])
def ready():
    return jsonify({"status": "ok", "app": "Property Records"}), 200


def _check_database():
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Health check: database unreachable: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


def _check_handlers():
    missing = [t.value for t in _MOVEMENT_ENTITY_TYPES if get_resolution_handler(t.value) is None]
    if missing:
        logger.error("Health check: no resolution handler for %s", missing)
        return {"status": "error", "missing": missing}
    return {"status": "ok"}


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {"database": _check_database(), "resolution_handlers": _check_handlers()}
    healthy = all(c["status"] == "ok" for c in checks.values())
    return jsonify({"status": "ok" if healthy else "degraded", "checks": checks}), 200 if healthy else 503
