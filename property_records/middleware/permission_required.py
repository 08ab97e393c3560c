"""
Permission Decorators — business-unit-scoped guards for route protection.

The business unit comes from the ``bu_id`` URL variable.

Usage:
    @bp.route("/business-units/<int:bu_id>/workflows", methods=["POST"])
    @require_permission("APPROVAL", "create")
    def create_workflow(bu_id):
        ...

    @bp.route("/business-units/<int:bu_id>/approvals/<int:request_id>/respond", methods=["POST"])
    @require_member()
    def respond(bu_id, request_id):
        ...

401 when there is no authenticated user; 403 when the user is not an
active member of the business unit or the role lacks the capability.
"""

import functools
import logging

from flask import g

from property_records.services.permission_service import has_permission, is_member
from property_records.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def _check_member(kwargs):
    user_id = getattr(g, "jwt_user_id", None)
    if user_id is None:
        return api_error(E.UNAUTHENTICATED, "Authentication required")
    bu_id = kwargs.get("bu_id")
    if not is_member(getattr(g, "assignments", []), bu_id):
        logger.warning(
            "User %s denied: not a member of business unit %s", user_id, bu_id,
            extra={"user_id": user_id, "business_unit_id": bu_id, "event_type": "access.denied"},
        )
        return api_error(E.FORBIDDEN, "Access denied to this business unit")
    return None


def require_member():
    """Decorator: require an active membership in the URL's business unit."""
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            err = _check_member(kwargs)
            if err:
                return err
            return f(*args, **kwargs)
        return decorated
    return decorator


def require_permission(module: str, capability: str):
    """
    Decorator: require the role held in the URL's business unit to grant
    *capability* on *module*.

    Args:
        module:     One of PROPERTY, RPT, USER_MANAGEMENT, APPROVAL, DOCUMENTS, AUDIT.
        capability: One of create, read, update, delete, approve.
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            err = _check_member(kwargs)
            if err:
                return err
            bu_id = kwargs.get("bu_id")
            if not has_permission(g.assignments, bu_id, module, capability):
                logger.warning(
                    "User %s denied: missing %s.%s on %s",
                    g.jwt_user_id, module, capability, f.__name__,
                    extra={"user_id": g.jwt_user_id, "business_unit_id": bu_id,
                           "event_type": "permission.denied"},
                )
                return api_error(
                    E.FORBIDDEN, "Permission denied",
                    details={"required": f"{module}.{capability}"},
                )
            return f(*args, **kwargs)
        return decorated
    return decorator
