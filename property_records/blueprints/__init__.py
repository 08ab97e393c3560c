"""
Blueprint registry helpers.

paginate_query:                  limit/offset pagination from query params
register_error_handlers:         DomainError / unexpected-error envelopes per blueprint
parse_enum_arg / json_body:      boundary parsing shared by every blueprint
"""

import logging

from flask import g, request
from werkzeug.exceptions import HTTPException

from property_records.core.exceptions import DomainError, ValidationError
from property_records.models import db
from property_records.utils.errors import E, api_error, domain_error_response

logger = logging.getLogger(__name__)

_HTTP_CODES = {
    401: E.UNAUTHENTICATED,
    403: E.FORBIDDEN,
    404: E.NOT_FOUND,
    429: E.RATE_LIMITED,
}


def paginate_query(query, default_limit=50, max_limit=500):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 50, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def json_body() -> dict:
    """The request's JSON object, or ValidationError for anything else."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def parse_enum_arg(enum_cls, value, field: str, *, required: bool = True):
    """Parse *value* into *enum_cls* at the boundary.

    Returns the enum's string value, or None when the value is absent and
    not required.
    """
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field} is required", details={field: f"{field} is required"})
        return None
    try:
        return enum_cls(value).value
    except ValueError:
        raise ValidationError(
            f"Invalid {field}",
            details={field: f"{field} must be one of {[e.value for e in enum_cls]}"},
        ) from None


def register_error_handlers(bp):
    """Attach the envelope error handlers to *bp*."""

    @bp.errorhandler(DomainError)
    def _handle_domain(error: DomainError):
        db.session.rollback()
        return domain_error_response(error)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException) and error.code and error.code < 500:
            return api_error(_HTTP_CODES.get(error.code, E.VALIDATION_REQUIRED), error.description,
                             status=error.code)
        logger.exception(
            "Unexpected error in %s endpoint=%s", bp.name, request.endpoint,
            extra={"request_id": getattr(g, "request_id", None),
                   "user_id": getattr(g, "jwt_user_id", None)},
        )
        db.session.rollback()
        return api_error(E.INTERNAL, "An unexpected error occurred")
