"""Response envelopes for every API action.

    {"success": true, ...payload}
    {"success": false, "error": "<message>", "code": "ERR_...", "details"?: {...}}
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Error codes returned in the ``code`` field."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    INTERNAL = "ERR_INTERNAL"

    STATUS = {
        VALIDATION_REQUIRED: 400,
        VALIDATION_INVALID: 422,
        UNAUTHENTICATED: 401,
        FORBIDDEN: 403,
        NOT_FOUND: 404,
        CONFLICT_DUPLICATE: 409,
        CONFLICT_STATE: 409,
        RATE_LIMITED: 429,
        INTERNAL: 500,
    }


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Failure envelope; the status defaults from ``E.STATUS`` (400 if unknown)."""
    body = {"success": False, "error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or E.STATUS.get(code, 400)


def api_success(payload: dict | None = None, *, status: int = 200):
    return jsonify({"success": True, **(payload or {})}), status


def domain_error_response(error):
    """Envelope for a ``DomainError`` raised by a service."""
    return api_error(
        error.code, error.message,
        status=error.http_status,
        details=getattr(error, "details", None),
    )
