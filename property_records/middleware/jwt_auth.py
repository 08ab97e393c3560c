"""
JWT Auth Middleware — parses the bearer token and builds the capability context.

Sets on ``flask.g`` for every /api/v1/ request:
    g.request_id   short correlation id (also echoed as X-Request-ID)
    g.jwt_user_id  int user id, or None when the token is missing/invalid
    g.assignments  list[Assignment] for the user's active memberships

Invalid or expired tokens never raise here; the route guards decide.
"""

import logging
import uuid

import jwt as pyjwt
from flask import g, request

from property_records.services.jwt_service import decode_access_token
from property_records.services.permission_service import load_assignments

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
)


def _user_id_from_header():
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:]
    try:
        payload = decode_access_token(token)
    except pyjwt.ExpiredSignatureError:
        logger.info("Expired access token on %s", request.path)
        return None
    except pyjwt.InvalidTokenError as exc:
        logger.warning("Invalid access token on %s: %s", request.path, exc)
        return None
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        logger.warning("Access token has a non-numeric subject on %s", request.path)
        return None


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        g.jwt_user_id = None
        g.assignments = []

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        user_id = _user_id_from_header()
        if user_id is None:
            return
        g.jwt_user_id = user_id
        g.assignments = load_assignments(user_id)

    @app.after_request
    def _echo_request_id(response):
        rid = getattr(g, "request_id", None)
        if rid:
            response.headers["X-Request-ID"] = rid
        return response
