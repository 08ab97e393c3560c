"""
JWT Service — bearer tokens for the API.

Only access tokens are issued here; login and refresh belong to the
identity provider in front of this service.  Claims:

    sub   user id as a string
    typ   "access"
    iat / exp / jti

Memberships and roles are not embedded.  The middleware loads them per
request, so removing a membership takes effect on the next call.
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

ALGORITHM = "HS256"
TOKEN_TYPE = "access"
REQUIRED_CLAIMS = ["sub", "exp", "iat"]


def _signing_key() -> str:
    cfg = current_app.config
    return cfg.get("JWT_SECRET_KEY") or cfg["SECRET_KEY"]


def generate_access_token(user_id: int, expires_in: int | None = None) -> str:
    """Sign an access token for *user_id*.

    *expires_in* (seconds) defaults to ``JWT_ACCESS_EXPIRES``.
    """
    lifetime = expires_in if expires_in is not None else current_app.config["JWT_ACCESS_EXPIRES"]
    issued = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "typ": TOKEN_TYPE,
        "iat": issued,
        "exp": issued + timedelta(seconds=lifetime),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, _signing_key(), algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Verify *token* and return its claims.

    Raises ``jwt.ExpiredSignatureError`` or another ``jwt.InvalidTokenError``.
    """
    claims = jwt.decode(
        token,
        _signing_key(),
        algorithms=[ALGORITHM],
        options={"require": REQUIRED_CLAIMS},
        leeway=current_app.config.get("JWT_LEEWAY", 0),
    )
    if claims.get("typ") != TOKEN_TYPE:
        raise jwt.InvalidTokenError(f"not an {TOKEN_TYPE} token")
    return claims
