"""
JWT Auth Middleware — identifies the caller and sets g.user_id.

Sources, in order:
  1. Authorization: Bearer <token>   HS256 token from the identity provider, user id in "sub"
  2. access_token cookie             same token, for browser page loads
  3. X-User-Id header                only when AUTH_REQUIRED is false (dev / tests)

API requests without an identified user get 401, except health checks.
Browser routes handle the anonymous case themselves (redirect to /login).
"""

import logging
from datetime import datetime, timedelta, timezone

import jwt as pyjwt
from flask import current_app, g, request

from testmaster.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_ACCESS_EXPIRES = 3600

# Paths that never require a user
PUBLIC_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def _secret() -> str:
    return current_app.config.get("AUTH_JWT_SECRET") or current_app.config["SECRET_KEY"]


def encode_access_token(user_id: str, expires_in: int = DEFAULT_ACCESS_EXPIRES, **claims) -> str:
    """Issue a token in the identity provider's format (used by tests and local tooling)."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "aud": current_app.config.get("AUTH_JWT_AUDIENCE", "authenticated"),
        "iat": now,
        "exp": now + timedelta(seconds=expires_in),
        **claims,
    }
    return pyjwt.encode(payload, _secret(), algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Verify signature, expiry and audience. Raises jwt.InvalidTokenError."""
    return pyjwt.decode(
        token,
        _secret(),
        algorithms=[ALGORITHM],
        audience=current_app.config.get("AUTH_JWT_AUDIENCE", "authenticated"),
        options={"require": ["sub", "exp"]},
    )


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get("access_token") or None


def init_jwt_middleware(app):
    """Register the authentication before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.user_id = None
        g.jwt_claims = {}
        g.pop("permissions", None)

        path = request.path
        for prefix in PUBLIC_PREFIXES:
            if path.startswith(prefix):
                return None

        token = _bearer_token()
        if token:
            try:
                payload = decode_access_token(token)
                g.user_id = str(payload["sub"])
                g.jwt_claims = payload
            except pyjwt.ExpiredSignatureError:
                logger.info("Expired token on %s", path)
            except pyjwt.InvalidTokenError as e:
                logger.warning("Invalid token on %s: %s", path, e)

        if g.user_id is None and not app.config.get("AUTH_REQUIRED", True):
            header_user = request.headers.get("X-User-Id", "").strip()
            if header_user:
                g.user_id = header_user

        if g.user_id is None and path.startswith("/api/"):
            return api_error(E.UNAUTHENTICATED, "Authentication required")
        return None
