"""
Permission Decorators — capability checks for API routes.

Usage:
    @testing_bp.route("/plans", methods=["POST"])
    @require_permission("manage_plans")
    def create_plan():
        ...

    @ai_bp.route("/models", methods=["POST"])
    @require_admin
    def add_model():
        ...

The resolver lives in app.extensions["testmaster.permissions"]; the
resolved result is cached on g for the rest of the request.
"""

import functools
import logging

from flask import current_app, g

from testmaster.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def current_permissions():
    """ResolvedPermissions for g.user_id, resolved once per request."""
    cached = getattr(g, "permissions", None)
    if cached is not None and cached.user_id == (getattr(g, "user_id", None) or ""):
        return cached
    resolver = current_app.extensions["testmaster.permissions"]
    g.permissions = resolver.resolve(getattr(g, "user_id", None) or "")
    return g.permissions


def require_permission(codename: str):
    """
    Decorator: the current user must hold ``codename``.

    master and admin pass every check.
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            if getattr(g, "user_id", None) is None:
                return api_error(E.UNAUTHENTICATED, "Authentication required")
            if not current_permissions().has_permission(codename):
                logger.warning("User %s denied: missing permission '%s' on %s",
                               g.user_id, codename, f.__name__)
                return api_error(E.FORBIDDEN, "Permission denied", details={"required": codename})
            return f(*args, **kwargs)
        return decorated
    return decorator


def require_admin(f):
    """Decorator: the current user's role must be admin or master."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if getattr(g, "user_id", None) is None:
            return api_error(E.UNAUTHENTICATED, "Authentication required")
        if not current_permissions().is_admin():
            logger.warning("User %s denied: admin role required on %s", g.user_id, f.__name__)
            return api_error(E.FORBIDDEN, "Permission denied", details={"required": "admin"})
        return f(*args, **kwargs)
    return decorated


def can_access_record(record) -> bool:
    """Owners may act on their records; admin and master on anyone's."""
    return record.owner_id == g.user_id or current_permissions().is_admin()
