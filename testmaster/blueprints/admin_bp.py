"""
TestMaster AI
Admin Blueprint — current user and user management.

Endpoints (url_prefix=/api/v1):
    GET    /me                              — Profile (provisioned on first call) + permissions
    GET    /me/permissions                  — Resolved role and capability flags

    GET    /admin/users                     — List users with role and flags   (manage_users)
    GET    /admin/users/<uid>               — One user                          (manage_users)
    PUT    /admin/users/<uid>/role          — {role}                            (manage_users)
    PUT    /admin/users/<uid>/permissions   — {flag: bool, ...}                 (manage_users)
    DELETE /admin/users/<uid>               — Remove access                     (master)
"""

import logging

from flask import Blueprint, g, jsonify

from testmaster.blueprints import service
from testmaster.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from testmaster.middleware.permission_required import current_permissions, require_permission
from testmaster.models.auth import PERMISSIONS, ROLES
from testmaster.utils.helpers import json_body

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/api/v1")


def _user_payload(profile) -> dict:
    resolved = service("permissions").resolve(profile.user_id)
    return {**profile.to_dict(), **resolved.to_dict()}


# ── Current user ─────────────────────────────────────────────────────────

@admin_bp.route("/me", methods=["GET"])
def me():
    claims = getattr(g, "jwt_claims", {}) or {}
    profile = service("permissions").provision_user(
        g.user_id,
        email=claims.get("email", ""),
        display_name=(claims.get("user_metadata") or {}).get("full_name", ""),
    )
    return jsonify(_user_payload(profile))


@admin_bp.route("/me/permissions", methods=["GET"])
def my_permissions():
    return jsonify(current_permissions().to_dict())


# ── User management ──────────────────────────────────────────────────────

@admin_bp.route("/admin/users", methods=["GET"])
@require_permission("manage_users")
def list_users():
    profiles = service("storage").list_profiles()
    return jsonify({
        "items": [_user_payload(p) for p in profiles],
        "total": len(profiles),
        "roles": list(ROLES),
        "permissions": list(PERMISSIONS),
    })


@admin_bp.route("/admin/users/<user_id>", methods=["GET"])
@require_permission("manage_users")
def get_user(user_id):
    profile = service("storage").get_profile(user_id)
    if profile is None:
        raise NotFoundError("User", user_id)
    return jsonify(_user_payload(profile))


@admin_bp.route("/admin/users/<user_id>/role", methods=["PUT"])
@require_permission("manage_users")
def update_role(user_id):
    role = str(json_body().get("role") or "").strip()
    if not role:
        raise ValidationError("role is required", {"role": "required"})
    if service("storage").get_profile(user_id) is None:
        raise NotFoundError("User", user_id)
    profile = service("permissions").update_role(g.user_id, user_id, role)
    return jsonify(_user_payload(profile))


@admin_bp.route("/admin/users/<user_id>/permissions", methods=["PUT"])
@require_permission("manage_users")
def update_permissions(user_id):
    data = json_body()
    values = data.get("permissions", data)
    if not isinstance(values, dict) or not values:
        raise ValidationError("permissions object is required", {"permissions": "required"})
    storage = service("storage")
    if storage.get_profile(user_id) is None:
        raise NotFoundError("User", user_id)
    service("permissions").update_permissions(g.user_id, user_id, values)
    return jsonify(_user_payload(storage.get_profile(user_id)))


@admin_bp.route("/admin/users/<user_id>", methods=["DELETE"])
@require_permission("manage_users")
def delete_user(user_id):
    if not current_permissions().is_master():
        raise PermissionDenied("master", g.user_id)
    if user_id == g.user_id:
        raise ValidationError("You cannot delete your own account", {"user_id": "self"})
    storage = service("storage")
    if storage.get_user_role(user_id) == "master":
        raise ValidationError("A master account cannot be deleted", {"user_id": "master"})
    if not storage.delete_user(user_id):
        raise NotFoundError("User", user_id)
    return jsonify({"message": "User deleted", "user_id": user_id})
