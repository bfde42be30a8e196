"""
Permission Service — role and capability resolution.

Each user has one role (master | admin | manager | tester) and six
capability flags. master and admin hold every capability regardless of
the stored flags.

Resolution never blocks the caller: if the role or flags cannot be read
(database error, user never provisioned) the configured fallback applies:
    "default"  tester role with the tester capability set
    "deny"     tester role with no capabilities

Usage:
    resolver = PermissionResolver(storage, fallback="default")
    perms = resolver.resolve("user-1")
    if perms.has_permission("use_ai"):
        ...
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from testmaster.core.exceptions import PermissionDenied, PersistenceError
from testmaster.models import db
from testmaster.models.auth import (
    DEFAULT_PERMISSIONS,
    DEFAULT_ROLE,
    PERMISSIONS,
    ROLES,
    SUPERUSER_ROLES,
)

logger = logging.getLogger(__name__)

FALLBACK_MODES = ("default", "deny")


@dataclass
class ResolvedPermissions:
    """Role and flags of one user, as seen by route gating."""

    user_id: str
    role: str
    permissions: dict[str, bool] = field(default_factory=dict)
    fallback: bool = False

    def has_permission(self, name: str) -> bool:
        if self.role in SUPERUSER_ROLES:
            return True
        return bool(self.permissions.get(name, False))

    def is_admin(self) -> bool:
        return self.role in SUPERUSER_ROLES

    def is_master(self) -> bool:
        return self.role == "master"

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "role": self.role,
            "permissions": {name: self.has_permission(name) for name in PERMISSIONS},
            "stored_permissions": dict(self.permissions),
            "is_admin": self.is_admin(),
            "is_master": self.is_master(),
            "fallback": self.fallback,
        }


def fallback_permissions(mode: str = "default") -> dict[str, bool]:
    if mode == "deny":
        return {name: False for name in PERMISSIONS}
    return dict(DEFAULT_PERMISSIONS)


class PermissionResolver:
    """Reads roles and flags through the storage service."""

    def __init__(self, storage, fallback: str = "default"):
        if fallback not in FALLBACK_MODES:
            raise ValueError(f"fallback must be one of {FALLBACK_MODES}, got {fallback!r}")
        self.storage = storage
        self.fallback = fallback

    def _fallback(self, user_id: str) -> ResolvedPermissions:
        return ResolvedPermissions(
            user_id=user_id,
            role=DEFAULT_ROLE,
            permissions=fallback_permissions(self.fallback),
            fallback=True,
        )

    def resolve(self, user_id: str) -> ResolvedPermissions:
        if not user_id:
            return self._fallback("")
        try:
            role = self.storage.get_user_role(user_id)
            flags = self.storage.get_user_permissions(user_id)
        except (SQLAlchemyError, PersistenceError) as e:
            db.session.rollback()
            logger.warning("Permission lookup failed for %s, using %s fallback: %s",
                           user_id, self.fallback, e)
            return self._fallback(user_id)

        if role is None or role not in ROLES:
            logger.debug("No usable role for %s, using %s fallback", user_id, self.fallback)
            return self._fallback(user_id)
        if flags is None:
            flags = fallback_permissions(self.fallback)
        return ResolvedPermissions(user_id=user_id, role=role, permissions=flags)

    def has_permission(self, user_id: str, name: str) -> bool:
        return self.resolve(user_id).has_permission(name)

    # ── Administration ────────────────────────────────────────────────────

    def _require_manager(self, actor_id: str):
        if not self.resolve(actor_id).has_permission("manage_users"):
            logger.warning("User %s denied: missing permission 'manage_users'", actor_id)
            raise PermissionDenied("manage_users", actor_id)

    def provision_user(self, user_id: str, email: str = "", display_name: str = ""):
        return self.storage.provision_user(user_id, email=email, display_name=display_name)

    def update_role(self, actor_id: str, user_id: str, role: str):
        self._require_manager(actor_id)
        # Only a master can hand out or take away master
        if role == "master" or self.storage.get_user_role(user_id) == "master":
            if not self.resolve(actor_id).is_master():
                raise PermissionDenied("master", actor_id)
        profile = self.storage.set_user_role(user_id, role)
        logger.info("Role of %s set to %s by %s", user_id, role, actor_id)
        return profile

    def update_permissions(self, actor_id: str, user_id: str, values: dict) -> dict[str, bool]:
        self._require_manager(actor_id)
        flags = self.storage.set_user_permissions(user_id, values)
        logger.info("Permissions of %s updated by %s: %s", user_id, actor_id, sorted(values))
        return flags
