"""
TestMaster AI
Auth / RBAC models.

Models:
    - Profile:         user profile with a single role
    - UserPermission:  six capability flags per user
    - UserSetting:     per-user JSON settings (remote copy of the model registry config)

Users themselves live in the external identity provider; user_id is its
opaque subject string.
"""

from datetime import datetime, timezone

from testmaster.models import db


# ── Constants ────────────────────────────────────────────────────────────

ROLES = ("master", "admin", "manager", "tester")

# Roles granted every permission regardless of stored flags
SUPERUSER_ROLES = {"master", "admin"}

PERMISSIONS = (
    "manage_users",
    "manage_plans",
    "manage_cases",
    "manage_executions",
    "view_reports",
    "use_ai",
)

DEFAULT_ROLE = "tester"

# Tester set: everything except user management
DEFAULT_PERMISSIONS = {
    "manage_users": False,
    "manage_plans": True,
    "manage_cases": True,
    "manage_executions": True,
    "view_reports": True,
    "use_ai": True,
}


class Profile(db.Model):
    """Identity-provider user mirrored locally with a role."""

    __tablename__ = "profiles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    email = db.Column(db.String(255), default="")
    display_name = db.Column(db.String(200), default="")
    role = db.Column(
        db.String(20), nullable=False, default=DEFAULT_ROLE,
        comment="master | admin | manager | tester",
    )
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Profile {self.user_id}: {self.role}>"


class UserPermission(db.Model):
    """Capability flags for one user."""

    __tablename__ = "user_permissions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    manage_users = db.Column(db.Boolean, nullable=False, default=False)
    manage_plans = db.Column(db.Boolean, nullable=False, default=True)
    manage_cases = db.Column(db.Boolean, nullable=False, default=True)
    manage_executions = db.Column(db.Boolean, nullable=False, default=True)
    view_reports = db.Column(db.Boolean, nullable=False, default=True)
    use_ai = db.Column(db.Boolean, nullable=False, default=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def flags(self) -> dict[str, bool]:
        return {name: bool(getattr(self, name)) for name in PERMISSIONS}

    def to_dict(self):
        return {"user_id": self.user_id, **self.flags()}

    def __repr__(self):
        return f"<UserPermission {self.user_id}>"


class UserSetting(db.Model):
    """Free-form JSON setting stored per user and key."""

    __tablename__ = "user_settings"
    __table_args__ = (
        db.UniqueConstraint("user_id", "key", name="uq_user_setting_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    key = db.Column(db.String(100), nullable=False)
    value = db.Column(db.JSON, nullable=False, default=dict)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self):
        return f"<UserSetting {self.user_id}:{self.key}>"
