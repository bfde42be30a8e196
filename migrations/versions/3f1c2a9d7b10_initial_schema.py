"""initial_schema

Creates the TestMaster AI tables:
  - test_plans / test_cases / test_steps / test_executions
  - profiles / user_permissions / user_settings

Tables are created only when missing, so databases that already ran
db.create_all() in development can be stamped and upgraded safely.

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2026-10-19 09:12:41.118305
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '3f1c2a9d7b10'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── Test plans ────────────────────────────────────────────────────────
    if "test_plans" not in existing:
        op.create_table(
            "test_plans",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=False, comment="Creating user id"),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("objective", sa.Text(), nullable=True),
            sa.Column("scope", sa.Text(), nullable=True),
            sa.Column("approach", sa.Text(), nullable=True),
            sa.Column("criteria", sa.Text(), nullable=True, comment="Acceptance criteria"),
            sa.Column("resources", sa.Text(), nullable=True),
            sa.Column("schedule", sa.Text(), nullable=True),
            sa.Column("risks", sa.Text(), nullable=True),
            sa.Column("generated_by_ai", sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_test_plans_owner_id", "test_plans", ["owner_id"])
        op.create_index("ix_test_plans_updated_at", "test_plans", ["updated_at"])

    # ── Test cases + steps ────────────────────────────────────────────────
    if "test_cases" not in existing:
        op.create_table(
            "test_cases",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("plan_id", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("preconditions", sa.Text(), nullable=True),
            sa.Column("expected_result", sa.Text(), nullable=True),
            sa.Column("priority", sa.String(length=20), nullable=True,
                      comment="low | medium | high | critical"),
            sa.Column("type", sa.String(length=20), nullable=True,
                      comment="functional | integration | performance | security | usability"),
            sa.Column("generated_by_ai", sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(),
            sa.ForeignKeyConstraint(["plan_id"], ["test_plans.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_test_cases_owner_id", "test_cases", ["owner_id"])
        op.create_index("ix_test_cases_plan_id", "test_cases", ["plan_id"])
        op.create_index("ix_test_cases_updated_at", "test_cases", ["updated_at"])

    if "test_steps" not in existing:
        op.create_table(
            "test_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("test_case_id", sa.Integer(), nullable=False),
            sa.Column("order", sa.Integer(), nullable=False, comment="Sequential step number"),
            sa.Column("action", sa.Text(), nullable=False, comment="Action to perform"),
            sa.Column("expected_result", sa.Text(), nullable=True, comment="Expected outcome"),
            sa.ForeignKeyConstraint(["test_case_id"], ["test_cases.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_test_steps_test_case_id", "test_steps", ["test_case_id"])

    # ── Test executions ───────────────────────────────────────────────────
    if "test_executions" not in existing:
        op.create_table(
            "test_executions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("plan_id", sa.Integer(), nullable=False),
            sa.Column("case_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=True,
                      comment="passed | failed | blocked | not_tested"),
            sa.Column("actual_result", sa.Text(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("executed_by", sa.String(length=200), nullable=True),
            sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("generated_by_ai", sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(),
            sa.ForeignKeyConstraint(["plan_id"], ["test_plans.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["case_id"], ["test_cases.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_test_executions_owner_id", "test_executions", ["owner_id"])
        op.create_index("ix_test_executions_plan_id", "test_executions", ["plan_id"])
        op.create_index("ix_test_executions_case_id", "test_executions", ["case_id"])
        op.create_index("ix_test_executions_status", "test_executions", ["status"])
        op.create_index("ix_test_executions_updated_at", "test_executions", ["updated_at"])

    # ── Users, roles & permissions ────────────────────────────────────────
    if "profiles" not in existing:
        op.create_table(
            "profiles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("display_name", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="tester",
                      comment="master | admin | manager | tester"),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_profiles_user_id", "profiles", ["user_id"], unique=True)

    if "user_permissions" not in existing:
        op.create_table(
            "user_permissions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("manage_users", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("manage_plans", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("manage_cases", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("manage_executions", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("view_reports", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("use_ai", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_user_permissions_user_id", "user_permissions", ["user_id"], unique=True)

    if "user_settings" not in existing:
        op.create_table(
            "user_settings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("key", sa.String(length=100), nullable=False),
            sa.Column("value", sa.JSON(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "key", name="uq_user_setting_key"),
        )
        op.create_index("ix_user_settings_user_id", "user_settings", ["user_id"])


def downgrade():
    for table in (
        "user_settings", "user_permissions", "profiles",
        "test_executions", "test_steps", "test_cases", "test_plans",
    ):
        op.drop_table(table)
