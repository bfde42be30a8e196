"""
TestMaster AI
Testing domain models.

Models:
    - TestPlan:       test strategy document owned by a user
    - TestCase:       individual test case, optionally linked to a plan
    - TestStep:       ordered step within a test case
    - TestExecution:  recorded run of a test case within a plan

Architecture ref:
    Test Plan ──1:N──▶ Test Case ──1:N──▶ Test Step
    Test Plan ──1:N──▶ Test Execution ◀──N:1── Test Case

Every record carries owner_id (identity provider user id) and the
generated_by_ai marker set by the AI generation flows.
"""

from datetime import datetime, timezone

from testmaster.models import db


# ── Constants ────────────────────────────────────────────────────────────

CASE_PRIORITIES = {"low", "medium", "high", "critical"}

CASE_TYPES = {"functional", "integration", "performance", "security", "usability"}

EXECUTION_STATUSES = {"passed", "failed", "blocked", "not_tested"}

# Content fields the AI flows may fill in, per record kind
PLAN_FIELDS = (
    "title", "description", "objective", "scope", "approach",
    "criteria", "resources", "schedule", "risks",
)
CASE_FIELDS = (
    "title", "description", "preconditions", "expected_result", "priority", "type",
)
EXECUTION_FIELDS = ("status", "actual_result", "notes", "executed_by")


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# TEST PLAN
# ═════════════════════════════════════════════════════════════════════════════

class TestPlan(db.Model):
    """
    Test strategy document.

    Holds the objective, scope, approach and acceptance criteria of a
    testing effort. Cases and executions hang off it.
    """

    __tablename__ = "test_plans"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.String(64), nullable=False, index=True, comment="Creating user id")
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    objective = db.Column(db.Text, default="")
    scope = db.Column(db.Text, default="")
    approach = db.Column(db.Text, default="")
    criteria = db.Column(db.Text, default="", comment="Acceptance criteria")
    resources = db.Column(db.Text, default="")
    schedule = db.Column(db.Text, default="")
    risks = db.Column(db.Text, default="")
    generated_by_ai = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        index=True,
    )

    # ── Relationships
    cases = db.relationship(
        "TestCase", backref="plan", lazy="dynamic",
        passive_deletes=True,
    )
    executions = db.relationship(
        "TestExecution", backref="plan", lazy="dynamic",
        cascade="all, delete",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "description": self.description,
            "objective": self.objective,
            "scope": self.scope,
            "approach": self.approach,
            "criteria": self.criteria,
            "resources": self.resources,
            "schedule": self.schedule,
            "risks": self.risks,
            "generated_by_ai": self.generated_by_ai,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<TestPlan {self.id}: {self.title}>"


# ═════════════════════════════════════════════════════════════════════════════
# TEST CASE
# ═════════════════════════════════════════════════════════════════════════════

class TestCase(db.Model):
    """Individual test case with ordered steps."""

    __tablename__ = "test_cases"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.String(64), nullable=False, index=True)
    plan_id = db.Column(
        db.Integer, db.ForeignKey("test_plans.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    preconditions = db.Column(db.Text, default="")
    expected_result = db.Column(db.Text, default="")
    priority = db.Column(
        db.String(20), default="medium",
        comment="low | medium | high | critical",
    )
    type = db.Column(
        db.String(20), default="functional",
        comment="functional | integration | performance | security | usability",
    )
    generated_by_ai = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        index=True,
    )

    steps = db.relationship(
        "TestStep", backref="test_case", lazy="select",
        cascade="all, delete-orphan", order_by="TestStep.order",
    )
    executions = db.relationship(
        "TestExecution", backref="test_case", lazy="dynamic",
        cascade="all, delete",
    )

    def to_dict(self, include_steps=True):
        result = {
            "id": self.id,
            "owner_id": self.owner_id,
            "plan_id": self.plan_id,
            "title": self.title,
            "description": self.description,
            "preconditions": self.preconditions,
            "expected_result": self.expected_result,
            "priority": self.priority,
            "type": self.type,
            "generated_by_ai": self.generated_by_ai,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_steps:
            result["steps"] = [s.to_dict() for s in self.steps]
        return result

    def __repr__(self):
        return f"<TestCase {self.id}: {self.title}>"


class TestStep(db.Model):
    """Atomic step within a test case."""

    __tablename__ = "test_steps"

    id = db.Column(db.Integer, primary_key=True)
    test_case_id = db.Column(
        db.Integer, db.ForeignKey("test_cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    order = db.Column(db.Integer, nullable=False, default=1, comment="Sequential step number")
    action = db.Column(db.Text, nullable=False, comment="Action to perform")
    expected_result = db.Column(db.Text, default="", comment="Expected outcome")

    def to_dict(self):
        return {
            "id": self.id,
            "order": self.order,
            "action": self.action,
            "expected_result": self.expected_result,
        }

    def __repr__(self):
        return f"<TestStep {self.id}: case#{self.test_case_id} step#{self.order}>"


# ═════════════════════════════════════════════════════════════════════════════
# TEST EXECUTION
# ═════════════════════════════════════════════════════════════════════════════

class TestExecution(db.Model):
    """Recorded run of a test case within a plan."""

    __tablename__ = "test_executions"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.String(64), nullable=False, index=True)
    plan_id = db.Column(
        db.Integer, db.ForeignKey("test_plans.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    case_id = db.Column(
        db.Integer, db.ForeignKey("test_cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    status = db.Column(
        db.String(20), default="not_tested", index=True,
        comment="passed | failed | blocked | not_tested",
    )
    actual_result = db.Column(db.Text, default="")
    notes = db.Column(db.Text, default="")
    executed_by = db.Column(db.String(200), default="")
    executed_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    generated_by_ai = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        index=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "plan_id": self.plan_id,
            "case_id": self.case_id,
            "status": self.status,
            "actual_result": self.actual_result,
            "notes": self.notes,
            "executed_by": self.executed_by,
            "executed_at": _iso(self.executed_at),
            "generated_by_ai": self.generated_by_ai,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<TestExecution {self.id}: case#{self.case_id} {self.status}>"
