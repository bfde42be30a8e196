"""
Storage Service — relational persistence for test records and user access data.

All reads are ordered newest first (updated_at desc). Writes commit
immediately; a database failure rolls back and raises PersistenceError.

Usage:
    from testmaster.services.storage_service import StorageService
    storage = StorageService()
    plan = storage.create_plan({"title": "Checkout", "owner_id": "u-1"})
"""

import logging

from testmaster.core.exceptions import NotFoundError, ValidationError
from testmaster.models import db
from testmaster.models.auth import (
    DEFAULT_PERMISSIONS,
    DEFAULT_ROLE,
    PERMISSIONS,
    ROLES,
    Profile,
    UserPermission,
    UserSetting,
)
from testmaster.models.testing import (
    CASE_FIELDS,
    CASE_PRIORITIES,
    CASE_TYPES,
    EXECUTION_FIELDS,
    EXECUTION_STATUSES,
    PLAN_FIELDS,
    TestCase,
    TestExecution,
    TestPlan,
    TestStep,
)
from testmaster.utils.helpers import commit_or_raise

logger = logging.getLogger(__name__)


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "\n".join(f"- {v}" for v in value)
    if isinstance(value, dict):
        return "\n".join(f"{k}: {v}" for k, v in value.items())
    return str(value)


def _int_or_none(value, field_name):
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name} must be an integer", {field_name: "invalid"}) from exc


def normalize_steps(steps) -> list[dict]:
    """Coerce step input into [{order, action, expected_result}] sorted by order.

    Accepts a list of dicts or strings, or a newline separated string.
    """
    if not steps:
        return []
    if isinstance(steps, str):
        steps = [line.strip() for line in steps.splitlines() if line.strip()]
    result = []
    for index, step in enumerate(steps, start=1):
        if isinstance(step, dict):
            action = _text(step.get("action") or step.get("description")).strip()
            if not action:
                continue
            try:
                order = int(step.get("order") or index)
            except (TypeError, ValueError):
                order = index
            result.append({
                "order": order,
                "action": action,
                "expected_result": _text(step.get("expected_result") or step.get("expected")),
            })
        elif str(step).strip():
            result.append({"order": index, "action": str(step).strip(), "expected_result": ""})
    result.sort(key=lambda s: s["order"])
    return result


class StorageService:
    """Relational storage collaborator (Flask-SQLAlchemy session)."""

    # ── Plans ─────────────────────────────────────────────────────────────

    def list_plans(self, owner_id: str | None = None) -> list[TestPlan]:
        q = TestPlan.query
        if owner_id is not None:
            q = q.filter_by(owner_id=owner_id)
        return q.order_by(TestPlan.updated_at.desc(), TestPlan.id.desc()).all()

    def get_plan(self, plan_id) -> TestPlan | None:
        return db.session.get(TestPlan, plan_id)

    def create_plan(self, fields: dict) -> TestPlan:
        title = _text(fields.get("title")).strip()
        if not title:
            raise ValidationError("Title is required", {"title": "required"})
        if not fields.get("owner_id"):
            raise ValidationError("owner_id is required", {"owner_id": "required"})
        plan = TestPlan(
            owner_id=fields["owner_id"],
            generated_by_ai=bool(fields.get("generated_by_ai", False)),
            **{name: _text(fields.get(name)) for name in PLAN_FIELDS if name != "title"},
        )
        plan.title = title[:300]
        db.session.add(plan)
        commit_or_raise()
        logger.info("Created test plan #%d for %s (ai=%s)", plan.id, plan.owner_id, plan.generated_by_ai)
        return plan

    def update_plan(self, plan_id, fields: dict) -> TestPlan:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise NotFoundError("TestPlan", plan_id)
        if "title" in fields and not _text(fields["title"]).strip():
            raise ValidationError("Title is required", {"title": "required"})
        for name in PLAN_FIELDS:
            if name in fields:
                setattr(plan, name, _text(fields[name]))
        commit_or_raise()
        return plan

    def delete_plan(self, plan_id) -> bool:
        plan = self.get_plan(plan_id)
        if plan is None:
            return False
        # Cases outlive their plan
        TestCase.query.filter_by(plan_id=plan.id).update({"plan_id": None})
        db.session.delete(plan)
        commit_or_raise()
        logger.info("Deleted test plan #%s", plan_id)
        return True

    # ── Cases ─────────────────────────────────────────────────────────────

    def list_cases(self, owner_id: str | None = None, plan_id=None) -> list[TestCase]:
        q = TestCase.query
        if owner_id is not None:
            q = q.filter_by(owner_id=owner_id)
        if plan_id is not None:
            q = q.filter_by(plan_id=plan_id)
        return q.order_by(TestCase.updated_at.desc(), TestCase.id.desc()).all()

    def get_case(self, case_id) -> TestCase | None:
        return db.session.get(TestCase, case_id)

    def _validate_case_enums(self, fields: dict):
        errors = {}
        if fields.get("priority") and fields["priority"] not in CASE_PRIORITIES:
            errors["priority"] = f"must be one of {', '.join(sorted(CASE_PRIORITIES))}"
        if fields.get("type") and fields["type"] not in CASE_TYPES:
            errors["type"] = f"must be one of {', '.join(sorted(CASE_TYPES))}"
        if errors:
            raise ValidationError("Invalid test case fields", errors)

    def _check_plan(self, plan_id):
        if plan_id is not None and self.get_plan(plan_id) is None:
            raise ValidationError("Referenced test plan does not exist", {"plan_id": "not found"})

    def _replace_steps(self, case: TestCase, steps):
        case.steps = [
            TestStep(order=s["order"], action=s["action"], expected_result=s["expected_result"])
            for s in normalize_steps(steps)
        ]

    def create_case(self, fields: dict) -> TestCase:
        title = _text(fields.get("title")).strip()
        if not title:
            raise ValidationError("Title is required", {"title": "required"})
        if not fields.get("owner_id"):
            raise ValidationError("owner_id is required", {"owner_id": "required"})
        self._validate_case_enums(fields)
        plan_id = _int_or_none(fields.get("plan_id"), "plan_id")
        self._check_plan(plan_id)

        case = TestCase(
            owner_id=fields["owner_id"],
            plan_id=plan_id,
            title=title[:300],
            description=_text(fields.get("description")),
            preconditions=_text(fields.get("preconditions")),
            expected_result=_text(fields.get("expected_result")),
            priority=fields.get("priority") or "medium",
            type=fields.get("type") or "functional",
            generated_by_ai=bool(fields.get("generated_by_ai", False)),
        )
        self._replace_steps(case, fields.get("steps"))
        db.session.add(case)
        commit_or_raise()
        logger.info("Created test case #%d for %s (ai=%s)", case.id, case.owner_id, case.generated_by_ai)
        return case

    def update_case(self, case_id, fields: dict) -> TestCase:
        case = self.get_case(case_id)
        if case is None:
            raise NotFoundError("TestCase", case_id)
        if "title" in fields and not _text(fields["title"]).strip():
            raise ValidationError("Title is required", {"title": "required"})
        self._validate_case_enums(fields)
        if "plan_id" in fields:
            plan_id = _int_or_none(fields.get("plan_id"), "plan_id")
            self._check_plan(plan_id)
            case.plan_id = plan_id
        for name in CASE_FIELDS:
            if name in fields and name not in ("priority", "type"):
                setattr(case, name, _text(fields[name]))
        for name in ("priority", "type"):
            if fields.get(name):
                setattr(case, name, fields[name])
        if "steps" in fields:
            self._replace_steps(case, fields["steps"])
        commit_or_raise()
        return case

    def delete_case(self, case_id) -> bool:
        case = self.get_case(case_id)
        if case is None:
            return False
        db.session.delete(case)
        commit_or_raise()
        logger.info("Deleted test case #%s", case_id)
        return True

    # ── Executions ────────────────────────────────────────────────────────

    def list_executions(self, owner_id: str | None = None, plan_id=None, case_id=None,
                        status: str | None = None) -> list[TestExecution]:
        q = TestExecution.query
        if owner_id is not None:
            q = q.filter_by(owner_id=owner_id)
        if plan_id is not None:
            q = q.filter_by(plan_id=plan_id)
        if case_id is not None:
            q = q.filter_by(case_id=case_id)
        if status:
            q = q.filter_by(status=status)
        return q.order_by(TestExecution.updated_at.desc(), TestExecution.id.desc()).all()

    def get_execution(self, execution_id) -> TestExecution | None:
        return db.session.get(TestExecution, execution_id)

    def create_execution(self, fields: dict) -> TestExecution:
        if not fields.get("owner_id"):
            raise ValidationError("owner_id is required", {"owner_id": "required"})
        plan_id = _int_or_none(fields.get("plan_id"), "plan_id")
        case_id = _int_or_none(fields.get("case_id"), "case_id")
        errors = {}
        if plan_id is None:
            errors["plan_id"] = "required"
        if case_id is None:
            errors["case_id"] = "required"
        status = fields.get("status") or "not_tested"
        if status not in EXECUTION_STATUSES:
            errors["status"] = f"must be one of {', '.join(sorted(EXECUTION_STATUSES))}"
        if errors:
            raise ValidationError("Invalid test execution fields", errors)
        if self.get_plan(plan_id) is None:
            raise ValidationError("Referenced test plan does not exist", {"plan_id": "not found"})
        if self.get_case(case_id) is None:
            raise ValidationError("Referenced test case does not exist", {"case_id": "not found"})

        execution = TestExecution(
            owner_id=fields["owner_id"],
            plan_id=plan_id,
            case_id=case_id,
            status=status,
            actual_result=_text(fields.get("actual_result")),
            notes=_text(fields.get("notes")),
            executed_by=_text(fields.get("executed_by"))[:200],
            generated_by_ai=bool(fields.get("generated_by_ai", False)),
        )
        db.session.add(execution)
        commit_or_raise()
        logger.info("Created test execution #%d (case #%d, %s)", execution.id, case_id, status)
        return execution

    def update_execution(self, execution_id, fields: dict) -> TestExecution:
        execution = self.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("TestExecution", execution_id)
        if "status" in fields and fields["status"] not in EXECUTION_STATUSES:
            raise ValidationError(
                "Invalid test execution fields",
                {"status": f"must be one of {', '.join(sorted(EXECUTION_STATUSES))}"},
            )
        for name in EXECUTION_FIELDS:
            if name in fields:
                setattr(execution, name, fields[name] if name == "status" else _text(fields[name]))
        commit_or_raise()
        return execution

    def delete_execution(self, execution_id) -> bool:
        execution = self.get_execution(execution_id)
        if execution is None:
            return False
        db.session.delete(execution)
        commit_or_raise()
        logger.info("Deleted test execution #%s", execution_id)
        return True

    # ── Users, roles & permissions ────────────────────────────────────────

    def get_profile(self, user_id: str) -> Profile | None:
        return Profile.query.filter_by(user_id=user_id).first()

    def list_profiles(self) -> list[Profile]:
        return Profile.query.order_by(Profile.created_at.asc(), Profile.id.asc()).all()

    def get_user_role(self, user_id: str) -> str | None:
        profile = self.get_profile(user_id)
        return profile.role if profile else None

    def get_user_permissions(self, user_id: str) -> dict[str, bool] | None:
        row = UserPermission.query.filter_by(user_id=user_id).first()
        return row.flags() if row else None

    def provision_user(self, user_id: str, email: str = "", display_name: str = "") -> Profile:
        """Create the profile and default permission row if missing."""
        profile = self.get_profile(user_id)
        created = False
        if profile is None:
            profile = Profile(user_id=user_id, email=email or "", display_name=display_name or "",
                              role=DEFAULT_ROLE)
            db.session.add(profile)
            created = True
        if UserPermission.query.filter_by(user_id=user_id).first() is None:
            db.session.add(UserPermission(user_id=user_id, **DEFAULT_PERMISSIONS))
            created = True
        if created:
            commit_or_raise()
            logger.info("Provisioned user %s as %s", user_id, profile.role)
        return profile

    def set_user_role(self, user_id: str, role: str) -> Profile:
        if role not in ROLES:
            raise ValidationError("Invalid role", {"role": f"must be one of {', '.join(ROLES)}"})
        profile = self.provision_user(user_id)
        profile.role = role
        commit_or_raise()
        return profile

    def set_user_permissions(self, user_id: str, values: dict) -> dict[str, bool]:
        unknown = [k for k in values if k not in PERMISSIONS]
        if unknown:
            raise ValidationError("Unknown permissions", {k: "unknown" for k in unknown})
        self.provision_user(user_id)
        row = UserPermission.query.filter_by(user_id=user_id).first()
        for name, value in values.items():
            setattr(row, name, bool(value))
        commit_or_raise()
        return row.flags()

    def delete_user(self, user_id: str) -> bool:
        """Remove the profile, permission row and settings. Owned records are kept."""
        profile = self.get_profile(user_id)
        if profile is None:
            return False
        UserPermission.query.filter_by(user_id=user_id).delete()
        UserSetting.query.filter_by(user_id=user_id).delete()
        db.session.delete(profile)
        commit_or_raise()
        logger.info("Deleted user %s", user_id)
        return True
