"""
Dashboard, history and report aggregates for one user's records.

    get_dashboard(owner_id)   headline counts + execution success rate
    get_history(owner_id)     plans, cases and executions merged newest first
    get_report(owner_id)      execution status / case priority breakdowns, per plan
"""

import logging
from datetime import datetime, time, timezone

from sqlalchemy import func

from testmaster.core.exceptions import ValidationError
from testmaster.models import db
from testmaster.models.ai import RecordKind
from testmaster.models.testing import (
    CASE_PRIORITIES,
    EXECUTION_STATUSES,
    TestCase,
    TestExecution,
    TestPlan,
)

logger = logging.getLogger(__name__)

_MODELS = {
    RecordKind.PLAN: TestPlan,
    RecordKind.CASE: TestCase,
    RecordKind.EXECUTION: TestExecution,
}


def _rate(part: int, total: int) -> int:
    return round(part * 100 / total) if total else 0


def _parse_date(value: str | None, field_name: str, end: bool = False) -> datetime | None:
    if not value:
        return None
    try:
        day = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be YYYY-MM-DD", {field_name: "invalid"}) from exc
    return datetime.combine(day, time.max if end else time.min, tzinfo=timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Dashboard
# ═════════════════════════════════════════════════════════════════════════════

def get_dashboard(owner_id: str) -> dict:
    """Headline counts and the execution success rate."""
    counts = {
        kind.value: model.query.filter_by(owner_id=owner_id).count()
        for kind, model in _MODELS.items()
    }
    passed = TestExecution.query.filter_by(owner_id=owner_id, status="passed").count()
    ai_generated = sum(
        model.query.filter_by(owner_id=owner_id, generated_by_ai=True).count()
        for model in _MODELS.values()
    )
    return {
        "total_plans": counts["plan"],
        "total_cases": counts["case"],
        "total_executions": counts["execution"],
        "passed_executions": passed,
        "success_rate": _rate(passed, counts["execution"]),
        "ai_generated": ai_generated,
    }


# ═════════════════════════════════════════════════════════════════════════════
# History
# ═════════════════════════════════════════════════════════════════════════════

def _history_entry(kind: RecordKind, record) -> dict:
    if kind == RecordKind.EXECUTION:
        title = record.test_case.title if record.test_case else f"Execution #{record.id}"
        detail = record.status
    else:
        title = record.title
        detail = record.priority if kind == RecordKind.CASE else None
    return {
        "kind": kind.value,
        "id": record.id,
        "title": title,
        "detail": detail,
        "generated_by_ai": record.generated_by_ai,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
        "_sort": record.updated_at or datetime.min.replace(tzinfo=timezone.utc),
    }


def get_history(owner_id: str, kind: str | None = None, generated_by_ai: bool | None = None,
                search: str | None = None, limit: int = 50) -> list[dict]:
    """Recent activity across record kinds, newest first."""
    if kind:
        try:
            kinds = [RecordKind(kind)]
        except ValueError as exc:
            raise ValidationError("Invalid kind", {"kind": "must be plan, case or execution"}) from exc
    else:
        kinds = list(RecordKind)

    entries = []
    for k in kinds:
        model = _MODELS[k]
        q = model.query.filter_by(owner_id=owner_id)
        if generated_by_ai is not None:
            q = q.filter(model.generated_by_ai.is_(generated_by_ai))
        if search:
            if k == RecordKind.EXECUTION:
                q = q.join(TestCase, TestExecution.case_id == TestCase.id).filter(
                    TestCase.title.ilike(f"%{search}%"))
            else:
                q = q.filter(model.title.ilike(f"%{search}%"))
        rows = q.order_by(model.updated_at.desc()).limit(limit).all()
        entries.extend(_history_entry(k, r) for r in rows)

    entries.sort(key=lambda e: e["_sort"], reverse=True)
    for e in entries:
        del e["_sort"]
    return entries[:limit]


# ═════════════════════════════════════════════════════════════════════════════
# Reports
# ═════════════════════════════════════════════════════════════════════════════

def get_report(owner_id: str, status: str | None = None, priority: str | None = None,
               plan_id: int | None = None, date_from: str | None = None,
               date_to: str | None = None) -> dict:
    """Filtered execution and case breakdowns for the reports page."""
    if status and status not in EXECUTION_STATUSES:
        raise ValidationError("Invalid status", {"status": f"must be one of {', '.join(sorted(EXECUTION_STATUSES))}"})
    if priority and priority not in CASE_PRIORITIES:
        raise ValidationError("Invalid priority", {"priority": f"must be one of {', '.join(sorted(CASE_PRIORITIES))}"})
    start = _parse_date(date_from, "date_from")
    end = _parse_date(date_to, "date_to", end=True)

    ex_q = TestExecution.query.filter_by(owner_id=owner_id)
    case_q = TestCase.query.filter_by(owner_id=owner_id)
    plan_q = TestPlan.query.filter_by(owner_id=owner_id)
    if plan_id is not None:
        ex_q = ex_q.filter_by(plan_id=plan_id)
        case_q = case_q.filter_by(plan_id=plan_id)
        plan_q = plan_q.filter_by(id=plan_id)
    if status:
        ex_q = ex_q.filter_by(status=status)
    if priority:
        case_q = case_q.filter_by(priority=priority)
    if start:
        ex_q = ex_q.filter(TestExecution.executed_at >= start)
        case_q = case_q.filter(TestCase.created_at >= start)
        plan_q = plan_q.filter(TestPlan.created_at >= start)
    if end:
        ex_q = ex_q.filter(TestExecution.executed_at <= end)
        case_q = case_q.filter(TestCase.created_at <= end)
        plan_q = plan_q.filter(TestPlan.created_at <= end)

    by_status = {s: 0 for s in sorted(EXECUTION_STATUSES)}
    for s, n in (ex_q.with_entities(TestExecution.status, func.count(TestExecution.id))
                 .group_by(TestExecution.status).all()):
        by_status[s] = n
    total_ex = sum(by_status.values())

    by_priority = {p: 0 for p in ("critical", "high", "medium", "low")}
    for p, n in (case_q.with_entities(TestCase.priority, func.count(TestCase.id))
                 .group_by(TestCase.priority).all()):
        by_priority[p] = n

    per_plan = []
    plan_rows = (ex_q.with_entities(TestExecution.plan_id, TestExecution.status, func.count(TestExecution.id))
                 .group_by(TestExecution.plan_id, TestExecution.status).all())
    grouped: dict[int, dict[str, int]] = {}
    for pid, s, n in plan_rows:
        grouped.setdefault(pid, {})[s] = n
    titles = dict(db.session.query(TestPlan.id, TestPlan.title)
                  .filter(TestPlan.id.in_(list(grouped) or [-1])).all())
    for pid, statuses in grouped.items():
        total = sum(statuses.values())
        per_plan.append({
            "plan_id": pid,
            "title": titles.get(pid, ""),
            "total": total,
            "by_status": statuses,
            "pass_rate": _rate(statuses.get("passed", 0), total),
        })
    per_plan.sort(key=lambda p: (-p["total"], p["plan_id"]))

    return {
        "filters": {"status": status, "priority": priority, "plan_id": plan_id,
                    "date_from": date_from, "date_to": date_to},
        "totals": {
            "plans": plan_q.count(),
            "cases": sum(by_priority.values()),
            "executions": total_ex,
            "ai_generated_plans": plan_q.filter(TestPlan.generated_by_ai.is_(True)).count(),
            "ai_generated_cases": case_q.filter(TestCase.generated_by_ai.is_(True)).count(),
        },
        "executions_by_status": by_status,
        "cases_by_priority": by_priority,
        "pass_rate": _rate(by_status["passed"], total_ex),
        "per_plan": per_plan,
    }
