"""
TestMaster AI
Testing Blueprint — plans, cases and executions CRUD.

Endpoints (url_prefix=/api/v1):
    Plans:
        GET    /plans                    — List (owner's; ?scope=all for admins)
        POST   /plans                    — Create
        GET    /plans/<id>               — Detail
        PUT    /plans/<id>               — Update
        DELETE /plans/<id>               — Two-step delete (?confirm=<token>)

    Cases:
        GET    /cases                    — List (?plan_id=)
        POST   /cases                    — Create (steps inline)
        GET    /cases/<id>               — Detail with steps
        PUT    /cases/<id>               — Update (steps replaced when given)
        DELETE /cases/<id>               — Two-step delete

    Executions:
        GET    /executions               — List (?plan_id=&case_id=&status=)
        POST   /executions               — Create
        GET    /executions/<id>          — Detail
        PUT    /executions/<id>          — Update
        DELETE /executions/<id>          — Two-step delete

    Delete confirmations:
        DELETE /confirmations/<token>    — Cancel a pending delete

A first DELETE answers 409 ERR_CONFIRMATION_REQUIRED with a token; repeating
the DELETE with ?confirm=<token> inside the TTL performs it.
"""

import logging

from flask import Blueprint, g, jsonify, request

from testmaster.blueprints import int_arg, paginate_list, service
from testmaster.core.exceptions import NotFoundError
from testmaster.middleware.permission_required import (
    can_access_record,
    current_permissions,
    require_permission,
)
from testmaster.utils.errors import E, api_error
from testmaster.utils.helpers import json_body

logger = logging.getLogger(__name__)

testing_bp = Blueprint("testing", __name__, url_prefix="/api/v1")


def _owner_scope():
    """None (everyone) for admins asking for scope=all, else the caller."""
    if request.args.get("scope") == "all" and current_permissions().is_admin():
        return None
    return g.user_id


def _get_accessible(getter, resource: str, record_id: int):
    record = getter(record_id)
    if record is None or not can_access_record(record):
        raise NotFoundError(resource, record_id)
    return record


def _check_link(data: dict, key: str, getter, resource: str):
    """Referenced parent must be accessible; malformed ids are left to the storage validation."""
    try:
        link_id = int(data.get(key))
    except (TypeError, ValueError):
        return
    _get_accessible(getter, resource, link_id)


def _listing(records, **extra):
    page, total = paginate_list(records)
    return jsonify({"items": [r.to_dict() for r in page], "total": total, **extra})


def _two_step_delete(resource: str, record_id: int, delete):
    """Run ``delete()`` only with a live confirmation token."""
    confirmations = service("delete_confirmation")
    token = request.args.get("confirm") or json_body().get("confirm_token")
    if not token:
        pending = confirmations.request(g.user_id, resource, record_id)
        return api_error(E.CONFIRMATION_REQUIRED, f"Confirm deletion of {resource} #{record_id}",
                         details=pending.to_dict())
    if not confirmations.confirm(g.user_id, resource, record_id, token):
        pending = confirmations.request(g.user_id, resource, record_id)
        return api_error(E.CONFIRMATION_REQUIRED, "Confirmation token invalid or expired",
                         details=pending.to_dict())
    delete(record_id)
    logger.info("%s #%d deleted by %s", resource, record_id, g.user_id)
    return jsonify({"message": f"{resource} deleted", "id": record_id}), 200


# ═════════════════════════════════════════════════════════════════════════════
# TEST PLANS
# ═════════════════════════════════════════════════════════════════════════════

@testing_bp.route("/plans", methods=["GET"])
@require_permission("manage_plans")
def list_plans():
    return _listing(service("storage").list_plans(_owner_scope()))


@testing_bp.route("/plans", methods=["POST"])
@require_permission("manage_plans")
def create_plan():
    data = json_body()
    data["owner_id"] = g.user_id
    data["generated_by_ai"] = False
    plan = service("storage").create_plan(data)
    return jsonify(plan.to_dict()), 201


@testing_bp.route("/plans/<int:plan_id>", methods=["GET"])
@require_permission("manage_plans")
def get_plan(plan_id):
    storage = service("storage")
    plan = _get_accessible(storage.get_plan, "TestPlan", plan_id)
    result = plan.to_dict()
    result["case_count"] = plan.cases.count()
    result["execution_count"] = plan.executions.count()
    return jsonify(result)


@testing_bp.route("/plans/<int:plan_id>", methods=["PUT"])
@require_permission("manage_plans")
def update_plan(plan_id):
    storage = service("storage")
    _get_accessible(storage.get_plan, "TestPlan", plan_id)
    plan = storage.update_plan(plan_id, json_body())
    return jsonify(plan.to_dict())


@testing_bp.route("/plans/<int:plan_id>", methods=["DELETE"])
@require_permission("manage_plans")
def delete_plan(plan_id):
    storage = service("storage")
    _get_accessible(storage.get_plan, "TestPlan", plan_id)
    return _two_step_delete("TestPlan", plan_id, storage.delete_plan)


# ═════════════════════════════════════════════════════════════════════════════
# TEST CASES
# ═════════════════════════════════════════════════════════════════════════════

@testing_bp.route("/cases", methods=["GET"])
@require_permission("manage_cases")
def list_cases():
    return _listing(service("storage").list_cases(_owner_scope(), plan_id=int_arg("plan_id")))


@testing_bp.route("/cases", methods=["POST"])
@require_permission("manage_cases")
def create_case():
    storage = service("storage")
    data = json_body()
    _check_link(data, "plan_id", storage.get_plan, "TestPlan")
    data["owner_id"] = g.user_id
    data["generated_by_ai"] = False
    case = storage.create_case(data)
    return jsonify(case.to_dict()), 201


@testing_bp.route("/cases/<int:case_id>", methods=["GET"])
@require_permission("manage_cases")
def get_case(case_id):
    case = _get_accessible(service("storage").get_case, "TestCase", case_id)
    return jsonify(case.to_dict())


@testing_bp.route("/cases/<int:case_id>", methods=["PUT"])
@require_permission("manage_cases")
def update_case(case_id):
    storage = service("storage")
    _get_accessible(storage.get_case, "TestCase", case_id)
    data = json_body()
    _check_link(data, "plan_id", storage.get_plan, "TestPlan")
    case = storage.update_case(case_id, data)
    return jsonify(case.to_dict())


@testing_bp.route("/cases/<int:case_id>", methods=["DELETE"])
@require_permission("manage_cases")
def delete_case(case_id):
    storage = service("storage")
    _get_accessible(storage.get_case, "TestCase", case_id)
    return _two_step_delete("TestCase", case_id, storage.delete_case)


# ═════════════════════════════════════════════════════════════════════════════
# TEST EXECUTIONS
# ═════════════════════════════════════════════════════════════════════════════

@testing_bp.route("/executions", methods=["GET"])
@require_permission("manage_executions")
def list_executions():
    executions = service("storage").list_executions(
        _owner_scope(),
        plan_id=int_arg("plan_id"),
        case_id=int_arg("case_id"),
        status=request.args.get("status"),
    )
    return _listing(executions)


@testing_bp.route("/executions", methods=["POST"])
@require_permission("manage_executions")
def create_execution():
    storage = service("storage")
    data = json_body()
    _check_link(data, "plan_id", storage.get_plan, "TestPlan")
    _check_link(data, "case_id", storage.get_case, "TestCase")
    data["owner_id"] = g.user_id
    data["generated_by_ai"] = False
    execution = storage.create_execution(data)
    return jsonify(execution.to_dict()), 201


@testing_bp.route("/executions/<int:execution_id>", methods=["GET"])
@require_permission("manage_executions")
def get_execution(execution_id):
    execution = _get_accessible(service("storage").get_execution, "TestExecution", execution_id)
    return jsonify(execution.to_dict())


@testing_bp.route("/executions/<int:execution_id>", methods=["PUT"])
@require_permission("manage_executions")
def update_execution(execution_id):
    storage = service("storage")
    _get_accessible(storage.get_execution, "TestExecution", execution_id)
    execution = storage.update_execution(execution_id, json_body())
    return jsonify(execution.to_dict())


@testing_bp.route("/executions/<int:execution_id>", methods=["DELETE"])
@require_permission("manage_executions")
def delete_execution(execution_id):
    storage = service("storage")
    _get_accessible(storage.get_execution, "TestExecution", execution_id)
    return _two_step_delete("TestExecution", execution_id, storage.delete_execution)


# ═════════════════════════════════════════════════════════════════════════════
# DELETE CONFIRMATIONS
# ═════════════════════════════════════════════════════════════════════════════

@testing_bp.route("/confirmations/<token>", methods=["DELETE"])
def cancel_delete(token):
    if not service("delete_confirmation").cancel(g.user_id, token):
        raise NotFoundError("DeleteConfirmation")
    return jsonify({"message": "Deletion cancelled"}), 200
