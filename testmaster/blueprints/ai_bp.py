"""
TestMaster AI
AI Blueprint — generation, batch review and model control.

Endpoints (url_prefix=/api/v1/ai):
    GENERATION   /generate                                  POST   single item, persisted
                 /generate/batch                            POST   document → review session

    REVIEW       /reviews                                   GET    caller's open sessions
                 /reviews/<rid>                             GET, DELETE
                 /reviews/<rid>/items/<iid>                 GET    item details
                 /reviews/<rid>/items/<iid>/approve         POST
                 /reviews/<rid>/items/<iid>/reject          POST
                 /reviews/<rid>/items/<iid>/regenerate      POST   {feedback}
                 /reviews/<rid>/save                        POST   persist approved items

    MODELS       /models                                    GET, POST
                 /models/<id>                               GET, PUT, DELETE
                 /tasks                                     GET    task → default model
                 /tasks/<task>/default                      PUT    {model_id}

    TEMPLATES    /templates                                 GET, POST
                 /templates/<id>                            GET, PUT, DELETE
                 /templates/preview                         POST   render without calling a model

    CONFIG       /config                                    GET    credential-free blob
                 /config/sync                               POST   push to user_settings
                 /config/load                               POST   pull from user_settings
                 /config/reset                              POST   built-in defaults

Generation needs use_ai; model, template and config changes need the admin role.
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from testmaster.ai.prompt_registry import validate_template_fields
from testmaster.ai.model_registry import validate_model_fields
from testmaster.ai.review import ReviewSession
from testmaster.blueprints import service
from testmaster.core.exceptions import NotFoundError, ValidationError
from testmaster.middleware.permission_required import (
    can_access_record,
    current_permissions,
    require_admin,
    require_permission,
)
from testmaster.models.ai import GENERATION_TASKS, KIND_FOR_TASK, GenerationTask, RecordKind
from testmaster.utils.errors import E, api_error
from testmaster.utils.helpers import json_body

logger = logging.getLogger(__name__)

ai_bp = Blueprint("ai", __name__, url_prefix="/api/v1/ai")

# ── Rate limiting ─────────────────────────────────────────────────────────
from testmaster import limiter  # noqa: E402


def _generate_limit_value():
    return current_app.config.get("AI_GENERATE_RATE_LIMIT", "30/minute")


_ai_generate_limit = limiter.shared_limit(_generate_limit_value, scope="ai_generate")

# Record permission needed to keep what a task produces
_KIND_PERMISSION = {
    RecordKind.PLAN: "manage_plans",
    RecordKind.CASE: "manage_cases",
    RecordKind.EXECUTION: "manage_executions",
}

_TASK_ALIASES = {kind.value: task.value for task, kind in KIND_FOR_TASK.items()}
_TASK_ALIASES["general"] = GenerationTask.GENERAL.value


def _task_from(data: dict) -> str:
    raw = str(data.get("task") or data.get("type") or "").strip()
    task = _TASK_ALIASES.get(raw, raw)
    if task not in GENERATION_TASKS:
        raise ValidationError("Unsupported generation type",
                              {"type": f"must be one of {', '.join(GENERATION_TASKS)}"})
    return task


def _require_record_permission(kind: RecordKind):
    needed = _KIND_PERMISSION[kind]
    if not current_permissions().has_permission(needed):
        logger.warning("User %s denied: missing permission '%s' for AI %s", g.user_id, needed, kind.value)
        return api_error(E.FORBIDDEN, "Permission denied", details={"required": needed})
    return None


def _check_linked_records(data: dict):
    """Linked plan/case must be readable by the caller; malformed ids are left to the generators."""
    storage = service("storage")
    for key, getter, resource in (("plan_id", storage.get_plan, "TestPlan"),
                                  ("case_id", storage.get_case, "TestCase")):
        try:
            link_id = int(data.get(key))
        except (TypeError, ValueError):
            continue
        record = getter(link_id)
        if record is None or not can_access_record(record):
            raise NotFoundError(resource, link_id)


def _session(review_id: str) -> ReviewSession:
    return service("reviews").get(review_id, g.user_id)


# ══════════════════════════════════════════════════════════════════════════════
# GENERATION
# ══════════════════════════════════════════════════════════════════════════════

@ai_bp.route("/generate", methods=["POST"])
@require_permission("use_ai")
@_ai_generate_limit
def generate():
    """Generate one plan, case or execution and save it."""
    data = json_body()
    task = _task_from(data)
    generator = service("single_generator")

    if task == GenerationTask.GENERAL.value:
        result = generator.complete(data, model_id=data.get("model_id"))
        return jsonify({"task": task, "result": result}), 200

    kind = KIND_FOR_TASK[GenerationTask(task)]
    denied = _require_record_permission(kind)
    if denied:
        return denied
    _check_linked_records(data)

    record = generator.generate_one(
        task, data, g.user_id,
        model_id=data.get("model_id"),
        template_id=data.get("template_id"),
    )
    return jsonify({"task": task, "kind": kind.value, "record": record.to_dict()}), 201


@ai_bp.route("/generate/batch", methods=["POST"])
@require_permission("use_ai")
@_ai_generate_limit
def generate_batch():
    """Decompose a document into pending items and open a review session."""
    data = json_body()
    raw_kind = str(data.get("kind") or data.get("type") or "").strip()
    kind_value = {"plans": "plan", "cases": "case"}.get(raw_kind, raw_kind)
    if kind_value in (RecordKind.PLAN.value, RecordKind.CASE.value):
        denied = _require_record_permission(RecordKind(kind_value))
        if denied:
            return denied
    _check_linked_records(data)

    batch = service("batch_generator")
    document = data.get("document") or data.get("document_text") or ""
    context = data.get("context") or ""
    items = batch.generate_batch(
        kind_value, document, context,
        owner_id=g.user_id,
        plan_id=data.get("plan_id"),
        model_id=data.get("model_id"),
        template_id=data.get("template_id"),
    )
    plan_id = int(data["plan_id"]) if data.get("plan_id") not in (None, "") else None
    session = ReviewSession(
        items, owner_id=g.user_id, kind=RecordKind(kind_value), plan_id=plan_id,
        document=document, context=context, plan=batch.plan_context(plan_id),
        model_id=data.get("model_id") or None,
    )
    service("reviews").add(session)
    logger.info("Review session %s opened with %d items", session.id, len(items),
                extra={"review_id": session.id, "user_id": g.user_id})
    return jsonify(session.to_dict()), 201


# ══════════════════════════════════════════════════════════════════════════════
# REVIEW
# ══════════════════════════════════════════════════════════════════════════════

@ai_bp.route("/reviews", methods=["GET"])
@require_permission("use_ai")
def list_reviews():
    sessions = service("reviews").list_for_owner(g.user_id)
    return jsonify({
        "items": [s.to_dict(include_content=False) for s in sessions],
        "total": len(sessions),
    })


@ai_bp.route("/reviews/<review_id>", methods=["GET"])
@require_permission("use_ai")
def get_review(review_id):
    return jsonify(_session(review_id).to_dict())


@ai_bp.route("/reviews/<review_id>", methods=["DELETE"])
@require_permission("use_ai")
def discard_review(review_id):
    """Close a session; pending and unsaved approved items are dropped."""
    summary = service("reviews").discard(review_id, g.user_id)
    if summary["unsaved_approved"] or summary["counts"]["pending"]:
        logger.info("Review %s discarded with %d unsaved approved and %d pending items",
                    review_id, summary["unsaved_approved"], summary["counts"]["pending"])
    return jsonify({"message": "Review session closed", "summary": summary}), 200


@ai_bp.route("/reviews/<review_id>/items/<item_id>", methods=["GET"])
@require_permission("use_ai")
def view_item(review_id, item_id):
    return jsonify(_session(review_id).view_details(item_id))


@ai_bp.route("/reviews/<review_id>/items/<item_id>/approve", methods=["POST"])
@require_permission("use_ai")
def approve_item(review_id, item_id):
    session = _session(review_id)
    item = session.approve(item_id)
    return jsonify({"item": item.to_dict(), "summary": session.summary()})


@ai_bp.route("/reviews/<review_id>/items/<item_id>/reject", methods=["POST"])
@require_permission("use_ai")
def reject_item(review_id, item_id):
    session = _session(review_id)
    item = session.reject(item_id)
    return jsonify({"item": item.to_dict(), "summary": session.summary()})


@ai_bp.route("/reviews/<review_id>/items/<item_id>/regenerate", methods=["POST"])
@require_permission("use_ai")
@_ai_generate_limit
def regenerate_item(review_id, item_id):
    session = _session(review_id)
    feedback = str(json_body().get("feedback") or "").strip()
    item = session.regenerate(item_id, feedback, service("executor"))
    return jsonify({"item": item.to_dict(), "summary": session.summary()})


@ai_bp.route("/reviews/<review_id>/save", methods=["POST"])
@require_permission("use_ai")
def save_approved(review_id):
    """Persist every approved item that has not been saved yet."""
    session = _session(review_id)
    denied = _require_record_permission(session.kind)
    if denied:
        return denied
    records = session.persist_approved(service("storage"))
    return jsonify({
        "saved": [r.to_dict() for r in records],
        "summary": session.summary(),
    }), 201 if records else 200


# ══════════════════════════════════════════════════════════════════════════════
# MODELS
# ══════════════════════════════════════════════════════════════════════════════

@ai_bp.route("/models", methods=["GET"])
@require_permission("use_ai")
def list_models():
    registry = service("registry")
    models = registry.list_models()
    if request.args.get("active") == "true":
        models = [m for m in models if m.is_active]
    return jsonify({
        "models": [m.to_dict() for m in models],
        "default_model": registry.default_model_id,
        "task_defaults": registry.task_defaults(),
    })


@ai_bp.route("/models", methods=["POST"])
@require_admin
def add_model():
    data = json_body()
    errors = validate_model_fields(data)
    if errors:
        raise ValidationError("Invalid model", errors)
    model = service("registry").add_model(data)
    return jsonify(model.to_dict()), 201


@ai_bp.route("/models/<model_id>", methods=["GET"])
@require_permission("use_ai")
def get_model(model_id):
    model = service("registry").get_model(model_id)
    if model is None:
        raise NotFoundError("Model", model_id)
    return jsonify(model.to_dict())


@ai_bp.route("/models/<model_id>", methods=["PUT"])
@require_admin
def update_model(model_id):
    data = json_body()
    errors = validate_model_fields(data, partial=True)
    if errors:
        raise ValidationError("Invalid model", errors)
    model = service("registry").update_model(model_id, data)
    if model is None:
        raise NotFoundError("Model", model_id)
    return jsonify(model.to_dict())


@ai_bp.route("/models/<model_id>", methods=["DELETE"])
@require_admin
def delete_model(model_id):
    registry = service("registry")
    if not registry.delete_model(model_id):
        raise NotFoundError("Model", model_id)
    return jsonify({
        "message": "Model deleted",
        "default_model": registry.default_model_id,
        "task_defaults": registry.task_defaults(),
    })


@ai_bp.route("/tasks", methods=["GET"])
@require_permission("use_ai")
def task_defaults():
    registry = service("registry")
    result = []
    for task in GENERATION_TASKS:
        model = registry.get_default_model(task)
        result.append({
            "task": task,
            "model_id": registry.task_defaults().get(task),
            "available": model is not None,
        })
    return jsonify({"tasks": result})


@ai_bp.route("/tasks/<task>/default", methods=["PUT"])
@require_admin
def set_task_default(task):
    if task not in GENERATION_TASKS:
        raise NotFoundError("Task", task)
    model_id = str(json_body().get("model_id") or "").strip()
    if not model_id:
        raise ValidationError("model_id is required", {"model_id": "required"})
    registry = service("registry")
    registry.set_default_model(task, model_id)
    model = registry.get_default_model(task)
    return jsonify({"task": task, "model_id": model_id, "available": model is not None})


# ══════════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ══════════════════════════════════════════════════════════════════════════════

@ai_bp.route("/templates", methods=["GET"])
@require_permission("use_ai")
def list_templates():
    templates = service("registry").list_templates()
    task = request.args.get("task")
    variant = request.args.get("variant")
    if task:
        templates = [t for t in templates if t.task == task]
    if variant:
        templates = [t for t in templates if t.variant == variant]
    return jsonify({"templates": [t.to_dict() for t in templates], "total": len(templates)})


@ai_bp.route("/templates", methods=["POST"])
@require_admin
def add_template():
    data = json_body()
    errors = validate_template_fields(data)
    if errors:
        raise ValidationError("Invalid template", errors)
    template = service("registry").add_template(data)
    return jsonify(template.to_dict()), 201


@ai_bp.route("/templates/preview", methods=["POST"])
@require_permission("use_ai")
def preview_template():
    """Render a stored or ad-hoc template with sample variables."""
    data = json_body()
    registry = service("registry")
    variables = data.get("variables") or {}
    if not isinstance(variables, dict):
        raise ValidationError("variables must be an object", {"variables": "invalid"})
    if data.get("template_id"):
        template = registry.get_template(data["template_id"])
        if template is None:
            raise NotFoundError("Template", data["template_id"])
        source = template.template
    elif isinstance(data.get("template"), str):
        source = data["template"]
    else:
        raise ValidationError("template or template_id is required", {"template": "required"})
    return jsonify({"rendered": registry.render_template(source, variables)})


@ai_bp.route("/templates/<template_id>", methods=["GET"])
@require_permission("use_ai")
def get_template(template_id):
    template = service("registry").get_template(template_id)
    if template is None:
        raise NotFoundError("Template", template_id)
    return jsonify(template.to_dict())


@ai_bp.route("/templates/<template_id>", methods=["PUT"])
@require_admin
def update_template(template_id):
    data = json_body()
    errors = validate_template_fields(data, partial=True)
    if errors:
        raise ValidationError("Invalid template", errors)
    template = service("registry").update_template(template_id, data)
    if template is None:
        raise NotFoundError("Template", template_id)
    return jsonify(template.to_dict())


@ai_bp.route("/templates/<template_id>", methods=["DELETE"])
@require_admin
def delete_template(template_id):
    if not service("registry").delete_template(template_id):
        raise NotFoundError("Template", template_id)
    return jsonify({"message": "Template deleted"})


# ══════════════════════════════════════════════════════════════════════════════
# CONFIG
# ══════════════════════════════════════════════════════════════════════════════

@ai_bp.route("/config", methods=["GET"])
@require_admin
def get_config():
    return jsonify(service("registry").config_blob())


@ai_bp.route("/config/sync", methods=["POST"])
@require_admin
def sync_config():
    blob = service("registry").sync_to_remote(g.user_id)
    return jsonify({"message": "Configuration synced", "models": len(blob["models"]),
                    "templates": len(blob["templates"])})


@ai_bp.route("/config/load", methods=["POST"])
@require_admin
def load_config():
    if not service("registry").load_from_remote(g.user_id):
        raise NotFoundError("ModelConfig")
    return jsonify({"message": "Configuration loaded"})


@ai_bp.route("/config/reset", methods=["POST"])
@require_admin
def reset_config():
    registry = service("registry")
    registry.reset()
    return jsonify({"message": "Configuration reset", "models": len(registry.list_models()),
                    "templates": len(registry.list_templates())})
