"""
TestMaster AI
Reporting Blueprint — dashboard, history, reports and export.

Endpoints (url_prefix=/api/v1):
    GET /dashboard                         — Headline counts and success rate
    GET /history                           — Activity (?kind=&ai=&q=&limit=)
    GET /reports                           — Breakdowns (?status=&priority=&plan_id=&date_from=&date_to=)
    GET /export/<kind>/<id>?format=md|txt|json — Download one record
"""

import logging

from flask import Blueprint, Response, g, jsonify, request

from testmaster.blueprints import int_arg, service
from testmaster.core.exceptions import NotFoundError, ValidationError
from testmaster.middleware.permission_required import can_access_record, require_permission
from testmaster.models.ai import RecordKind
from testmaster.services import dashboard_service
from testmaster.services.export_service import EXPORT_FORMATS, export_filename
from testmaster.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

reporting_bp = Blueprint("reporting", __name__, url_prefix="/api/v1")

# Permission needed to read each kind
_READ_PERMISSION = {
    RecordKind.PLAN: "manage_plans",
    RecordKind.CASE: "manage_cases",
    RecordKind.EXECUTION: "manage_executions",
}


@reporting_bp.route("/dashboard", methods=["GET"])
def dashboard():
    return jsonify(dashboard_service.get_dashboard(g.user_id))


@reporting_bp.route("/history", methods=["GET"])
@require_permission("view_reports")
def history():
    limit = int_arg("limit") or 50
    entries = dashboard_service.get_history(
        g.user_id,
        kind=request.args.get("kind") or None,
        generated_by_ai=parse_bool(request.args.get("ai")),
        search=(request.args.get("q") or "").strip() or None,
        limit=max(1, min(limit, 500)),
    )
    return jsonify({"items": entries, "total": len(entries)})


@reporting_bp.route("/reports", methods=["GET"])
@require_permission("view_reports")
def reports():
    return jsonify(dashboard_service.get_report(
        g.user_id,
        status=request.args.get("status") or None,
        priority=request.args.get("priority") or None,
        plan_id=int_arg("plan_id"),
        date_from=request.args.get("date_from") or None,
        date_to=request.args.get("date_to") or None,
    ))


@reporting_bp.route("/export/<kind>/<int:record_id>", methods=["GET"])
def export_record(kind, record_id):
    try:
        kind = RecordKind(kind)
    except ValueError as exc:
        raise ValidationError("Invalid kind", {"kind": "must be plan, case or execution"}) from exc
    fmt = request.args.get("format", "md")
    if fmt not in EXPORT_FORMATS:
        raise ValidationError("Unsupported format", {"format": f"must be one of {', '.join(EXPORT_FORMATS)}"})

    # Same gate as the record's own routes
    @require_permission(_READ_PERMISSION[kind])
    def _export():
        storage = service("storage")
        getter = {
            RecordKind.PLAN: storage.get_plan,
            RecordKind.CASE: storage.get_case,
            RecordKind.EXECUTION: storage.get_execution,
        }[kind]
        record = getter(record_id)
        if record is None or not can_access_record(record):
            raise NotFoundError(kind.value, record_id)
        body = service("exporter").export(kind, record, fmt)
        filename = export_filename(kind, record, fmt)
        logger.info("Exported %s #%d as %s", kind.value, record_id, fmt)
        return Response(
            body,
            mimetype=EXPORT_FORMATS[fmt],
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    return _export()
