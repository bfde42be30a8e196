"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database and model registry status
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from testmaster.models import db
from testmaster.models.ai import GENERATION_TASKS

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness probe — always 200 if the app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Model registry ───────────────────────────────────────────────
    # Missing defaults degrade generation only, not the app
    registry = current_app.extensions["testmaster.registry"]
    unavailable = [t for t in GENERATION_TASKS if registry.get_default_model(t) is None]
    checks["models"] = {
        "status": "ok" if not unavailable else "degraded",
        "count": len(registry.list_models()),
        "tasks_without_model": unavailable,
    }

    # ── Review sessions ──────────────────────────────────────────────
    checks["review_sessions"] = {"status": "ok", "open": len(current_app.extensions["testmaster.reviews"])}

    checks["app"] = {
        "name": "TestMaster AI",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
