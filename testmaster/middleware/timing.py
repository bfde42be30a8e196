"""
Request timing middleware.

Each request gets an id (X-Request-ID is honoured when the caller sends one)
and its duration is measured. Both go back as response headers. Slow or
failing requests are logged above DEBUG. Generation routes wait on a model
provider, so they are measured against their own, larger threshold.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Probes are polled constantly
_QUIET_PATHS = frozenset({"/api/v1/health/live", "/api/v1/health/ready"})

SLOW_THRESHOLD_MS = 1000
AI_PREFIX = "/api/v1/ai/"


def _slow_threshold_ms(app: Flask, path: str) -> float:
    if path.startswith(AI_PREFIX):
        # Slow only once most of the provider deadline is used up
        return app.config.get("LLM_TIMEOUT_SECONDS", 60.0) * 1000 * 0.8
    return SLOW_THRESHOLD_MS


def init_request_timing(app: Flask):
    """Register the request id / duration hooks."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _log_request(response):
        started = getattr(g, "request_start", None)
        if started is None:
            return response

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed_ms:.1f}"

        path = request.path
        if path in _QUIET_PATHS or path.startswith("/static/"):
            return response

        summary = "%s %s -> %d in %.0fms"
        args = (request.method, path, response.status_code, elapsed_ms)
        extra = {
            "method": request.method,
            "path": path,
            "status": response.status_code,
            "duration_ms": elapsed_ms,
            "remote_addr": request.remote_addr,
        }
        if response.status_code >= 500:
            logger.error("Failed: " + summary, *args, extra=extra)
        elif elapsed_ms > _slow_threshold_ms(app, path):
            logger.warning("Slow: " + summary, *args, extra=extra)
        else:
            logger.debug(summary, *args, extra=extra)
        return response
