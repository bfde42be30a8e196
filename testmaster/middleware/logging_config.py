"""
Logging setup for TestMaster AI.

One stderr handler on the root logger:
    production            JSON lines for the log collector
    development / tests   short coloured lines
LOG_LEVEL overrides the level (INFO in production, DEBUG otherwise).

Records logged while a request is active are stamped with its request id
and user id, so service and AI pipeline logs can be correlated without
passing either around.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Extras promoted to top-level JSON keys when present
EXTRA_FIELDS = (
    "request_id",
    "user_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "task",
    "model_id",
    "template_id",
    "review_id",
)

_LEVEL_COLOURS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
_RESET = "\033[0m"


class RequestContextFilter(logging.Filter):
    """Copy g.request_id / g.user_id onto records that do not set them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = g.get("request_id")
            if getattr(record, "user_id", None) is None:
                record.user_id = g.get("user_id")
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """`HH:MM:SS LEVEL logger: message [rid user]` for local work."""

    def format(self, record: logging.LogRecord) -> str:
        colour = _LEVEL_COLOURS.get(record.levelname, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = [t for t in (getattr(record, "request_id", None), getattr(record, "user_id", None)) if t]
        suffix = f" [{' '.join(tags)}]" if tags else ""
        line = f"{colour}{clock} {record.levelname:<7}{_RESET} {record.name}: {record.getMessage()}{suffix}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install the handler, formatter and request filter for this process."""
    testing = app.config.get("TESTING", False)
    production = not (app.config.get("DEBUG", False) or testing)

    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if production else ReadableFormatter())
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    # create_app() runs more than once under pytest
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # Provider SDKs and the dev server are chatty at DEBUG
    for name in ("httpx", "httpcore", "urllib3", "google_genai", "anthropic", "openai",
                 "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not testing:
        app.logger.info("Logging ready (level=%s, %s)", level_name, "json" if production else "readable")
