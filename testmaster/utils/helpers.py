"""Shared request and persistence helpers."""

import logging

from flask import request

from testmaster.core.exceptions import PersistenceError, ValidationError
from testmaster.models import db

logger = logging.getLogger(__name__)


def json_body() -> dict:
    """Return the request JSON object, raising ValidationError for non-objects."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def parse_bool(value, default=None):
    """Parse a query-string style boolean ("true"/"1"/"yes")."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def commit_or_raise(generated: dict | None = None):
    """Commit the current session, raising PersistenceError on failure.

    The session is rolled back before raising. ``generated`` is attached to
    the error so callers that just produced AI content can return it.

    Usage::

        db.session.add(plan)
        commit_or_raise()
    """
    from sqlalchemy.exc import SQLAlchemyError

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Database error on commit")
        raise PersistenceError(str(exc), generated=generated) from exc
