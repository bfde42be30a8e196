"""Standardised API error responses.

Usage
-----
    from testmaster.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Test plan not found")
    return api_error(E.VALIDATION_REQUIRED, "description is required")
    return api_error(E.PERSISTENCE, "Content generated but not saved",
                     details={"generated": payload})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"

    # Auth – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / state – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFIRMATION_REQUIRED = "ERR_CONFIRMATION_REQUIRED"

    # Generation – HTTP 502 / 503 / 504
    AI_UNAVAILABLE = "ERR_AI_UNAVAILABLE"
    AI_PROVIDER = "ERR_AI_PROVIDER"
    AI_TIMEOUT = "ERR_AI_TIMEOUT"
    AI_MALFORMED = "ERR_AI_MALFORMED"

    # Rate limiting – HTTP 429
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # Server – HTTP 500
    PERSISTENCE = "ERR_PERSISTENCE"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.CONFIRMATION_REQUIRED: 409,
    E.AI_UNAVAILABLE: 503,
    E.AI_PROVIDER: 502,
    E.AI_TIMEOUT: 504,
    E.AI_MALFORMED: 502,
    E.RATE_LIMITED: 429,
    E.PERSISTENCE: 500,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for the UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, generated content, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


# ── App-wide handlers for service-layer exceptions ───────────────────

def register_error_handlers(app):
    """Map ``testmaster.core.exceptions`` types to JSON error responses."""
    import logging

    from testmaster.core.exceptions import (
        ConflictError,
        GenerationError,
        GenerationTimeout,
        InvalidTransition,
        MalformedResponse,
        InvalidBatchShape,
        NoActiveModel,
        NoActiveTemplate,
        NotFoundError,
        PermissionDenied,
        PersistenceError,
        ValidationError,
    )

    log = logging.getLogger(__name__)

    @app.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @app.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @app.errorhandler(PermissionDenied)
    def _handle_denied(error: PermissionDenied):
        return api_error(E.FORBIDDEN, "Permission denied", details={"required": error.permission})

    @app.errorhandler(InvalidTransition)
    def _handle_transition(error: InvalidTransition):
        return api_error(E.CONFLICT_STATE, str(error), details={"status": error.current})

    @app.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @app.errorhandler(PersistenceError)
    def _handle_persistence(error: PersistenceError):
        log.error("Persistence failure: %s", error)
        if error.generated is not None:
            return api_error(
                E.PERSISTENCE, "Content generated but not saved",
                details={"generated": error.generated},
            )
        return api_error(E.DATABASE, "Database error")

    @app.errorhandler(GenerationError)
    def _handle_generation(error: GenerationError):
        # Provider details stay in the log; the user gets the category message
        log.warning("Generation failed (%s): %s", type(error).__name__, error)
        if isinstance(error, (NoActiveModel, NoActiveTemplate)):
            code = E.AI_UNAVAILABLE
        elif isinstance(error, GenerationTimeout):
            code = E.AI_TIMEOUT
        elif isinstance(error, (MalformedResponse, InvalidBatchShape)):
            code = E.AI_MALFORMED
        else:
            code = E.AI_PROVIDER
        return api_error(code, error.user_message)
