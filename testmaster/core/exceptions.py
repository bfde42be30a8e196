"""
Application-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from testmaster.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="TestPlan", resource_id=42)
    raise ValidationError("Description is required", details={"description": "required"})
    raise NoActiveModel("case-generation")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist or is not visible to the caller.

    Used for both genuinely missing records and records owned by another
    user, so a 404 never confirms existence.

    Args:
        resource: Human-readable model/entity name (e.g. "TestPlan", "GeneratedItem").
        resource_id: The key that was looked up. Included in logs, not in HTTP response.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation conflicts with current state (HTTP 409)."""

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class PermissionDenied(Exception):
    """Raised when the acting user lacks a required permission (HTTP 403)."""

    def __init__(self, permission: str, user_id: str | None = None) -> None:
        self.permission = permission
        self.user_id = user_id
        super().__init__(f"Permission '{permission}' required")


class InvalidTransition(Exception):
    """Raised when a review action is applied to an item in the wrong state (HTTP 409)."""

    def __init__(self, item_id: str, current: str, action: str) -> None:
        self.item_id = item_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} item {item_id} in status '{current}'")


class PersistenceError(Exception):
    """Raised when the storage service fails to commit a write.

    When the write followed a successful generation, ``generated`` carries
    the produced content so the caller can still hand it to the user.
    """

    def __init__(self, message: str, generated: dict | None = None) -> None:
        self.generated = generated
        super().__init__(message)


# ── Generation errors ────────────────────────────────────────────────────

class GenerationError(Exception):
    """Base class for failures of the AI generation pipeline."""

    user_message = "Generation failed"


class NoActiveModel(GenerationError):
    """No active model is configured for the task."""

    user_message = "Generation unavailable, check the model configuration"

    def __init__(self, task: str) -> None:
        self.task = task
        super().__init__(f"No active model configured for task '{task}'")


class NoActiveTemplate(GenerationError):
    """No active prompt template exists for the task/variant."""

    user_message = "Generation unavailable, check the prompt templates"

    def __init__(self, task: str, variant: str = "single") -> None:
        self.task = task
        self.variant = variant
        super().__init__(f"No active template for task '{task}' (variant={variant})")


class ProviderError(GenerationError):
    """The completion provider failed or returned a non-success status."""

    user_message = "Generation failed, verify the model credentials"

    def __init__(self, message: str, provider: str = "", status: int | None = None) -> None:
        self.provider = provider
        self.status = status
        super().__init__(message)


class GenerationTimeout(ProviderError):
    """The completion call exceeded its deadline."""

    user_message = "Generation timed out, try again"


class MalformedResponse(GenerationError):
    """The provider response contained no parseable JSON object."""

    user_message = "The AI response could not be understood"

    def __init__(self, message: str, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message)


class InvalidBatchShape(GenerationError):
    """A batch response lacked the expected item array."""

    user_message = "The AI response did not contain a list of items"

    def __init__(self, expected_key: str) -> None:
        self.expected_key = expected_key
        super().__init__(f"Batch response missing '{expected_key}' array")
