"""
Depot-wide exception hierarchy.

Every rejected command raises one of these types, and every message names the
rule that failed ("all required checklist items must pass", not "invalid
request").  Blueprints map them to HTTP status codes in one place
(``depot.blueprints.register_error_handlers``).

Usage:
    from depot.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Container", resource_id="CTR-20260101-0001")
    raise ValidationError("Rejection reason is required", details={"reason": "empty"})
"""


class NotFoundError(Exception):
    """Raised when a requested entity (or a referenced one) does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Container", "Survey").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is malformed or violates a field-level rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class DuplicateKeyError(Exception):
    """Raised when an add would violate a uniqueness constraint.

    Args:
        resource: Collection / entity name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class BackendUnavailableError(Exception):
    """Raised when the shared backend cannot be read or written."""

    def __init__(self, operation: str, collection: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.collection = collection
        self.cause = cause
        msg = f"Shared backend unavailable during {operation} on '{collection}'"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


# ── Workflow transitions ─────────────────────────────────────────────────────


class TransitionError(Exception):
    """Raised when a workflow event is rejected for an entity."""

    def __init__(self, kind: str, event: str, current: str | None, reason: str | None = None):
        msg = f"Cannot '{event}' {kind} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.kind = kind
        self.event = event
        self.current_status = current
        self.reason = reason


class IllegalTransitionError(TransitionError):
    """The event is not valid from the entity's current status."""


class IncompleteChecklistError(TransitionError):
    """A required checklist item is unset or failed."""

    def __init__(self, kind: str, event: str, current: str, failing_items: list[str]):
        super().__init__(kind, event, current, "all required checklist items must pass")
        self.failing_items = failing_items


class MissingReworkReasonError(TransitionError):
    """A QC failure was submitted without any rework reason."""

    def __init__(self, kind: str, event: str, current: str):
        super().__init__(kind, event, current, "at least one rework reason is required")
