"""
Depot M&R Platform
Blueprint registry and shared request helpers.

Domain exceptions raised anywhere below a view are mapped to JSON errors
here, once for the whole application:

    NotFoundError                         404
    ValidationError, IncompleteChecklist,
    MissingReworkReason                   422
    IllegalTransitionError, DuplicateKey  409
    BackendUnavailableError               503
"""

import logging

from flask import request

from depot.core.exceptions import (
    BackendUnavailableError,
    DuplicateKeyError,
    IllegalTransitionError,
    IncompleteChecklistError,
    MissingReworkReasonError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from depot.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def current_actor(data: dict | None = None) -> str:
    """Actor for audit records: X-Actor header, then body ``actor``, else "system"."""
    actor = request.headers.get("X-Actor")
    if not actor and data:
        actor = data.get("actor")
    return (actor or "system").strip() or "system"


def register_error_handlers(app):
    """Map domain exceptions to ``{"error", "code"}`` responses."""

    @app.errorhandler(NotFoundError)
    def _not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @app.errorhandler(ValidationError)
    def _validation(error: ValidationError):
        required = any(v == "required" for v in error.details.values())
        return api_error(E.VALIDATION_REQUIRED if required else E.VALIDATION_INVALID,
                         str(error), details=error.details)

    @app.errorhandler(IncompleteChecklistError)
    def _checklist(error: IncompleteChecklistError):
        return api_error(E.CHECKLIST_INCOMPLETE, str(error),
                         details={"failing_items": error.failing_items})

    @app.errorhandler(MissingReworkReasonError)
    def _rework_reason(error: MissingReworkReasonError):
        return api_error(E.REWORK_REASON_MISSING, str(error))

    @app.errorhandler(IllegalTransitionError)
    def _illegal(error: IllegalTransitionError):
        return api_error(E.TRANSITION_ILLEGAL, str(error),
                         details={"status": error.current_status, "event": error.event})

    @app.errorhandler(TransitionError)
    def _transition(error: TransitionError):
        return api_error(E.TRANSITION_ILLEGAL, str(error))

    @app.errorhandler(DuplicateKeyError)
    def _duplicate(error: DuplicateKeyError):
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={error.field: error.value})

    @app.errorhandler(BackendUnavailableError)
    def _backend(error: BackendUnavailableError):
        logger.warning("Shared backend unavailable: %s", error)
        return api_error(E.BACKEND_UNAVAILABLE, str(error))
