"""
Customer Request Pipeline
Blueprint registry and shared error handlers.
"""

import logging

from flask import request
from werkzeug.exceptions import HTTPException

from quote_pipeline.core.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from quote_pipeline.models import db
from quote_pipeline.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def get_json_body():
    """Parsed JSON object body, or None when missing / malformed / not an object."""
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else None


def register_error_handlers(bp):
    """Map the pipeline exception taxonomy to HTTP responses for ``bp``."""

    @bp.errorhandler(ForbiddenError)
    def _handle_forbidden(error: ForbiddenError):
        db.session.rollback()
        return api_error(
            E.FORBIDDEN, str(error),
            details={"action": error.action, "role": error.role, "allowed": list(error.allowed)},
        )

    @bp.errorhandler(InvalidTransitionError)
    def _handle_invalid_transition(error: InvalidTransitionError):
        db.session.rollback()
        return api_error(
            E.INVALID_TRANSITION, str(error),
            details={"action": error.action, "currentStatus": error.current_status},
        )

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        db.session.rollback()
        return api_error(E.VALIDATION_FAILED, str(error), details=error.details)

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        db.session.rollback()
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        db.session.rollback()
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
