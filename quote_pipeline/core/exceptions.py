"""
Pipeline-wide exception hierarchy.

Services raise these types; blueprints register handlers for them once and
get consistent HTTP status codes everywhere.  The client-side sync layer
raises the same types so callers handle server and client failures alike.

Usage:
    from quote_pipeline.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Request", resource_id="CRA26101701")
    raise ValidationError("sellingPrice must be > 0", field="sellingPrice")

HTTP mapping:
    ForbiddenError          -> 403
    NotFoundError           -> 404
    InvalidTransitionError  -> 409
    ValidationError         -> 422
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Request").
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
    """Raised when a payload or field invariant is violated (ValidationFailed).

    Carries the first failing field so the UI can render a field-specific
    message.

    Args:
        message: Human-readable explanation of what failed.
        field: Name of the first failing field (camelCase, as sent by clients).
        details: Optional extra structured payload.
    """

    def __init__(self, message: str, field: str | None = None, details: dict | None = None) -> None:
        self.field = field
        self.details = dict(details or {})
        if field and "field" not in self.details:
            self.details["field"] = field
        super().__init__(message)


class ForbiddenError(Exception):
    """Raised when the principal's role may not perform the action."""

    def __init__(self, action: str, role: str | None, allowed: tuple[str, ...] = ()) -> None:
        self.action = action
        self.role = role
        self.allowed = tuple(allowed)
        msg = f"Role '{role}' may not perform '{action}'"
        if allowed:
            msg += f" (allowed: {', '.join(allowed)})"
        super().__init__(msg)


class InvalidTransitionError(Exception):
    """Raised when an action is not legal from the request's current status."""

    def __init__(self, action: str, current_status: str, reason: str | None = None) -> None:
        self.action = action
        self.current_status = current_status
        self.reason = reason
        msg = f"Cannot '{action}' request in status '{current_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


# ── Client-side synchronization errors ───────────────────────────────────────


class GatewayError(Exception):
    """Raised for non-2xx responses, timeouts and connection failures.

    ``status_code`` is None for network-level failures.
    """

    def __init__(self, message: str, status_code: int | None = None, body: dict | None = None) -> None:
        self.status_code = status_code
        self.body = body or {}
        super().__init__(message)


class SyncStaleError(Exception):
    """Poll failed; the cached data is retained and may be stale."""

    def __init__(self, last_synced_at=None, cause: Exception | None = None) -> None:
        self.last_synced_at = last_synced_at
        self.cause = cause
        msg = "Synchronization failed; serving cached data"
        if last_synced_at is not None:
            msg += f" (last sync {last_synced_at.isoformat()})"
        super().__init__(msg)


class NetworkAbortedError(Exception):
    """A fetch was cancelled before its result was used.  Not an error for callers."""
