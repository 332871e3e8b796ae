"""
Customer Request Pipeline
Principal resolution & role gating.

Provides:
    - Principal resolution from the X-User-Id / X-User-Name / X-User-Role
      headers set by the session service in front of the API
    - ``role_required`` decorator for endpoints gated outside the lifecycle
      transition table (delete is admin-only)
    - Content-Type enforcement for state-changing requests

Security model:
    - Read endpoints are open; the principal is optional there.
    - Mutating endpoints need a principal with a known role (else 401).
    - Lifecycle transitions are authorised by the transition table, not here.
"""

import functools
import logging
from dataclasses import dataclass

from flask import g, request

from quote_pipeline.models.request import ROLES
from quote_pipeline.utils.errors import E, api_error

logger = logging.getLogger(__name__)

_MUTATING_METHODS = ("POST", "PUT", "PATCH", "DELETE")


@dataclass(frozen=True)
class Principal:
    """Authenticated user: the sole authorization input to every guard."""

    id: str
    name: str
    role: str

    def to_headers(self) -> dict[str, str]:
        return {"X-User-Id": self.id, "X-User-Name": self.name, "X-User-Role": self.role}


def principal_from_headers(headers) -> Principal | None:
    """Build a principal from request headers; None when id or role is unusable."""
    user_id = (headers.get("X-User-Id") or "").strip()
    role = (headers.get("X-User-Role") or "").strip().lower()
    if not user_id or role not in ROLES:
        return None
    name = (headers.get("X-User-Name") or "").strip() or user_id
    return Principal(id=user_id, name=name, role=role)


def current_principal() -> Principal | None:
    return getattr(g, "principal", None)


# ── Decorators ───────────────────────────────────────────────────────────────

def role_required(*roles: str):
    """
    Decorator: require the principal's role to be one of ``roles``.

    Usage:
        @bp.route("/api/v1/requests/<rid>", methods=["DELETE"])
        @role_required("admin")
        def delete_request(rid): ...
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            principal = current_principal()
            if principal is None:
                return api_error(E.UNAUTHENTICATED, "Authentication required")
            if principal.role not in roles:
                logger.warning(
                    "Access denied: role '%s' tried to access %s (allowed: %s)",
                    principal.role, request.path, ", ".join(roles),
                )
                return api_error(
                    E.FORBIDDEN, "Insufficient permissions",
                    details={"role": principal.role, "allowed": list(roles)},
                )
            return f(*args, **kwargs)
        return decorated
    return decorator


# ── CSRF protection for API ──────────────────────────────────────────────────

def _check_content_type():
    """
    State-changing requests with a body must be JSON.  HTML forms cannot send
    application/json, so this doubles as a lightweight CSRF mitigation.
    """
    if request.method in _MUTATING_METHODS:
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return api_error(
                E.VALIDATION_INVALID,
                "Content-Type must be application/json for state-changing requests",
                status=415,
            )
    return None


# ── before_request hook installer ────────────────────────────────────────────

def init_auth(app):
    """Resolve the principal for every API request (health excluded)."""

    @app.before_request
    def _before_request_auth():
        g.principal = None
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith("/api/v1/health"):
            return None
        if request.method == "OPTIONS":
            return None

        csrf_error = _check_content_type()
        if csrf_error:
            return csrf_error

        g.principal = principal_from_headers(request.headers)
        if g.principal is None and request.method in _MUTATING_METHODS:
            if request.headers.get("X-User-Role"):
                logger.warning("Unknown role '%s' on %s", request.headers.get("X-User-Role"), request.path)
            return api_error(E.UNAUTHENTICATED, "Authentication required. Provide X-User-Id and X-User-Role.")
        return None

    logger.info("Auth middleware installed")
