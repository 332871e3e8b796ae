"""
Request API Gateway.

All outbound HTTP calls from the synchronization layer to the backing request
API go through this class.  Direct `requests` calls elsewhere are forbidden.

  - Principal headers (X-User-Id / X-User-Name / X-User-Role) on every call
  - Timeout: GATEWAY_TIMEOUT_SECONDS (default 15 s) per call
  - Retry: GETs only, max 2 retries with backoff (0.5 s → 2 s), 5xx and
    network failures only; writes are never replayed
  - Errors: 404 → NotFoundError, 403 → ForbiddenError, 409 →
    InvalidTransitionError, 422 → ValidationError (with the failing field),
    anything else non-2xx / timeout / connection failure → GatewayError

Testability: pass a mock `session` (and a no-op `sleep`) to RequestGateway().
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

import requests

from quote_pipeline.core.exceptions import (
    ForbiddenError,
    GatewayError,
    InvalidTransitionError,
    NetworkAbortedError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [0.5, 2]

_DEFAULT_TIMEOUT = 15


class GatewayResult:
    """Structured return value from a single gateway call.

    Attributes:
        ok:             True if the call succeeded (HTTP 2xx + no exception).
        status_code:    HTTP status code (None if network-level failure).
        data:           Parsed JSON response body (dict or list), else None.
        error:          Human-readable error message or None.
        duration_ms:    Round-trip latency in milliseconds.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | list | None,
        error: str | None,
        duration_ms: int,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms

    def __repr__(self) -> str:
        return f"<GatewayResult ok={self.ok} status={self.status_code} {self.duration_ms}ms>"


class RequestGateway:
    """Backing API client for one principal.

    Usage:
        gateway = RequestGateway("https://quotes.example.com", principal)
        summaries = gateway.list_summaries()
        record = gateway.transition("CRA26101701", action="submit")
    """

    def __init__(
        self,
        base_url: str,
        principal=None,
        *,
        session: requests.Session | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.principal = principal
        self.timeout = timeout
        self._sleep = sleep
        # Inject custom session for testing; create real one lazily otherwise.
        self._session: requests.Session | None = session

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _headers(self) -> dict:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.principal is not None:
            headers.update(self.principal.to_headers())
        return headers

    # ── Core request dispatcher ───────────────────────────────────────────────

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict | None = None,
        params: dict | None = None,
        cancel_event: threading.Event | None = None,
    ) -> GatewayResult:
        """Execute a request with GET retries.  Never raises except on cancellation.

        Raises:
            NetworkAbortedError: ``cancel_event`` was set before the call or
                before its response could be used.
        """
        url = f"{self.base_url}{path}"
        attempts = _RETRY_MAX + 1 if method == "GET" else 1
        last_error = "Unknown error"
        last_status: int | None = None
        t_start = time.perf_counter()

        for attempt in range(attempts):
            if cancel_event is not None and cancel_event.is_set():
                raise NetworkAbortedError(f"{method} {path} cancelled")
            kwargs: dict[str, Any] = {"headers": self._headers(), "timeout": self.timeout}
            if json_body is not None:
                kwargs["json"] = json_body
            if params:
                kwargs["params"] = params
            try:
                resp = self.session.request(method, url, **kwargs)
                last_status = resp.status_code
                if cancel_event is not None and cancel_event.is_set():
                    raise NetworkAbortedError(f"{method} {path} cancelled")
                duration_ms = int((time.perf_counter() - t_start) * 1000)
                try:
                    data = resp.json() if resp.content else None
                except ValueError:
                    data = None
                if resp.ok:
                    return GatewayResult(True, resp.status_code, data, None, duration_ms)
                last_error = _error_message(resp.status_code, data, resp.text)
                if resp.status_code < 500:
                    return GatewayResult(False, resp.status_code, data, last_error, duration_ms)
                logger.warning(
                    "Request API failed attempt=%d/%d status=%d %s %s",
                    attempt + 1, attempts, resp.status_code, method, path,
                )
            except requests.Timeout:
                last_status = None
                last_error = f"Request timed out after {self.timeout}s"
                logger.warning("Request API timed out attempt=%d/%d %s %s", attempt + 1, attempts, method, path)
            except requests.RequestException as exc:
                last_status = None
                last_error = str(exc)[:500]
                logger.warning(
                    "Request API network error attempt=%d/%d %s %s error=%s",
                    attempt + 1, attempts, method, path, last_error,
                )

            if attempt < attempts - 1:
                sleep_s = _RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)]
                logger.info("Retrying %s %s in %ss (attempt %d)", method, path, sleep_s, attempt + 2)
                self._sleep(sleep_s)

        duration_ms = int((time.perf_counter() - t_start) * 1000)
        return GatewayResult(False, last_status, None, last_error, duration_ms)

    def _call(self, method: str, path: str, *, rid: str | None = None, **kwargs):
        """Dispatch and translate a failed result into the exception taxonomy."""
        result = self.request(method, path, **kwargs)
        if result.ok:
            return result.data
        raise _to_exception(result, rid)

    # ── Request API operations ────────────────────────────────────────────────

    def list_summaries(self) -> list[dict]:
        return self._call("GET", "/api/v1/requests/summary") or []

    def get_full(self, rid: str) -> dict:
        return self._call("GET", f"/api/v1/requests/{rid}", rid=rid)

    def create(self, body: dict) -> dict:
        return self._call("POST", "/api/v1/requests", json_body=body)

    def update(self, rid: str, body: dict) -> dict:
        return self._call("PUT", f"/api/v1/requests/{rid}", rid=rid, json_body=body)

    def transition(
        self,
        rid: str,
        *,
        action: str | None = None,
        status: str | None = None,
        comment: str | None = None,
        payload: dict | None = None,
    ) -> dict:
        body: dict[str, Any] = {}
        if action:
            body["action"] = action
        if status:
            body["status"] = status
        if comment is not None:
            body["comment"] = comment
        if payload:
            body["payload"] = payload
        if self.principal is not None:
            body["userId"] = self.principal.id
            body["userName"] = self.principal.name
        return self._call("POST", f"/api/v1/requests/{rid}/status", rid=rid, json_body=body)

    def delete(self, rid: str) -> None:
        self._call("DELETE", f"/api/v1/requests/{rid}", rid=rid)

    def search(self, q: str, limit: int = 20, *, cancel_event: threading.Event | None = None) -> list[dict]:
        return self._call(
            "GET", "/api/v1/requests/search",
            params={"q": q, "limit": limit}, cancel_event=cancel_event,
        ) or []


def _error_message(status_code: int, data, text: str) -> str:
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return f"HTTP {status_code}: {(text or '')[:500]}"


def _to_exception(result: GatewayResult, rid: str | None) -> Exception:
    body = result.data if isinstance(result.data, dict) else {}
    details = body.get("details") or {}
    if result.status_code == 404:
        return NotFoundError(resource="Request", resource_id=rid)
    if result.status_code == 403:
        return ForbiddenError(details.get("action", ""), details.get("role"), tuple(details.get("allowed") or ()))
    if result.status_code == 409:
        return InvalidTransitionError(details.get("action", ""), details.get("currentStatus", ""), result.error)
    if result.status_code == 422:
        return ValidationError(result.error or "Validation failed", field=details.get("field"), details=details)
    return GatewayError(result.error or "Request failed", status_code=result.status_code, body=body)
