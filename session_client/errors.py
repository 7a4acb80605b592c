"""
Error taxonomy for the request pipeline.
One exception type, ApiError, tagged with an ErrorKind; callers branch on err.kind
(match/case) instead of isinstance chains. Structured payload (problem details,
field-level errors, retry-after hint) rides along for the caller to render.
"""
import math
import time
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any

import httpx

from problem_details.problem import title_for_status


class ErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTH = "auth"
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    CLIENT = "client"


@dataclass(frozen=True)
class ProblemDetail:
    """RFC 7807 body as received from the API."""

    title: str
    status: int
    type: str = "about:blank"
    detail: str | None = None
    instance: str | None = None
    timestamp: str | None = None
    errors: list[Any] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_body(cls, body: Any) -> "ProblemDetail | None":
        """Parse a decoded JSON body; None unless it carries title and an integer status."""
        if not isinstance(body, dict):
            return None
        title = body.get("title")
        status = body.get("status")
        if not isinstance(title, str) or not isinstance(status, int) or isinstance(status, bool):
            return None
        known = {"type", "title", "status", "detail", "instance", "timestamp", "errors"}
        errors = body.get("errors")
        return cls(
            title=title,
            status=status,
            type=body.get("type") or "about:blank",
            detail=body.get("detail"),
            instance=body.get("instance"),
            timestamp=body.get("timestamp"),
            errors=list(errors) if isinstance(errors, list) else [],
            extra={k: v for k, v in body.items() if k not in known},
        )


class ApiError(Exception):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status: int | None = None,
        problem: ProblemDetail | None = None,
        errors: list[Any] | None = None,
        retry_after: float | None = None,
        method: str | None = None,
        path: str | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.problem = problem
        self.errors = errors or []
        self.retry_after = retry_after
        self.method = method
        self.path = path
        self.attempts = attempts
        # Stored bearer token the failing attempt carried (None for API-key or explicit-header calls)
        self.access_token: str | None = None

    def __repr__(self) -> str:
        return f"ApiError(kind={self.kind.value!r}, status={self.status!r}, message={self.message!r})"


def not_authenticated(method: str | None = None, path: str | None = None) -> ApiError:
    return ApiError(ErrorKind.AUTH, "Not authenticated", method=method, path=path)


def parse_retry_after(value: str | None, now: float | None = None) -> float | None:
    """Retry-After header as seconds: delta-seconds or an HTTP date. None if absent or unparseable."""
    if value is None or not value.strip():
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when is None:
            return None
        now = time.time() if now is None else now
        return max(0.0, when.timestamp() - now)
    if math.isnan(seconds) or seconds < 0:
        return None
    return seconds


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


def kind_for_status(status: int) -> ErrorKind:
    if status in (401, 403):
        return ErrorKind.AUTH
    if status == 408:
        return ErrorKind.TIMEOUT
    if status == 422:
        return ErrorKind.VALIDATION
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status >= 500:
        return ErrorKind.SERVER
    return ErrorKind.CLIENT


def error_from_response(response: httpx.Response, *, method: str | None = None, path: str | None = None) -> ApiError:
    """Classify a non-2xx response. Problem-details bodies are kept intact on the error."""
    status = response.status_code
    body = _decode_body(response)
    problem = ProblemDetail.from_body(body)
    kind = kind_for_status(status)

    errors: list[Any] = []
    message = None
    if problem is not None:
        errors = problem.errors
        message = problem.detail or problem.title
    elif isinstance(body, dict):
        raw_errors = body.get("errors") or body.get("details")
        if isinstance(raw_errors, list):
            errors = raw_errors
        message = body.get("message") or body.get("detail") or body.get("error")
        if isinstance(message, list):
            message = ", ".join(str(m) for m in message)
    # Field-level errors on a 400 are validation failures too
    if kind is ErrorKind.CLIENT and status == 400 and errors:
        kind = ErrorKind.VALIDATION

    retry_after = None
    if kind is ErrorKind.RATE_LIMIT:
        retry_after = parse_retry_after(response.headers.get("retry-after"))
        if retry_after is None and isinstance(body, dict):
            hint = body.get("retryAfter")
            if isinstance(hint, (int, float)) and not isinstance(hint, bool) and hint >= 0:
                retry_after = float(hint)

    return ApiError(
        kind,
        str(message) if message else title_for_status(status),
        status=status,
        problem=problem,
        errors=errors,
        retry_after=retry_after,
        method=method,
        path=path,
    )


def error_from_exception(exc: Exception, *, method: str | None = None, path: str | None = None) -> ApiError:
    """Classify a transport failure (no response received)."""
    if isinstance(exc, httpx.TimeoutException):
        return ApiError(ErrorKind.TIMEOUT, "Request timeout", method=method, path=path)
    return ApiError(
        ErrorKind.NETWORK,
        f"Network error - server may be unreachable ({type(exc).__name__})",
        method=method,
        path=path,
    )
