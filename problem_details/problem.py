"""
RFC 7807 problem-details bodies: status -> title/type mapping and the body builder.
No web framework imports; the API client uses the same titles to label errors.
"""
from datetime import datetime, timezone
from typing import Any

from problem_details.config import PROBLEM_TYPE_BASE

PROBLEM_CONTENT_TYPE = "application/problem+json"

STATUS_TITLES = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    409: "Conflict",
    422: "Unprocessable Entity",
    429: "Too Many Requests",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
}

# Category slug per status; anything unlisted is an internal error
_TYPE_SLUGS = {
    400: "validation-error",
    422: "validation-error",
    401: "authentication-error",
    403: "authorization-error",
    404: "not-found-error",
    409: "conflict-error",
    429: "rate-limit-error",
}


def title_for_status(status: int) -> str:
    return STATUS_TITLES.get(status, "Error")


def type_for_status(status: int, base: str | None = None) -> str:
    base = (base if base is not None else PROBLEM_TYPE_BASE).rstrip("/")
    return f"{base}/{_TYPE_SLUGS.get(status, 'internal-error')}"


def build_problem(
    status: int,
    detail: str | None = None,
    *,
    instance: str | None = None,
    title: str | None = None,
    type_: str | None = None,
    errors: list[Any] | None = None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Problem body with timestamp. Optional members are omitted, not null."""
    problem: dict[str, Any] = {
        "type": type_ or type_for_status(status),
        "title": title or title_for_status(status),
        "status": status,
    }
    if detail:
        problem["detail"] = detail
    if instance:
        problem["instance"] = instance
    problem["timestamp"] = datetime.now(timezone.utc).isoformat()
    if errors:
        problem["errors"] = errors
    if extra:
        for key, value in extra.items():
            problem.setdefault(key, value)
    return problem
