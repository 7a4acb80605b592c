"""
FastAPI exception handlers that render every error as application/problem+json.

ProblemError is the exception to raise from routes when the body needs field errors, a
custom title or a retry hint. Plain HTTPExceptions (string or dict detail), request
validation failures and unhandled exceptions are mapped onto the same shape.
"""
import logging
import traceback
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from problem_details.config import DEFAULT_RETRY_AFTER, IS_PRODUCTION
from problem_details.problem import PROBLEM_CONTENT_TYPE, build_problem

logger = logging.getLogger(__name__)


class ProblemError(HTTPException):
    def __init__(
        self,
        status_code: int,
        detail: str | None = None,
        *,
        title: str | None = None,
        type_: str | None = None,
        errors: list[Any] | None = None,
        retry_after: int | None = None,
        headers: dict[str, str] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.title = title
        self.type_ = type_
        self.errors = errors
        self.retry_after = retry_after
        self.extra = extra


def _detail_parts(detail: Any) -> tuple[str | None, list[Any] | None]:
    """(message, field errors) from an HTTPException detail (string, list or dict)."""
    if detail is None:
        return None, None
    if isinstance(detail, str):
        return detail, None
    if isinstance(detail, list):
        return ", ".join(str(d) for d in detail), None
    if isinstance(detail, dict):
        message = detail.get("message") or detail.get("error_description") or detail.get("error")
        if isinstance(message, list):
            message = ", ".join(str(m) for m in message)
        errors = detail.get("errors")
        return (str(message) if message else None), (errors if isinstance(errors, list) else None)
    return str(detail), None


def _validation_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path", "header")]
        errors.append({"field": ".".join(loc) or None, "message": err.get("msg", "Invalid value")})
    return errors


def _as_seconds(value: str | None) -> int | None:
    """Delta-seconds form of a Retry-After value; None for HTTP dates or garbage."""
    if value is None or not value.strip().isdigit():
        return None
    return int(value.strip())


def problem_response(
    status: int,
    problem: dict[str, Any],
    headers: dict[str, str] | None = None,
    retry_after: int | None = None,
) -> JSONResponse:
    out_headers = dict(headers or {})
    if status == 429:
        # A Retry-After the route already set wins over the default
        existing = next((k for k in out_headers if k.lower() == "retry-after"), None)
        header_hint = out_headers.pop(existing) if existing else None
        if retry_after is None and header_hint:
            out_headers["Retry-After"] = header_hint
            seconds = _as_seconds(header_hint)
            if seconds is not None:
                problem.setdefault("retryAfter", seconds)
        else:
            hint = retry_after or problem.get("retryAfter") or DEFAULT_RETRY_AFTER
            problem.setdefault("retryAfter", hint)
            out_headers["Retry-After"] = str(hint)
    if status >= 500:
        logger.error("%s %s: %s", status, problem.get("instance"), problem.get("detail"))
    else:
        logger.warning("%s %s: %s", status, problem.get("instance"), problem.get("detail"))
    return JSONResponse(status_code=status, content=problem, headers=out_headers, media_type=PROBLEM_CONTENT_TYPE)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message, errors = _detail_parts(exc.detail)
    if isinstance(exc, ProblemError):
        problem = build_problem(
            exc.status_code,
            message,
            instance=request.url.path,
            title=exc.title,
            type_=exc.type_,
            errors=exc.errors or errors,
            extra=exc.extra,
        )
        return problem_response(exc.status_code, problem, exc.headers, exc.retry_after)
    problem = build_problem(exc.status_code, message, instance=request.url.path, errors=errors)
    return problem_response(exc.status_code, problem, getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problem = build_problem(
        422,
        "Request validation failed",
        instance=request.url.path,
        errors=_validation_errors(exc),
    )
    return problem_response(422, problem)


def _unhandled_handler(production: bool):
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        problem = build_problem(500, "An unexpected error occurred", instance=request.url.path)
        if not production:
            problem["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(status_code=500, content=problem, media_type=PROBLEM_CONTENT_TYPE)

    return unhandled_exception_handler


def install_problem_handlers(app: FastAPI, production: bool | None = None) -> None:
    """Register the problem-details handlers on app. production=None uses APP_ENV."""
    production = IS_PRODUCTION if production is None else production
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, _unhandled_handler(production))
