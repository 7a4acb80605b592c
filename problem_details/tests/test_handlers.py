"""Tests for the FastAPI problem-details exception handlers."""
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from problem_details.handlers import ProblemError, install_problem_handlers
from problem_details.problem import PROBLEM_CONTENT_TYPE


class NewUser(BaseModel):
    email: str
    age: int


def make_app(production: bool) -> FastAPI:
    app = FastAPI()
    install_problem_handlers(app, production=production)

    @app.get("/missing")
    def missing():
        raise HTTPException(status_code=404, detail="User not found")

    @app.get("/oauth-style")
    def oauth_style():
        raise HTTPException(
            status_code=401,
            detail={"error": "invalid_token", "error_description": "Token expired"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.get("/conflict")
    def conflict():
        raise ProblemError(409, "Email already registered", errors=[{"field": "email", "message": "taken"}])

    @app.get("/limited")
    def limited():
        raise ProblemError(429, "Slow down", retry_after=12)

    @app.get("/limited-default")
    def limited_default():
        raise HTTPException(status_code=429)

    @app.get("/limited-header")
    def limited_header():
        raise HTTPException(status_code=429, headers={"Retry-After": "5"})

    @app.post("/users")
    def create_user(user: NewUser):
        return user

    @app.get("/crash")
    def crash():
        raise RuntimeError("database exploded")

    return app


dev = TestClient(make_app(production=False), raise_server_exceptions=False)
prod = TestClient(make_app(production=True), raise_server_exceptions=False)


def test_http_exception_string_detail():
    r = dev.get("/missing")
    assert r.status_code == 404
    assert r.headers["content-type"].startswith(PROBLEM_CONTENT_TYPE)
    body = r.json()
    assert body["title"] == "Not Found"
    assert body["status"] == 404
    assert body["detail"] == "User not found"
    assert body["instance"] == "/missing"
    assert body["type"].endswith("/not-found-error")
    assert "timestamp" in body


def test_dict_detail_and_headers_kept():
    r = dev.get("/oauth-style")
    assert r.status_code == 401
    assert r.headers["www-authenticate"] == "Bearer"
    assert r.json()["detail"] == "Token expired"


def test_problem_error_with_field_errors():
    body = dev.get("/conflict").json()
    assert body["status"] == 409
    assert body["title"] == "Conflict"
    assert body["errors"] == [{"field": "email", "message": "taken"}]


def test_rate_limit_sets_retry_after():
    r = dev.get("/limited")
    assert r.status_code == 429
    assert r.headers["retry-after"] == "12"
    assert r.json()["retryAfter"] == 12


def test_rate_limit_default_retry_after():
    r = dev.get("/limited-default")
    assert r.headers["retry-after"] == "60"


def test_rate_limit_keeps_route_retry_after():
    r = dev.get("/limited-header")
    assert r.status_code == 429
    assert r.headers["retry-after"] == "5"
    assert r.json()["retryAfter"] == 5


def test_unknown_route_is_problem():
    r = dev.get("/nope")
    assert r.status_code == 404
    assert r.json()["title"] == "Not Found"


def test_request_validation_lists_fields():
    r = dev.post("/users", json={"email": "a@example.com", "age": "old"})
    assert r.status_code == 422
    body = r.json()
    assert body["title"] == "Unprocessable Entity"
    assert body["type"].endswith("/validation-error")
    assert [e["field"] for e in body["errors"]] == ["age"]


def test_unhandled_exception_includes_stack_outside_production():
    r = dev.get("/crash")
    assert r.status_code == 500
    body = r.json()
    assert body["title"] == "Internal Server Error"
    assert body["detail"] == "An unexpected error occurred"
    assert "database exploded" in body["stack"]


def test_unhandled_exception_hides_stack_in_production():
    r = prod.get("/crash")
    assert r.status_code == 500
    body = r.json()
    assert "stack" not in body
    assert "database exploded" not in r.text
