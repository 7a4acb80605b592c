"""
Request pipeline (BaseApiClient): every sub-client issues its HTTP calls through this class.

Per attempt it reads the credential view kept in sync by TokenStore notifications, attaches
either a bearer token or an API key (bearer wins), adds an Idempotency-Key when the request
is retry-safe by key, executes the call with httpx and classifies failures into ApiError.
Transient failures are retried per RetryPolicy; 401/403 are never retried and are handed to
the on_auth_error hook (installed by SessionCoordinator) before being raised.
"""
import asyncio
import logging
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from session_client.config import API_BASE_URL, API_KEY, REQUEST_TIMEOUT, UPLOAD_TIMEOUT
from session_client.errors import ApiError, ErrorKind, error_from_exception, error_from_response, not_authenticated
from session_client.retry_policy import RetryContext, RetryPolicy, is_safe_method
from session_client.token_store import Credential, TokenStore

logger = logging.getLogger(__name__)

AUTHORIZATION_HEADER = "Authorization"
API_KEY_HEADER = "X-API-Key"
IDEMPOTENCY_HEADER = "Idempotency-Key"
REQUEST_TIME_HEADER = "X-Request-Time"


@dataclass
class RequestOptions:
    params: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    # Unsafe methods are only retried with a key; idempotent=True asks the pipeline to make one
    idempotency_key: str | None = None
    idempotent: bool = False
    # False for calls made before a session exists (login, register, password reset)
    authenticated: bool = True


def generate_idempotency_key() -> str:
    """Opaque, unguessable key for the receiving service to dedupe retried writes."""
    return secrets.token_urlsafe(24)


def _has_header(headers: dict[str, str], name: str) -> bool:
    lowered = name.lower()
    return any(k.lower() == lowered for k in headers)


class BaseApiClient:
    def __init__(
        self,
        token_store: TokenStore,
        *,
        base_url: str = API_BASE_URL,
        api_key: str | None = API_KEY,
        timeout: float = REQUEST_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        headers: dict[str, str] | None = None,
        on_retry: Callable[[int, ApiError], None] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.on_retry = on_retry
        self.on_auth_error: Callable[[ApiError], Awaitable[None] | None] | None = None
        self._token_store = token_store
        self._api_key = api_key
        self._transport = transport
        self._default_headers = {"Accept": "application/json", **(headers or {})}
        self._http: httpx.AsyncClient | None = None
        # Read-only view of the shared credential, kept equal to the store by notifications
        self._credential: Credential | None = token_store.get()
        token_store.register(self)

    # ------------------------------------------------------------------
    # Credential view
    # ------------------------------------------------------------------
    def credential_changed(self, credential: Credential | None) -> None:
        self._credential = credential

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def token_store(self) -> TokenStore:
        return self._token_store

    def get_access_token(self) -> str | None:
        return self._credential.access_token if self._credential else None

    def get_api_key(self) -> str | None:
        return self._api_key

    def set_api_key(self, key: str | None) -> None:
        self._api_key = key or None

    def _auth_headers(self) -> dict[str, str]:
        if self._credential is not None:
            return {AUTHORIZATION_HEADER: f"Bearer {self._credential.access_token}"}
        if self._api_key:
            return {API_KEY_HEADER: self._api_key}
        return {}

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------
    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self._default_headers,
                transport=self._transport,
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def _build_headers(self, opts: RequestOptions, idempotency_key: str | None) -> dict[str, str]:
        headers: dict[str, str] = {REQUEST_TIME_HEADER: datetime.now(timezone.utc).isoformat()}
        # Caller-supplied credentials override the session view (e.g. revoking a captured token)
        if not (_has_header(opts.headers, AUTHORIZATION_HEADER) or _has_header(opts.headers, API_KEY_HEADER)):
            headers.update(self._auth_headers())
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key
        headers.update(opts.headers)
        return headers

    async def _send(self, method: str, path: str, body: Any, opts: RequestOptions, headers: dict[str, str], **extra) -> httpx.Response:
        kwargs: dict[str, Any] = {"params": opts.params, "headers": headers}
        if opts.timeout is not None:
            kwargs["timeout"] = opts.timeout
        if body is not None:
            kwargs["json"] = body
        kwargs.update(extra)
        return await self._client().request(method, path, **kwargs)

    async def _handle_auth_error(self, error: ApiError) -> None:
        if self.on_auth_error is None:
            return
        try:
            result = self.on_auth_error(error)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Auth failure handler raised")

    async def _execute(self, method: str, path: str, body: Any = None, options: RequestOptions | None = None, **extra) -> httpx.Response:
        method = method.upper()
        opts = options or RequestOptions()
        key = opts.idempotency_key
        if key is None and opts.idempotent and not is_safe_method(method):
            key = generate_idempotency_key()
        retry_safe = is_safe_method(method) or key is not None
        ctx = RetryContext(max_attempts=self.retry_policy.max_attempts)
        explicit_auth = _has_header(opts.headers, AUTHORIZATION_HEADER) or _has_header(opts.headers, API_KEY_HEADER)

        session_bound = False
        while True:
            ctx.attempt += 1
            # Re-checked on every attempt: a logout during a retry delay must stop the next call
            used_credential = self._credential is not None and not explicit_auth
            missing = not explicit_auth and self._credential is None and (session_bound or not self._api_key)
            if opts.authenticated and missing:
                error = not_authenticated(method, path)
                error.attempts = ctx.attempt - 1
                raise error
            session_bound = session_bound or used_credential
            # Captured before the await: the store may hold a different session by the time we return
            sent_token = self._credential.access_token if used_credential else None

            headers = self._build_headers(opts, key)
            try:
                response = await self._send(method, path, body, opts, headers, **extra)
            except httpx.TransportError as exc:
                error = error_from_exception(exc, method=method, path=path)
            else:
                if response.is_success:
                    return response
                error = error_from_response(response, method=method, path=path)
            error.attempts = ctx.attempt
            error.access_token = sent_token
            ctx.last_error = error.kind

            if error.kind is ErrorKind.AUTH:
                logger.warning("%s %s rejected with %s", method, path, error.status)
                if used_credential and opts.authenticated:
                    await self._handle_auth_error(error)
                raise error

            decision = self.retry_policy.decide(ctx.attempt, error, idempotent=retry_safe)
            if not decision.retry:
                if ctx.attempt > 1 or error.kind in (ErrorKind.SERVER, ErrorKind.NETWORK, ErrorKind.TIMEOUT):
                    logger.warning(
                        "%s %s failed after %d attempt(s): %s", method, path, ctx.attempt, error.kind.value
                    )
                raise error

            # Delays between consecutive attempts never shrink
            ctx.backoff = max(decision.delay, ctx.backoff)
            logger.info(
                "%s %s attempt %d failed (%s); retrying in %.2fs",
                method, path, ctx.attempt, error.kind.value, ctx.backoff,
            )
            if self.on_retry is not None:
                self.on_retry(ctx.attempt, error)
            await asyncio.sleep(ctx.backoff)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        if "json" in response.headers.get("content-type", ""):
            try:
                return response.json()
            except ValueError:
                # Mislabelled body: hand back the text rather than a decoder error
                return response.text
        return response.text

    async def request(self, method: str, path: str, body: Any = None, options: RequestOptions | None = None) -> Any:
        """
        Issue one logical request. Returns the decoded body (JSON, text, or None when empty)
        unchanged; raises ApiError once retries are exhausted or on a non-retryable failure.
        """
        response = await self._execute(method, path, body, options)
        return self._decode(response)

    async def get(self, path: str, options: RequestOptions | None = None) -> Any:
        return await self.request("GET", path, None, options)

    async def post(self, path: str, body: Any = None, options: RequestOptions | None = None) -> Any:
        return await self.request("POST", path, body, options)

    async def put(self, path: str, body: Any = None, options: RequestOptions | None = None) -> Any:
        return await self.request("PUT", path, body, options)

    async def patch(self, path: str, body: Any = None, options: RequestOptions | None = None) -> Any:
        return await self.request("PATCH", path, body, options)

    async def delete(self, path: str, options: RequestOptions | None = None) -> Any:
        return await self.request("DELETE", path, None, options)

    async def upload(
        self,
        path: str,
        files: dict[str, Any],
        data: dict[str, Any] | None = None,
        options: RequestOptions | None = None,
    ) -> Any:
        """Multipart POST (httpx sets the boundary content type)."""
        opts = options or RequestOptions()
        if opts.timeout is None:
            opts = replace(opts, timeout=UPLOAD_TIMEOUT)
        response = await self._execute("POST", path, None, opts, files=files, data=data)
        return self._decode(response)

    async def download(self, path: str, options: RequestOptions | None = None) -> bytes:
        opts = options or RequestOptions()
        if opts.timeout is None:
            opts = replace(opts, timeout=UPLOAD_TIMEOUT)
        response = await self._execute("GET", path, None, opts)
        return response.content

    async def check_health(self) -> bool:
        """True when GET /health succeeds. Never raises."""
        try:
            await self.get("/health", RequestOptions(authenticated=False))
            return True
        except ApiError:
            return False

    async def check_database_health(self) -> Any:
        return await self.get("/health/database", RequestOptions(authenticated=False))
