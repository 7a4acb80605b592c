"""
SessionCoordinator: owns login, logout and session expiry for one ApiClient.

Login sets the shared TokenStore (every sub-client sees it before login returns) and starts
the SessionMonitor. Logout always clears local state, even when the remote revoke fails or
times out. A 401/403 on any request made with the stored credential forces a local logout;
monitor expiry does the same and then revokes the captured token in the background.
"""
import asyncio
import logging
import time
from typing import Any, Callable

import jwt

from session_client.api_client import ApiClient
from session_client.config import LOGOUT_TIMEOUT, SESSION_TTL
from session_client.errors import ApiError, ErrorKind
from session_client.pipeline import RequestOptions
from session_client.session_monitor import SessionEvent, SessionMonitor, SessionState, Subscription
from session_client.token_store import Credential

logger = logging.getLogger(__name__)


def issued_at_from_token(token: str, default: float) -> float:
    """
    The JWT iat claim, read without signature verification (the server is the verifier;
    this only anchors the local clock). Falls back to default for opaque tokens.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return default
    iat = claims.get("iat")
    if isinstance(iat, (int, float)) and not isinstance(iat, bool):
        return float(iat)
    return default


def _auth_payload(response: Any) -> dict:
    # Accept both {accessToken, ...} and an enveloped {data: {accessToken, ...}}
    if isinstance(response, dict):
        if isinstance(response.get("accessToken"), str):
            return response
        inner = response.get("data")
        if isinstance(inner, dict) and isinstance(inner.get("accessToken"), str):
            return inner
    raise ApiError(ErrorKind.CLIENT, "Login response did not include an access token", method="POST", path="/auth/login")


class SessionCoordinator:
    def __init__(
        self,
        client: ApiClient,
        monitor: SessionMonitor | None = None,
        *,
        session_ttl: float = SESSION_TTL,
        logout_timeout: float = LOGOUT_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.token_store = client.token_store
        self.monitor = monitor or SessionMonitor(self.token_store, clock=clock)
        self.session_ttl = session_ttl
        self.logout_timeout = logout_timeout
        self._clock = clock
        self.user: dict | None = None
        self._monitor_handle: Subscription | None = None
        self._revoke_tasks: set[asyncio.Task] = set()
        for sub_client in client.sub_clients():
            sub_client.on_auth_error = self._on_auth_error
        self._monitor_sub = self.monitor.subscribe(self._on_monitor_event)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    @property
    def is_authenticated(self) -> bool:
        return self.token_store.get() is not None

    @property
    def state(self) -> SessionState:
        return self.monitor.state

    @property
    def remaining_session_time(self) -> float:
        return self.token_store.remaining()

    def get_access_token(self) -> str | None:
        credential = self.token_store.get()
        return credential.access_token if credential else None

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    async def login(self, email: str, password: str) -> Credential:
        """
        Authenticate and start the session. On failure the store is left as it was and the
        ApiError propagates unchanged.
        """
        response = await self.client.auth.login(email, password)
        payload = _auth_payload(response)
        now = self._clock()
        token = payload["accessToken"]
        refresh = payload.get("refreshToken")
        credential = Credential(
            access_token=token,
            issued_at=issued_at_from_token(token, now),
            session_expires_at=now + self.session_ttl,
            refresh_token=refresh if isinstance(refresh, str) and refresh else None,
        )
        # A new login starts a fresh session: drop any previous one first so set() does not
        # carry over a later expiry from it
        self._stop_monitor()
        self.token_store.clear()
        self.token_store.set(credential)
        user = payload.get("user")
        self.user = user if isinstance(user, dict) else None
        self._monitor_handle = self.monitor.start()
        logger.info("Login succeeded for user %s", (self.user or {}).get("id", "unknown"))
        return self.token_store.get()

    async def logout(self) -> None:
        """
        Revoke server-side (bounded by logout_timeout) and end the local session. Local state
        is cleared whether or not the remote call succeeds; remote failures are only logged.
        """
        if self.token_store.get() is None:
            self._end_session()
            return
        try:
            await asyncio.wait_for(self.client.auth.logout(), timeout=self.logout_timeout)
        except asyncio.TimeoutError:
            logger.warning("Logout revoke timed out after %ss; clearing local session", self.logout_timeout)
        except Exception as e:
            logger.warning("Logout revoke failed: %s; clearing local session", e)
        finally:
            self._end_session()
        logger.info("Logged out")

    def extend_session(self) -> None:
        """Explicit user-initiated extension. No-op when not authenticated."""
        if self.token_store.get() is None:
            return
        self.token_store.update_activity()
        self.token_store.update_session_expiry(self.session_ttl)
        self.monitor.check()

    async def restore(self) -> Credential | None:
        """
        Re-hydrate a persisted session. An expired credential is cleared; a live one
        restarts the monitor.
        """
        credential = self.token_store.get()
        if credential is None:
            return None
        if credential.is_expired(self._clock()):
            logger.info("Persisted session already expired; clearing")
            self._end_session()
            return None
        self._monitor_handle = self.monitor.start()
        return self.token_store.get()

    def record_activity(self, event: str) -> None:
        """Feed one host activity event (pointerdown, keydown, scroll, touchstart)."""
        self.monitor.tracker.emit(event)

    async def request(self, method: str, path: str, body: Any = None, options: RequestOptions | None = None) -> Any:
        return await self.client.request(method, path, body, options)

    async def aclose(self) -> None:
        self._stop_monitor()
        self._monitor_sub.release()
        if self._revoke_tasks:
            await asyncio.gather(*self._revoke_tasks, return_exceptions=True)
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _stop_monitor(self) -> None:
        if self._monitor_handle is not None:
            self._monitor_handle.release()
            self._monitor_handle = None
        self.monitor.stop()

    def _end_session(self, expired: bool = False) -> None:
        self.token_store.clear()
        if expired:
            # The monitor already tore down its timers; leave it reporting EXPIRED
            if self._monitor_handle is not None:
                self._monitor_handle.release()
                self._monitor_handle = None
        else:
            self._stop_monitor()
        self.user = None

    async def _on_auth_error(self, error: ApiError) -> None:
        # Several in-flight requests can fail together; only the first one has work to do.
        # A rejection of an older session's token must not end the session that replaced it.
        current = self.token_store.get()
        if current is None or current.access_token != error.access_token:
            return
        logger.warning("Credential rejected (%s %s -> %s); ending session", error.method, error.path, error.status)
        self._end_session()

    def _on_monitor_event(self, event: SessionEvent, remaining: float) -> None:
        if event is not SessionEvent.EXPIRED:
            return
        credential = self.token_store.get()
        if credential is None:
            return
        self._end_session(expired=True)
        logger.info("Session expired; revoking in background")
        self._schedule_revoke(credential.access_token)

    def _schedule_revoke(self, access_token: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; skipping remote revoke for expired session")
            return
        task = loop.create_task(self._revoke(access_token))
        self._revoke_tasks.add(task)
        task.add_done_callback(self._revoke_tasks.discard)

    async def _revoke(self, access_token: str) -> None:
        try:
            await asyncio.wait_for(
                self.client.auth.logout(access_token, RequestOptions(authenticated=False)),
                timeout=self.logout_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Background revoke timed out")
        except Exception as e:
            logger.warning("Background revoke failed: %s", e)
