"""Tests for SessionCoordinator: login/logout guarantees, forced logout and expiry."""
import asyncio

import httpx
import jwt
import pytest
import pytest_asyncio

from session_client.api_client import ApiClient
from session_client.coordinator import SessionCoordinator, issued_at_from_token
from session_client.errors import ApiError, ErrorKind
from session_client.session_monitor import SessionMonitor, SessionState
from session_client.token_store import Credential

BASE_URL = "http://api.test/api/v1"
SIGNING_KEY = "test-signing-key-for-session-client-tests"


def login_response(token="opaque-token", **extra):
    payload = {"accessToken": token, "refreshToken": "rt-1", "user": {"id": "u1", "email": "a@example.com"}}
    payload.update(extra)
    return httpx.Response(201, json=payload)


@pytest_asyncio.fixture
async def coordinator(store, recorder, clock, no_wait_policy):
    api = ApiClient(store, base_url=BASE_URL, api_key=None, retry_policy=no_wait_policy, transport=recorder.transport())
    monitor = SessionMonitor(store, clock=clock, warning_threshold=120, reset_threshold=180, poll_interval=30, activity_debounce=0)
    coord = SessionCoordinator(api, monitor, session_ttl=3600, logout_timeout=0.2, clock=clock)
    yield coord
    await coord.aclose()


def test_issued_at_from_jwt_iat():
    token = jwt.encode({"sub": "u1", "iat": 1_699_999_000}, SIGNING_KEY, algorithm="HS256")
    assert issued_at_from_token(token, default=5.0) == 1_699_999_000


def test_issued_at_falls_back_for_opaque_token():
    assert issued_at_from_token("not-a-jwt", default=5.0) == 5.0


@pytest.mark.asyncio
async def test_login_sets_credential_for_every_sub_client(coordinator, recorder, clock):
    token = jwt.encode({"sub": "u1", "iat": int(clock.now) - 5}, SIGNING_KEY, algorithm="HS256")
    recorder.queue(login_response(token))
    credential = await coordinator.login("a@example.com", "pw")

    assert credential.access_token == token
    assert credential.issued_at == int(clock.now) - 5
    assert credential.session_expires_at == clock.now + 3600
    assert credential.refresh_token == "rt-1"
    for client in coordinator.client.sub_clients():
        assert client.credential == credential
    assert coordinator.is_authenticated
    assert coordinator.user["id"] == "u1"
    assert coordinator.state is SessionState.ACTIVE
    assert coordinator.get_access_token() == token


@pytest.mark.asyncio
async def test_login_accepts_enveloped_response(coordinator, recorder):
    recorder.queue(httpx.Response(200, json={"data": {"accessToken": "t2", "user": {"id": "u2"}}}))
    credential = await coordinator.login("b@example.com", "pw")
    assert credential.access_token == "t2"
    assert coordinator.user == {"id": "u2"}


@pytest.mark.asyncio
async def test_failed_login_leaves_store_untouched(coordinator, recorder, store):
    recorder.queue(httpx.Response(401, json={"message": "Invalid credentials"}))
    with pytest.raises(ApiError) as exc:
        await coordinator.login("a@example.com", "wrong")
    assert exc.value.kind is ErrorKind.AUTH
    assert exc.value.message == "Invalid credentials"
    assert store.get() is None
    assert coordinator.state is SessionState.INACTIVE


@pytest.mark.asyncio
async def test_failed_relogin_keeps_existing_session(coordinator, recorder, store):
    recorder.queue(login_response("first"))
    await coordinator.login("a@example.com", "pw")
    recorder.queue(httpx.Response(401))
    with pytest.raises(ApiError):
        await coordinator.login("a@example.com", "wrong")
    assert store.get().access_token == "first"
    assert coordinator.state is SessionState.ACTIVE


@pytest.mark.asyncio
async def test_login_response_without_token(coordinator, recorder, store):
    recorder.queue(httpx.Response(200, json={"user": {"id": "u1"}}))
    with pytest.raises(ApiError) as exc:
        await coordinator.login("a@example.com", "pw")
    assert exc.value.kind is ErrorKind.CLIENT
    assert store.get() is None


@pytest.mark.asyncio
async def test_logout_revokes_and_clears(coordinator, recorder, store):
    recorder.queue(login_response("tok"), httpx.Response(204))
    await coordinator.login("a@example.com", "pw")
    await coordinator.logout()

    revoke = recorder.requests[-1]
    assert revoke.url.path == "/api/v1/auth/logout"
    assert revoke.headers["authorization"] == "Bearer tok"
    assert store.get() is None
    assert all(c.credential is None for c in coordinator.client.sub_clients())
    assert coordinator.state is SessionState.INACTIVE
    assert coordinator.monitor.running is False
    assert coordinator.user is None


@pytest.mark.asyncio
async def test_logout_clears_even_when_revoke_fails(coordinator, recorder, store):
    recorder.queue(login_response(), httpx.ConnectError("unreachable"))
    await coordinator.login("a@example.com", "pw")
    await coordinator.logout()
    assert store.get() is None
    assert coordinator.monitor.running is False


@pytest.mark.asyncio
async def test_logout_clears_even_when_revoke_times_out(coordinator, recorder, store):
    async def hang(request):
        await asyncio.sleep(5)
        return httpx.Response(204)

    recorder.queue(login_response(), hang)
    await coordinator.login("a@example.com", "pw")
    await coordinator.logout()
    assert store.get() is None


@pytest.mark.asyncio
async def test_logout_without_session_is_noop(coordinator, recorder, store):
    await coordinator.logout()
    assert recorder.count == 0
    assert store.get() is None


@pytest.mark.asyncio
async def test_auth_failure_forces_logout(coordinator, recorder, store):
    recorder.queue(login_response(), httpx.Response(401, json={"message": "Token revoked"}))
    await coordinator.login("a@example.com", "pw")

    with pytest.raises(ApiError) as exc:
        await coordinator.request("GET", "/users")
    assert exc.value.kind is ErrorKind.AUTH
    assert store.get() is None
    assert coordinator.monitor.running is False
    assert coordinator.state is SessionState.INACTIVE

    calls = recorder.count
    with pytest.raises(ApiError) as again:
        await coordinator.client.entities.list_entities()
    assert again.value.message == "Not authenticated"
    assert recorder.count == calls


@pytest.mark.asyncio
async def test_forbidden_from_sub_client_forces_logout(coordinator, recorder, store):
    recorder.queue(login_response(), httpx.Response(403))
    await coordinator.login("a@example.com", "pw")
    with pytest.raises(ApiError):
        await coordinator.client.admin_users.list_users()
    assert store.get() is None


@pytest.mark.asyncio
async def test_concurrent_auth_failures_end_session_once(coordinator, recorder, store):
    recorder.queue(login_response())
    await coordinator.login("a@example.com", "pw")
    recorder.default = httpx.Response(401)
    results = await asyncio.gather(
        coordinator.client.entities.list_entities(),
        coordinator.client.sessions.list_sessions(),
        return_exceptions=True,
    )
    assert all(isinstance(r, ApiError) for r in results)
    assert store.get() is None


@pytest.mark.asyncio
async def test_extend_session(coordinator, recorder, store, clock):
    coordinator.extend_session()
    assert store.get() is None

    recorder.queue(login_response())
    await coordinator.login("a@example.com", "pw")
    clock.advance(3600 - 60)
    coordinator.monitor.check()
    assert coordinator.state is SessionState.WARNING

    coordinator.extend_session()
    assert store.get().session_expires_at == clock.now + 3600
    assert coordinator.state is SessionState.ACTIVE
    assert coordinator.remaining_session_time == 3600


@pytest.mark.asyncio
async def test_activity_resets_warning(coordinator, recorder, store, clock):
    recorder.queue(login_response())
    await coordinator.login("a@example.com", "pw")
    clock.advance(3600 - 90)
    coordinator.monitor.check()
    assert coordinator.state is SessionState.WARNING

    coordinator.record_activity("pointerdown")
    assert coordinator.state is SessionState.ACTIVE
    assert store.get().session_expires_at == clock.now + 3600


@pytest.mark.asyncio
async def test_expiry_ends_session_once_and_revokes_in_background(coordinator, recorder, store, clock):
    recorder.queue(login_response("expiring"))
    await coordinator.login("a@example.com", "pw")
    clock.advance(3600)
    coordinator.monitor.check()
    coordinator.monitor.check()

    assert store.get() is None
    assert coordinator.state is SessionState.EXPIRED
    assert coordinator.monitor.running is False
    await asyncio.gather(*list(coordinator._revoke_tasks))

    revokes = [r for r in recorder.requests if r.url.path == "/api/v1/auth/logout"]
    assert len(revokes) == 1
    assert revokes[0].headers["authorization"] == "Bearer expiring"


@pytest.mark.asyncio
async def test_background_revoke_failure_is_swallowed(coordinator, recorder, store, clock):
    recorder.queue(login_response())
    await coordinator.login("a@example.com", "pw")
    recorder.default = httpx.Response(500)
    clock.advance(3600)
    coordinator.monitor.check()
    await asyncio.gather(*list(coordinator._revoke_tasks))
    assert store.get() is None


@pytest.mark.asyncio
async def test_login_again_after_expiry(coordinator, recorder, clock):
    recorder.queue(login_response("one"))
    await coordinator.login("a@example.com", "pw")
    clock.advance(3600)
    coordinator.monitor.check()
    await asyncio.gather(*list(coordinator._revoke_tasks))

    recorder.queue(login_response("two"))
    credential = await coordinator.login("a@example.com", "pw")
    assert credential.session_expires_at == clock.now + 3600
    assert coordinator.state is SessionState.ACTIVE


@pytest.mark.asyncio
async def test_restore_live_session(coordinator, store, clock):
    store.set(Credential(access_token="persisted", issued_at=clock.now, session_expires_at=clock.now + 600))
    credential = await coordinator.restore()
    assert credential.access_token == "persisted"
    assert coordinator.monitor.running
    assert coordinator.state is SessionState.ACTIVE


@pytest.mark.asyncio
async def test_restore_expired_session_clears_it(coordinator, store, clock):
    store.set(Credential(access_token="stale", issued_at=clock.now - 7200, session_expires_at=clock.now - 1))
    assert await coordinator.restore() is None
    assert store.get() is None
    assert coordinator.monitor.running is False


@pytest.mark.asyncio
async def test_restore_without_session(coordinator):
    assert await coordinator.restore() is None
    assert coordinator.is_authenticated is False


@pytest.mark.asyncio
async def test_stale_rejection_after_relogin_keeps_new_session(coordinator, recorder, store):
    recorder.queue(login_response("one"))
    await coordinator.login("a@example.com", "pw")

    release = asyncio.Event()

    async def rejected_later(request):
        await release.wait()
        return httpx.Response(401)

    recorder.queue(rejected_later, httpx.Response(204), login_response("two"))
    in_flight = asyncio.create_task(coordinator.client.entities.list_entities())
    while recorder.count < 2:
        await asyncio.sleep(0)

    await coordinator.logout()
    await coordinator.login("a@example.com", "pw")
    release.set()
    with pytest.raises(ApiError) as exc:
        await in_flight

    assert exc.value.kind is ErrorKind.AUTH
    assert recorder.requests[1].headers["authorization"] == "Bearer one"
    assert store.get().access_token == "two"
    assert coordinator.monitor.running
    assert coordinator.state is SessionState.ACTIVE
