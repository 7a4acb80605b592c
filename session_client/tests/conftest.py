"""
Pytest configuration for session_client. Memory storage, a controllable clock and an
httpx MockTransport that records every request, so no test touches the network.
"""
import os

import httpx
import pytest

# Keep developer env from leaking into defaults
for _var in ("SESSION_CLIENT_API_KEY", "SESSION_CLIENT_STORAGE_URL"):
    os.environ.pop(_var, None)

from session_client.retry_policy import RetryPolicy  # noqa: E402
from session_client.token_store import Credential, TokenStore  # noqa: E402

BASE_URL = "http://api.test/api/v1"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Recorder:
    """MockTransport handler that replays queued responses and records requests."""

    def __init__(self, *responses) -> None:
        self.requests: list[httpx.Request] = []
        self._responses = list(responses)
        self.default = httpx.Response(200, json={"ok": True})

    def queue(self, *responses) -> None:
        self._responses.extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._responses:
            item = self._responses.pop(0)
        else:
            item = self.default
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return item

    @property
    def count(self) -> int:
        return len(self.requests)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def store(clock):
    return TokenStore(session_ttl=3600, clock=clock)


@pytest.fixture
def credential(clock):
    return Credential(access_token="at-1", issued_at=clock.now, session_expires_at=clock.now + 3600)


@pytest.fixture
def no_wait_policy():
    """Retry policy without delays so retry tests run instantly."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=30.0, jitter_ratio=0.0)
