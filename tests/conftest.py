"""
Shared test configuration and fixtures for the SPiD client tests.

Provides settings, a scripted in-memory transport, a controllable clock, a
recording metrics client and a fake redis connection, so that the client can
be driven end to end without any network access.
"""

import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import fakeredis.aioredis
import pytest
import pytest_asyncio

from social.graze.spid.app.config import Settings
from social.graze.spid.app.metrics import MetricsClient
from social.graze.spid.model.credential import Credential
from social.graze.spid.orchestrator import RequestOrchestrator
from social.graze.spid.store import MemoryCredentialStore
from social.graze.spid.token import TokenEndpointClient
from social.graze.spid.transport import TransportRequest, TransportResponse

SERVER_URL = "https://spid.test"
TOKEN_URL = f"{SERVER_URL}/oauth/token"
API_PREFIX = f"{SERVER_URL}/api/2"

Handler = Callable[
    [TransportRequest],
    Union[TransportResponse, Awaitable[TransportResponse]],
]


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class MockMetricsClient(MetricsClient):
    """Metrics client that records everything for assertions."""

    def __init__(self):
        self.gauges: Dict[str, Any] = {}
        self.increments: Dict[str, int] = {}
        self.timers: Dict[str, List[float]] = {}
        self.closed = False

    def increment(self, name, value=1, tag_dict=None):
        self.increments[name] = self.increments.get(name, 0) + value

    def gauge(self, name, value, tag_dict=None):
        self.gauges[name] = value

    def timer(self, name, value, tag_dict=None):
        self.timers.setdefault(name, []).append(value)

    async def close(self):
        self.closed = True


class FakeTransport:
    """
    Transport that routes token endpoint requests and API requests to
    separate handlers and records every request it sees.

    Handlers may be plain functions or coroutines, may return a
    TransportResponse, and may raise to simulate a network failure.
    """

    def __init__(
        self,
        token_handler: Optional[Handler] = None,
        api_handler: Optional[Handler] = None,
    ):
        self.token_handler = token_handler
        self.api_handler = api_handler
        self.requests: List[TransportRequest] = []

    @property
    def token_requests(self) -> List[TransportRequest]:
        return [r for r in self.requests if r.url == TOKEN_URL]

    @property
    def api_requests(self) -> List[TransportRequest]:
        return [r for r in self.requests if r.url != TOKEN_URL]

    async def send(self, request: TransportRequest) -> TransportResponse:
        self.requests.append(request)
        handler = self.token_handler if request.url == TOKEN_URL else self.api_handler
        if handler is None:
            raise AssertionError(f"unexpected request to {request.url}")
        result = handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result


def json_response(status: int, body: Any = None) -> TransportResponse:
    return TransportResponse(status=status, body=body)


def token_body(
    access_token: str,
    refresh_token: Optional[str] = None,
    expires_in: Optional[int] = 3600,
    user_id: Optional[Any] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"access_token": access_token}
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    if expires_in is not None:
        body["expires_in"] = expires_in
    if user_id is not None:
        body["user_id"] = user_id
    return body


def bearer(request: TransportRequest) -> Optional[str]:
    header = request.headers.get("Authorization")
    if header is None:
        return None
    return header.removeprefix("Bearer ")


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        client_id="test-client",
        client_secret="test-secret",
        server_url=SERVER_URL,
        app_url_scheme="testapp",
        redirect_host="spid",
        credential_stores=["memory"],
    )


@pytest.fixture
def metrics():
    return MockMetricsClient()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def token_client(settings, transport, metrics, clock):
    return TokenEndpointClient(settings, transport, metrics, clock=clock)


@pytest.fixture
def orchestrator(settings, transport, token_client, store, metrics, clock):
    return RequestOrchestrator(
        settings, transport, token_client, store, metrics, clock=clock
    )


@pytest.fixture
def user_credential(clock):
    return Credential(
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=clock() + timedelta(hours=1),
        subject_id="1001",
    )


@pytest_asyncio.fixture
async def fake_redis():
    """Provide fake Redis client for unit tests."""
    redis_client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield redis_client
    await redis_client.flushall()
    await redis_client.aclose()
