"""Pytest configuration and shared fixtures."""

import typing
from urllib.parse import quote, unquote

import httpx
import pytest

from tensors_gateway.config import Settings
from tensors_gateway.main import create_app

START_TIME = 1_700_000_000.0
API_KEY = "test-api-key"
SESSION_SECRET = "test-session-secret"
CLIENT_SECRET = "test-github-secret"
GITHUB_ACCESS_TOKEN = "gho_test_access_token"
GATEWAY_URL = "https://gw.saiden.dev"
UPSTREAM_HOST = "tensors-api.saiden.dev"


class FakeClock:
    """Stands in for time.time so expiry can be tested without sleeping."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeNetwork:
    """
    httpx.MockTransport handler standing in for GitHub and the Tensors API.
    Every request is recorded; responses are built fresh per call.
    """

    def __init__(self):
        self.requests: typing.List[httpx.Request] = []
        self.token_response = lambda request: httpx.Response(
            200, json={"access_token": GITHUB_ACCESS_TOKEN, "token_type": "bearer", "scope": "read:user"}
        )
        self.user_response = lambda request: httpx.Response(200, json={"login": "alice", "id": 1})
        self.upstream_response = lambda request: httpx.Response(200, json={"ok": True})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "github.com":
            return self.token_response(request)
        if request.url.host == "api.github.com":
            return self.user_response(request)
        return self.upstream_response(request)

    def to_host(self, host: str) -> typing.List[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    @property
    def upstream_requests(self) -> typing.List[httpx.Request]:
        return self.to_host(UPSTREAM_HOST)


def make_settings(**overrides) -> Settings:
    values = {
        "TENSORS_API_KEY": API_KEY,
        "SESSION_SECRET": SESSION_SECRET,
        "GITHUB_CLIENT_ID": "test-client-id",
        "GITHUB_CLIENT_SECRET": CLIENT_SECRET,
        "GITHUB_ALLOWED_USERS": "",
        "LOG_LEVEL": "WARNING",
    }
    values.update(overrides)
    return Settings(**values)


def session_cookie_header(token: str, name: str = "tensors_session") -> typing.Dict[str, str]:
    return {"Cookie": f"{name}={quote(token, safe='')}"}


def cookie_value(set_cookie_header: str) -> str:
    """Value of the first cookie in a Set-Cookie header, URL-decoded."""
    first = set_cookie_header.split(";", 1)[0]
    return unquote(first.split("=", 1)[1].strip('"'))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def app(settings, network, clock):
    return create_app(settings, transport=httpx.MockTransport(network), clock=clock)


@pytest.fixture
def gateway(app):
    return app.state.gateway


@pytest.fixture
async def client(app):
    """Async HTTP client talking to the gateway in-process."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url=GATEWAY_URL) as ac:
        yield ac
    await app.state.gateway.aclose()
