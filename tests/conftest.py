"""
Pytest configuration and fixtures for the auth server tests.

The FastAPI app is exercised through httpx.ASGITransport without running a
server. The provider's token endpoint is replaced by an httpx.MockTransport
so each test decides what the "identity provider" answers.
"""

from collections.abc import AsyncGenerator
from dataclasses import replace
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio

from config import AuthConfig
from kinde_auth.storage import MemoryBackend, TransientStore

ISSUER = "https://example.kinde.com"
CALLBACK_URL = "http://localhost:8000/api/auth/kinde_callback"


class FakeClock:
    """Monotonic clock the tests can move forward."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ConfigHolder:
    """Config provider whose value a test can swap."""

    def __init__(self, config: AuthConfig):
        self.config = config

    def __call__(self) -> AuthConfig:
        return self.config

    def update(self, **changes) -> None:
        self.config = replace(self.config, **changes)


class TokenEndpoint:
    """Stand-in for the provider token endpoint.

    Records every request form and answers with `status` and `body`, or
    times out when `hang` is set.
    """

    def __init__(self):
        self.status = 200
        self.body = {
            "access_token": "access-abc",
            "refresh_token": "refresh-def",
            "id_token": None,
            "expires_in": 86399,
            "token_type": "bearer",
        }
        self.raw_body = None
        self.hang = False
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append({"url": str(request.url), "form": form})
        if self.hang:
            raise httpx.ReadTimeout("timed out", request=request)
        if self.raw_body is not None:
            return httpx.Response(self.status, text=self.raw_body)
        return httpx.Response(self.status, json=self.body)

    @property
    def calls(self) -> int:
        return len(self.requests)


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(
        issuer_url=ISSUER,
        client_id="client-123",
        client_secret="secret-xyz",
        redirect_url=CALLBACK_URL,
        post_login_redirect_url="/dashboard",
        post_logout_redirect_url="http://localhost:8000/",
    )


@pytest.fixture
def config_holder(auth_config: AuthConfig) -> ConfigHolder:
    return ConfigHolder(auth_config)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> MemoryBackend:
    return MemoryBackend(clock=clock)


@pytest.fixture
def store(backend: MemoryBackend) -> TransientStore:
    return TransientStore(backend)


@pytest.fixture
def token_endpoint() -> TokenEndpoint:
    return TokenEndpoint()


@pytest_asyncio.fixture
async def provider_client(token_endpoint: TokenEndpoint) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint)) as client:
        yield client


@pytest_asyncio.fixture
async def client(
    store: TransientStore,
    config_holder: ConfigHolder,
    provider_client: httpx.AsyncClient,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async test client for an app wired to the in-memory store."""
    from main import create_app

    app = create_app(store=store, config_provider=config_holder, http_client=provider_client)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://localhost:8000") as client:
        yield client


def query_of(location: str) -> dict[str, str]:
    """Flatten the query string of a redirect Location header."""
    return {k: v[0] for k, v in parse_qs(httpx.URL(location).query.decode()).items()}
