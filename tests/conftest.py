"""
Shared pytest fixtures: a controllable clock, isolated config and app
instances, and helpers that walk the OAuth flow over HTTP.
"""

import base64
import hashlib
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from auth import AuthManager
from config import Config
from main import create_app
from storage import ClientStore, GrantStore

REDIRECT_URI = "https://cb.example/cb"

CONFIG_ENV_VARS = [
    "HOST", "PORT", "ENVIRONMENT", "BASE_URL", "SECRET_KEY", "ALLOWED_ORIGINS",
    "OAUTH_CODE_EXPIRY", "OAUTH_TOKEN_EXPIRY", "CLEANUP_INTERVAL", "SWEEP_BATCH_SIZE",
    "PKCE_REQUIRED", "MCP_SERVER_NAME", "MCP_SERVER_VERSION", "MCP_PROTOCOL_VERSION",
    "LOG_LEVEL", "LOG_FORMAT",
]


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def s256(verifier: str) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")


def query_params(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


@pytest.fixture
def clean_env(monkeypatch):
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def config(clean_env):
    clean_env.setenv("ENVIRONMENT", "development")
    clean_env.setenv("SECRET_KEY", "test-secret-key")
    return Config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client_store(clock):
    return ClientStore(clock=clock)


@pytest.fixture
def grant_store(clock):
    return GrantStore(clock=clock)


@pytest.fixture
def auth_manager(config, client_store, grant_store):
    return AuthManager(config, client_store, grant_store)


@pytest.fixture
def app(config, clock):
    return create_app(config, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app, follow_redirects=False) as test_client:
        yield test_client


@pytest.fixture
def register(client):
    """Register a client over HTTP and return the registration body"""

    def _register(redirect_uris=None):
        response = client.post("/oauth/register", json={"redirect_uris": redirect_uris or [REDIRECT_URI]})
        assert response.status_code == 200
        return response.json()

    return _register


@pytest.fixture
def authorize(client):
    """Run the authorization endpoint and return the redirect's query params"""

    def _authorize(client_id, **params):
        params.setdefault("redirect_uri", REDIRECT_URI)
        response = client.get("/oauth/authorize", params={"client_id": client_id, **params})
        assert response.status_code == 302
        return query_params(response.headers["location"])

    return _authorize


@pytest.fixture
def access_token(client, register, authorize):
    """A fresh access token obtained through the full HTTP flow"""
    registration = register()
    code = authorize(registration["client_id"], state="xyz")["code"]
    response = client.post("/oauth/token", json={
        "grant_type": "authorization_code",
        "code": code,
        "client_id": registration["client_id"],
        "client_secret": registration["client_secret"],
    })
    assert response.status_code == 200
    return response.json()["access_token"]


@pytest.fixture
def auth_headers(access_token):
    return {"Authorization": f"Bearer {access_token}"}
