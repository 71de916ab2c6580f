"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

import httpx
import pytest

from sitekit_auth.config import Config, Environment, LogLevel
from sitekit_auth.context import Permissions, Principal, RequestContext
from sitekit_auth.logging_config import reset_logging
from sitekit_auth.security import NonceManager
from sitekit_auth.storage import InMemoryKeyValueStore

SITE_URL = "https://example.com"
PROXY_URL = "https://sitekit.withgoogle.com"

ContextFactory = Callable[..., RequestContext]


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    reset_logging()


@pytest.fixture
def default_config() -> Config:
    """Create a default configuration for testing."""
    return Config()


@pytest.fixture
def proxy_config() -> Config:
    """Create a proxy mode configuration for testing."""
    return Config(
        app_name="Test Site",
        log_level=LogLevel.DEBUG,
        environment=Environment.DEV,
        site_name="Example",
        site_url=SITE_URL,
        secret_key="test-secret-key",
        use_proxy=True,
        proxy_url=PROXY_URL,
    )


@pytest.fixture
def direct_config() -> Config:
    """Create a direct OAuth configuration for testing."""
    return Config(
        app_name="Test Site",
        site_url=SITE_URL,
        secret_key="test-secret-key",
        use_proxy=False,
        oauth_client_id="direct-client-id",
        oauth_client_secret="direct-client-secret",
        oauth_authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
        oauth_token_url="https://oauth2.googleapis.com/token",
        oauth_revoke_url="https://oauth2.googleapis.com/revoke",
    )


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def nonces() -> NonceManager:
    return NonceManager("test-secret-key", lifetime=86400)


@pytest.fixture
def admin() -> Principal:
    """A logged-in administrator."""
    return Principal(user_id=1, capabilities=Permissions.ADMIN, email="admin@example.com")


@pytest.fixture
def subscriber() -> Principal:
    """A logged-in user without Site Kit capabilities."""
    return Principal(user_id=2)


@pytest.fixture
def http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=5.0)


@pytest.fixture
def make_context(
    proxy_config: Config,
    store: InMemoryKeyValueStore,
    nonces: NonceManager,
    http_client: httpx.AsyncClient,
    admin: Principal,
) -> ContextFactory:
    """Factory for request contexts sharing one store and nonce manager."""

    def factory(
        query: dict[str, Any] | None = None,
        *,
        config: Config | None = None,
        principal: Principal | None = None,
        is_admin: bool = True,
        method: str = "GET",
    ) -> RequestContext:
        return RequestContext(
            config=config or proxy_config,
            store=store,
            nonces=nonces,
            http_client=http_client,
            principal=principal or admin,
            query={k: str(v) for k, v in (query or {}).items()},
            method=method,
            is_admin=is_admin,
            session_token="session-1",
        )

    return factory
