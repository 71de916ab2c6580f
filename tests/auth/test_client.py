"""Tests for the OAuth client."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import respx

from sitekit_auth.auth.client import OAuthClient
from sitekit_auth.auth.credentials import CredentialStore, TokenSet
from sitekit_auth.auth.errors import ErrorRecord
from sitekit_auth.auth.proxy import ACTION_SETUP, ProxyClient
from sitekit_auth.config import Config
from sitekit_auth.context import RequestContext
from sitekit_auth.exceptions import OAuthError

PROXY_URL = "https://sitekit.withgoogle.com"
PROXY_TOKEN_URL = f"{PROXY_URL}/o/oauth2/token/"
PROXY_REVOKE_URL = f"{PROXY_URL}/o/oauth2/revoke/"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

ContextFactory = Callable[..., RequestContext]


def build_client(ctx: RequestContext) -> tuple[OAuthClient, CredentialStore, ErrorRecord]:
    credentials = CredentialStore(ctx.options, ctx.user_options)
    errors = ErrorRecord(ctx.user_options)
    proxy = ProxyClient(ctx.config.proxy_url, ctx.http_client)
    return OAuthClient(ctx, credentials, proxy, errors), credentials, errors


def query_of(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


async def store_site_credentials(credentials: CredentialStore) -> None:
    await credentials.set(
        {"oauth2_client_id": "site-id", "oauth2_client_secret": "site-secret"}
    )


def create_token(**overrides: object) -> TokenSet:
    values: dict[str, object] = {
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_at": datetime.now(UTC) + timedelta(hours=1),
        "scopes": frozenset({"openid"}),
    }
    values.update(overrides)
    return TokenSet(**values)  # type: ignore[arg-type]


class TestEndpoints:
    """Tests for endpoint selection."""

    def test_proxy_mode(self, make_context: ContextFactory) -> None:
        client, _, _ = build_client(make_context())

        assert client.using_proxy() is True
        assert client.token_endpoint == PROXY_TOKEN_URL
        assert client.authorization_endpoint == f"{PROXY_URL}/o/oauth2/auth/"
        assert client.revoke_endpoint == PROXY_REVOKE_URL
        assert client.redirect_uri == "https://example.com/admin?oauth2callback=1"

    def test_direct_mode(self, make_context: ContextFactory, direct_config: Config) -> None:
        client, _, _ = build_client(make_context(config=direct_config))

        assert client.using_proxy() is False
        assert client.token_endpoint == "https://oauth2.googleapis.com/token"
        assert client.authorization_endpoint == "https://accounts.google.com/o/oauth2/v2/auth"


class TestClientCredentials:
    """Tests for get_client_credentials."""

    @pytest.mark.asyncio
    async def test_none_in_proxy_mode(self, make_context: ContextFactory) -> None:
        client, _, _ = build_client(make_context())
        assert await client.get_client_credentials() is None

    @pytest.mark.asyncio
    async def test_direct_mode_uses_config(
        self, make_context: ContextFactory, direct_config: Config
    ) -> None:
        client, _, _ = build_client(make_context(config=direct_config))

        assert await client.get_client_credentials() == (
            "direct-client-id",
            "direct-client-secret",
        )

    @pytest.mark.asyncio
    async def test_stored_credentials_win(
        self, make_context: ContextFactory, direct_config: Config
    ) -> None:
        client, credentials, _ = build_client(make_context(config=direct_config))
        await store_site_credentials(credentials)

        assert await client.get_client_credentials() == ("site-id", "site-secret")


class TestAuthenticationUrl:
    """Tests for get_authentication_url."""

    @pytest.mark.asyncio
    async def test_unregistered_site_goes_to_proxy_setup(
        self, make_context: ContextFactory
    ) -> None:
        client, _, _ = build_client(make_context())

        url = await client.get_authentication_url()

        assert url.startswith(f"{PROXY_URL}/site-management/setup/?")
        query = query_of(url)
        assert query["name"] == "Example"
        assert query["url"] == "https://example.com/"
        assert "site_id" not in query

    @pytest.mark.asyncio
    async def test_builds_authorization_url(
        self, make_context: ContextFactory, proxy_config: Config
    ) -> None:
        ctx = make_context()
        client, credentials, _ = build_client(ctx)
        await store_site_credentials(credentials)

        url = await client.get_authentication_url("https://example.com/admin?page=x")

        assert url.startswith(f"{PROXY_URL}/o/oauth2/auth/?")
        query = query_of(url)
        assert query["client_id"] == "site-id"
        assert query["response_type"] == "code"
        assert query["access_type"] == "offline"
        assert query["prompt"] == "consent"
        assert query["redirect_uri"] == "https://example.com/admin?oauth2callback=1"
        assert query["scope"] == " ".join(proxy_config.oauth_required_scopes)

        stored = await ctx.user_options.get(OAuthClient.OPTION_REDIRECT_URL)
        assert query_of(stored) == {
            "page": "x",
            "notification": "authentication_success",
        }

    @pytest.mark.asyncio
    async def test_malformed_redirect_falls_back_to_splash(
        self, make_context: ContextFactory
    ) -> None:
        ctx = make_context()
        client, credentials, _ = build_client(ctx)
        await store_site_credentials(credentials)

        await client.get_authentication_url("javascript:alert(1)")

        stored = await ctx.user_options.get(OAuthClient.OPTION_REDIRECT_URL)
        assert stored.startswith("https://example.com/admin?page=googlesitekit-splash")

    @pytest.mark.asyncio
    async def test_scopes_deduplicated(self, make_context: ContextFactory) -> None:
        config = Config(
            site_url="https://example.com",
            oauth_required_scopes=["openid", "email", "openid"],
        )
        client, _, _ = build_client(make_context(config=config))

        assert client.get_required_scopes() == ["openid", "email"]


class TestAuthorizeUser:
    """Tests for authorize_user."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_success(self, make_context: ContextFactory) -> None:
        ctx = make_context({"oauth2callback": 1, "code": "auth-code"})
        client, credentials, errors = build_client(ctx)
        await store_site_credentials(credentials)
        await errors.set("invalid_grant")
        await ctx.user_options.set(OAuthClient.OPTION_PROXY_ACCESS_CODE, "access-code")
        await ctx.user_options.set(
            OAuthClient.OPTION_REDIRECT_URL, "https://example.com/admin?page=x"
        )
        token_route = respx.post(PROXY_TOKEN_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "access_token": "access-1",
                    "refresh_token": "refresh-1",
                    "expires_in": 3600,
                    "scope": "openid email",
                },
            )
        )
        respx.get(USERINFO_URL).mock(
            return_value=httpx.Response(
                200, json={"email": "admin@example.com", "picture": "https://p/1.png"}
            )
        )

        redirect_url = await client.authorize_user()

        assert redirect_url == "https://example.com/admin?page=x"
        body = parse_qs(token_route.calls[0].request.content.decode())
        assert body["grant_type"] == ["authorization_code"]
        assert body["code"] == ["auth-code"]
        assert body["client_id"] == ["site-id"]

        current = await credentials.get()
        assert current.access_token == "access-1"
        assert current.granted_scopes == frozenset({"openid", "email"})
        assert await errors.peek() is None
        assert await ctx.user_options.get(OAuthClient.OPTION_PROXY_ACCESS_CODE) is None
        assert await ctx.user_options.get(OAuthClient.OPTION_REDIRECT_URL) is None
        profile = await ctx.user_options.get(OAuthClient.OPTION_PROFILE)
        assert profile["email"] == "admin@example.com"

    @respx.mock
    @pytest.mark.asyncio
    async def test_default_redirect(self, make_context: ContextFactory) -> None:
        ctx = make_context({"code": "auth-code"})
        client, credentials, _ = build_client(ctx)
        await store_site_credentials(credentials)
        respx.post(PROXY_TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "access-1"})
        )
        respx.get(USERINFO_URL).mock(return_value=httpx.Response(500))

        redirect_url = await client.authorize_user()

        assert query_of(redirect_url) == {
            "page": "googlesitekit-splash",
            "notification": "authentication_success",
        }

    @pytest.mark.asyncio
    async def test_missing_code(self, make_context: ContextFactory) -> None:
        client, _, _ = build_client(make_context({"oauth2callback": 1}))

        with pytest.raises(OAuthError) as exc_info:
            await client.authorize_user()

        assert exc_info.value.code == "invalid_code"

    @pytest.mark.asyncio
    async def test_provider_error_param(self, make_context: ContextFactory) -> None:
        client, _, _ = build_client(make_context({"error": "access_denied"}))

        with pytest.raises(OAuthError) as exc_info:
            await client.authorize_user()

        assert exc_info.value.code == "access_denied"

    @pytest.mark.asyncio
    async def test_no_client_credentials(self, make_context: ContextFactory) -> None:
        client, _, _ = build_client(make_context({"code": "auth-code"}))

        with pytest.raises(OAuthError) as exc_info:
            await client.authorize_user()

        assert exc_info.value.code == "oauth_credentials_not_exist"

    @respx.mock
    @pytest.mark.asyncio
    async def test_invalid_grant(self, make_context: ContextFactory) -> None:
        ctx = make_context({"code": "auth-code"})
        client, credentials, _ = build_client(ctx)
        await store_site_credentials(credentials)
        respx.post(PROXY_TOKEN_URL).mock(
            return_value=httpx.Response(400, json={"error": "invalid_grant"})
        )

        with pytest.raises(OAuthError) as exc_info:
            await client.authorize_user()

        assert exc_info.value.code == "invalid_grant"
        assert (await credentials.get()).token is None

    @respx.mock
    @pytest.mark.asyncio
    async def test_response_without_token(self, make_context: ContextFactory) -> None:
        client, credentials, _ = build_client(make_context({"code": "auth-code"}))
        await store_site_credentials(credentials)
        respx.post(PROXY_TOKEN_URL).mock(return_value=httpx.Response(200, json={}))

        with pytest.raises(OAuthError) as exc_info:
            await client.authorize_user()

        assert exc_info.value.code == "access_token_not_received"

    @respx.mock
    @pytest.mark.asyncio
    async def test_connection_failure(self, make_context: ContextFactory) -> None:
        client, credentials, _ = build_client(make_context({"code": "auth-code"}))
        await store_site_credentials(credentials)
        respx.post(PROXY_TOKEN_URL).mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(OAuthError) as exc_info:
            await client.authorize_user()

        assert exc_info.value.code == "cannot_fetch_tokens"

    @pytest.mark.parametrize(
        "token_body",
        [
            {"access_token": "access-1", "expires_in": "soon"},
            {"access_token": "access-1", "expires_in": [3600]},
            {"access_token": "access-1", "scope": 42},
            {"access_token": 42},
        ],
    )
    @pytest.mark.asyncio
    async def test_malformed_token_response(
        self, make_context: ContextFactory, token_body: dict[str, object]
    ) -> None:
        client, credentials, _ = build_client(make_context({"code": "auth-code"}))
        await store_site_credentials(credentials)

        with respx.mock:
            respx.post(PROXY_TOKEN_URL).mock(
                return_value=httpx.Response(200, json=token_body)
            )

            with pytest.raises(OAuthError) as exc_info:
                await client.authorize_user()

        assert exc_info.value.code == "access_token_not_received"
        assert (await credentials.get()).token is None

    @respx.mock
    @pytest.mark.asyncio
    async def test_numeric_string_expiry_accepted(
        self, make_context: ContextFactory
    ) -> None:
        client, credentials, _ = build_client(make_context({"code": "auth-code"}))
        await store_site_credentials(credentials)
        respx.post(PROXY_TOKEN_URL).mock(
            return_value=httpx.Response(
                200, json={"access_token": "access-1", "expires_in": "7200"}
            )
        )
        respx.get(USERINFO_URL).mock(return_value=httpx.Response(500))

        await client.authorize_user()

        token = (await credentials.get()).token
        assert token is not None
        assert token.expires_at > datetime.now(UTC) + timedelta(hours=1)

    @pytest.mark.parametrize("userinfo_body", [b"[]", b"null", b'"admin@example.com"'])
    @pytest.mark.asyncio
    async def test_non_object_profile_ignored(
        self, make_context: ContextFactory, userinfo_body: bytes
    ) -> None:
        ctx = make_context({"code": "auth-code"})
        client, credentials, _ = build_client(ctx)
        await store_site_credentials(credentials)
        await ctx.user_options.set(
            OAuthClient.OPTION_REDIRECT_URL, "https://example.com/admin?page=x"
        )

        with respx.mock:
            respx.post(PROXY_TOKEN_URL).mock(
                return_value=httpx.Response(200, json={"access_token": "access-1"})
            )
            respx.get(USERINFO_URL).mock(
                return_value=httpx.Response(
                    200,
                    content=userinfo_body,
                    headers={"Content-Type": "application/json"},
                )
            )

            redirect_url = await client.authorize_user()

        assert redirect_url == "https://example.com/admin?page=x"
        assert (await credentials.get()).access_token == "access-1"
        assert await ctx.user_options.get(OAuthClient.OPTION_PROFILE) is None
        assert await ctx.user_options.get(OAuthClient.OPTION_REDIRECT_URL) is None


class TestGrantedScopes:
    """Tests for get_granted_scopes."""

    @pytest.mark.asyncio
    async def test_empty_without_token(self, make_context: ContextFactory) -> None:
        client, _, _ = build_client(make_context())

        assert await client.get_granted_scopes() == []

    @pytest.mark.asyncio
    async def test_sorted_token_scopes(self, make_context: ContextFactory) -> None:
        client, credentials, _ = build_client(make_context())
        await credentials.set_token(create_token(scopes=frozenset({"openid", "email"})))

        assert await client.get_granted_scopes() == ["email", "openid"]


class TestRefreshToken:
    """Tests for refresh_token and get_valid_access_token."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_refresh_preserves_refresh_token(
        self, make_context: ContextFactory
    ) -> None:
        client, credentials, _ = build_client(make_context())
        await store_site_credentials(credentials)
        await credentials.set_token(create_token(scopes=frozenset({"openid", "email"})))
        respx.post(PROXY_TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "access-2"})
        )

        token = await client.refresh_token()

        assert token is not None
        current = await credentials.get()
        assert current.access_token == "access-2"
        assert current.refresh_token == "refresh-1"
        assert current.granted_scopes == frozenset({"openid", "email"})

    @pytest.mark.asyncio
    async def test_no_refresh_token(self, make_context: ContextFactory) -> None:
        client, credentials, errors = build_client(make_context())
        await store_site_credentials(credentials)
        await credentials.set_token(create_token(refresh_token=None))

        assert await client.refresh_token() is None
        assert await errors.peek() == "refresh_token_not_exist"

    @respx.mock
    @pytest.mark.asyncio
    async def test_refresh_failure_recorded(self, make_context: ContextFactory) -> None:
        client, credentials, errors = build_client(make_context())
        await store_site_credentials(credentials)
        await credentials.set_token(create_token())
        respx.post(PROXY_TOKEN_URL).mock(
            return_value=httpx.Response(400, json={"error": "invalid_grant"})
        )

        assert await client.refresh_token() is None
        assert await errors.peek() == "invalid_grant"
        assert (await credentials.get()).access_token == "access-1"

    @respx.mock
    @pytest.mark.asyncio
    async def test_valid_access_token_refreshes_expiring(
        self, make_context: ContextFactory
    ) -> None:
        client, credentials, _ = build_client(make_context())
        await store_site_credentials(credentials)
        await credentials.set_token(
            create_token(expires_at=datetime.now(UTC) + timedelta(minutes=1))
        )
        respx.post(PROXY_TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "access-2"})
        )

        assert await client.get_valid_access_token() == "access-2"

    @pytest.mark.asyncio
    async def test_valid_access_token_without_refresh(
        self, make_context: ContextFactory
    ) -> None:
        client, credentials, _ = build_client(make_context())
        await credentials.set_token(create_token())

        assert await client.get_valid_access_token() == "access-1"


class TestRevokeToken:
    """Tests for revoke_token."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_revokes_refresh_token(self, make_context: ContextFactory) -> None:
        client, credentials, _ = build_client(make_context())
        await credentials.set_token(create_token())
        route = respx.post(PROXY_REVOKE_URL).mock(return_value=httpx.Response(200))

        await client.revoke_token()

        assert parse_qs(route.calls[0].request.content.decode()) == {"token": ["refresh-1"]}
        assert (await credentials.get()).token is None

    @respx.mock
    @pytest.mark.asyncio
    async def test_remote_failure_still_deletes(self, make_context: ContextFactory) -> None:
        client, credentials, _ = build_client(make_context())
        await credentials.set_token(create_token())
        respx.post(PROXY_REVOKE_URL).mock(side_effect=httpx.ConnectError("refused"))

        await client.revoke_token()

        assert (await credentials.get()).token is None

    @pytest.mark.asyncio
    async def test_nothing_to_revoke(self, make_context: ContextFactory) -> None:
        client, credentials, _ = build_client(make_context())

        await client.revoke_token()

        assert (await credentials.get()).token is None


class TestProxyUrls:
    """Tests for proxy setup and permissions URLs."""

    @pytest.mark.asyncio
    async def test_setup_url_for_registered_site(self, make_context: ContextFactory) -> None:
        ctx = make_context()
        client, credentials, _ = build_client(ctx)
        await store_site_credentials(credentials)

        url = await client.get_proxy_setup_url(
            "access-code", "invalid_code", {"site_code": "pending"}
        )

        query = query_of(url)
        assert query["site_id"] == "site-id"
        assert query["code"] == "access-code"
        assert query["error_code"] == "invalid_code"
        assert query["site_code"] == "pending"
        assert "name" not in query
        assert ctx.verify_nonce(query["nonce"], ACTION_SETUP) is True

    @pytest.mark.asyncio
    async def test_setup_url_omits_empty_codes(self, make_context: ContextFactory) -> None:
        client, _, _ = build_client(make_context())

        query = query_of(await client.get_proxy_setup_url())

        assert "code" not in query
        assert "error_code" not in query
        assert query["return_uri"] == "https://example.com/admin?page=googlesitekit-splash"

    @pytest.mark.asyncio
    async def test_permissions_url(self, make_context: ContextFactory) -> None:
        client, credentials, _ = build_client(make_context())
        await store_site_credentials(credentials)
        await credentials.set_token(create_token())

        url = await client.get_proxy_permissions_url()

        assert url.startswith(f"{PROXY_URL}/site-management/permissions/?")
        assert query_of(url) == {"token": "access-1", "site_id": "site-id"}
