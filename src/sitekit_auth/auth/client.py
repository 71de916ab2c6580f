"""OAuth client for the identity provider.

Owns the token lifecycle: building the authorization URL, exchanging
the authorization code, refreshing and revoking tokens. In proxy mode
the provider endpoints are served by the registration proxy and the
client credentials are the ones the proxy issued to this site.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from sitekit_auth import __version__
from sitekit_auth.auth.credentials import TokenSet
from sitekit_auth.auth.proxy import (
    ACTION_SETUP,
    OAUTH2_AUTH_URI,
    OAUTH2_REVOKE_URI,
    OAUTH2_TOKEN_URI,
    PERMISSIONS_URI,
    SETUP_URI,
)
from sitekit_auth.exceptions import OAuthError
from sitekit_auth.logging_config import get_logger
from sitekit_auth.security import add_query_args, redact, sanitize_redirect_url

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sitekit_auth.auth.credentials import CredentialStore
    from sitekit_auth.auth.errors import ErrorRecord
    from sitekit_auth.auth.proxy import ProxyClient
    from sitekit_auth.context import RequestContext

logger = get_logger(__name__)

AUTHENTICATION_SUCCESS = "authentication_success"


def _provider_error(response: httpx.Response) -> str | None:
    """Extract the OAuth ``error`` code from an error response, if any."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return None


class OAuthClient:
    """OAuth 2.0 authorization code client for one request's user."""

    OPTION_REDIRECT_URL = "googlesitekit_redirect_url"
    OPTION_PROXY_ACCESS_CODE = "googlesitekit_proxy_access_code"
    OPTION_PROFILE = "googlesitekit_profile"

    def __init__(
        self,
        ctx: RequestContext,
        credentials: CredentialStore,
        proxy: ProxyClient,
        errors: ErrorRecord,
    ) -> None:
        """Initialize the OAuth client.

        Args:
            ctx: Current request context
            credentials: Credential store for this user
            proxy: Registration proxy client
            errors: Error record for this user
        """
        self._ctx = ctx
        self._config = ctx.config
        self._http_client = ctx.http_client
        self._credentials = credentials
        self._proxy = proxy
        self._errors = errors

    def using_proxy(self) -> bool:
        """Whether client credentials come from the registration proxy."""
        return self._config.use_proxy

    @property
    def authorization_endpoint(self) -> str:
        if self.using_proxy():
            return self._proxy.url(OAUTH2_AUTH_URI)
        return self._config.oauth_authorization_url

    @property
    def token_endpoint(self) -> str:
        if self.using_proxy():
            return self._proxy.url(OAUTH2_TOKEN_URI)
        return self._config.oauth_token_url

    @property
    def revoke_endpoint(self) -> str:
        if self.using_proxy():
            return self._proxy.url(OAUTH2_REVOKE_URI)
        return self._config.oauth_revoke_url

    @property
    def redirect_uri(self) -> str:
        """Callback target registered with the provider."""
        return self._ctx.admin_url(None, {"oauth2callback": 1})

    async def get_client_credentials(self) -> tuple[str, str] | None:
        """Return ``(client_id, client_secret)`` or None if none exist.

        Stored credentials win; in direct mode the configured ones are
        used otherwise.
        """
        credentials = await self._credentials.get()
        if credentials.client_id and credentials.client_secret:
            return credentials.client_id, credentials.client_secret

        if (
            not self.using_proxy()
            and self._config.oauth_client_id
            and self._config.oauth_client_secret
        ):
            return (
                self._config.oauth_client_id,
                self._config.oauth_client_secret.get_secret_value(),
            )
        return None

    def get_required_scopes(self) -> list[str]:
        """Scopes every user must grant, in configured order."""
        return list(dict.fromkeys(self._config.oauth_required_scopes))

    async def get_granted_scopes(self) -> list[str]:
        """Scopes the provider last reported for this user."""
        return sorted((await self._credentials.get()).granted_scopes)

    async def get_access_token(self) -> str | None:
        return (await self._credentials.get()).access_token

    async def get_authentication_url(self, redirect_url: str | None = None) -> str:
        """Build the provider authorization URL.

        Also remembers where to send the user after authorization.

        Args:
            redirect_url: Optional landing URL; dropped unless it is an
                absolute http(s) URL

        Returns:
            Authorization URL, or the proxy setup URL when the site has
            not been registered with the proxy yet

        Raises:
            OAuthError: If direct mode has no client credentials
        """
        target = sanitize_redirect_url(redirect_url) or self._ctx.admin_url("splash")
        await self._ctx.user_options.set(
            self.OPTION_REDIRECT_URL,
            add_query_args(target, {"notification": AUTHENTICATION_SUCCESS}),
        )

        client = await self.get_client_credentials()
        if client is None:
            if self.using_proxy():
                logger.info("Site not registered with the proxy yet, sending to setup")
                return await self.get_proxy_setup_url()
            raise OAuthError("oauth_credentials_not_exist")

        client_id, _ = client
        params = {
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
            "client_id": client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.get_required_scopes()),
        }

        logger.debug("Created authorization URL for client %s", client_id)
        return f"{self.authorization_endpoint}?{urlencode(params)}"

    async def _request_token(self, data: Mapping[str, str]) -> dict[str, Any]:
        """POST to the token endpoint once and return the JSON body.

        Raises:
            OAuthError: With the provider's error code where available
        """
        try:
            response = await self._http_client.post(
                self.token_endpoint,
                data=dict(data),
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            token_data = response.json()
        except httpx.HTTPStatusError as e:
            error_code = _provider_error(e.response) or "cannot_fetch_tokens"
            logger.error(
                "Token request failed: %s %s (%s)",
                e.response.status_code,
                e.response.reason_phrase,
                error_code,
            )
            raise OAuthError(
                error_code, f"Token request failed: {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Token request error: %s", e)
            raise OAuthError("cannot_fetch_tokens", f"Token request error: {e}") from e

        if not isinstance(token_data, dict):
            raise OAuthError("access_token_not_received")
        access_token = token_data.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise OAuthError("access_token_not_received")

        expires_in = token_data.get("expires_in")
        if expires_in is not None:
            try:
                token_data["expires_in"] = int(expires_in)
            except (TypeError, ValueError) as e:
                logger.error("Token response has invalid expires_in: %r", expires_in)
                raise OAuthError("access_token_not_received") from e

        scope = token_data.get("scope")
        if scope is not None and not isinstance(scope, (str, list)):
            logger.error("Token response has invalid scope: %r", scope)
            raise OAuthError("access_token_not_received")
        return token_data

    async def authorize_user(self) -> str:
        """Exchange the inbound authorization code for tokens.

        The code is used exactly once; on failure the user has to start
        the flow again.

        Returns:
            URL to send the user to after authorization

        Raises:
            OAuthError: If the code is missing or the exchange fails
        """
        code = self._ctx.input("code")
        if not code:
            raise OAuthError(self._ctx.input("error") or "invalid_code")

        client = await self.get_client_credentials()
        if client is None:
            raise OAuthError("oauth_credentials_not_exist")
        client_id, client_secret = client

        logger.debug("Exchanging authorization code (client: %s)", client_id)
        token_data = await self._request_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "client_id": client_id,
                "client_secret": client_secret,
            }
        )

        token = TokenSet.from_token_response(
            token_data, default_scopes=self.get_required_scopes()
        )
        await self._credentials.set_token(token)
        await self._errors.clear()
        await self._ctx.user_options.delete(self.OPTION_PROXY_ACCESS_CODE)

        logger.info(
            "Authorized user %s (scopes: %s)",
            self._ctx.principal.user_id,
            " ".join(sorted(token.scopes)),
        )

        await self.refresh_profile_data()

        redirect_url = await self._ctx.user_options.get(self.OPTION_REDIRECT_URL)
        await self._ctx.user_options.delete(self.OPTION_REDIRECT_URL)
        if redirect_url:
            return str(redirect_url)
        return self._ctx.admin_url("splash", {"notification": AUTHENTICATION_SUCCESS})

    async def refresh_token(self) -> TokenSet | None:
        """Use the refresh token to obtain a new access token.

        Failures are recorded in the user's error record.

        Returns:
            New TokenSet, or None if refreshing failed
        """
        credentials = await self._credentials.get()
        if not credentials.refresh_token:
            await self._errors.set("refresh_token_not_exist")
            return None

        client = await self.get_client_credentials()
        if client is None:
            await self._errors.set("oauth_credentials_not_exist")
            return None
        client_id, client_secret = client

        logger.debug(
            "Refreshing access token (refresh token: %s)",
            redact(credentials.refresh_token),
        )

        try:
            token_data = await self._request_token(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": credentials.refresh_token,
                    "client_id": client_id,
                    "client_secret": client_secret,
                }
            )
        except OAuthError as e:
            await self._errors.set(e.code)
            return None

        # Preserve refresh token if not returned
        token_data.setdefault("refresh_token", credentials.refresh_token)
        token = TokenSet.from_token_response(
            token_data, default_scopes=credentials.granted_scopes
        )
        await self._credentials.set_token(token)

        logger.info("Refreshed access token for user %s", self._ctx.principal.user_id)
        return token

    async def get_valid_access_token(self) -> str | None:
        """Return an access token, refreshing it first if it is about to expire."""
        credentials = await self._credentials.get()
        token = credentials.token
        if token is None:
            return None

        if token.needs_refresh and token.refresh_token:
            new_token = await self.refresh_token()
            if new_token is not None:
                return new_token.access_token
            if token.is_expired:
                return None

        return token.access_token

    async def revoke_token(self) -> None:
        """Revoke the user's token with the provider and forget it locally.

        Local tokens are deleted even when the provider call fails.
        """
        credentials = await self._credentials.get()
        token = credentials.refresh_token or credentials.access_token

        if token:
            try:
                response = await self._http_client.post(
                    self.revoke_endpoint,
                    data={"token": token},
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                logger.info("Revoked token for user %s", self._ctx.principal.user_id)
            except httpx.HTTPError as e:
                logger.warning("Token revocation failed, removing local tokens anyway: %s", e)

        await self._credentials.delete_tokens()

    async def refresh_profile_data(self) -> dict[str, Any] | None:
        """Fetch and store the user's email and photo.

        Returns:
            Stored profile, or None if it could not be fetched
        """
        userinfo_url = self._config.oauth_userinfo_url
        access_token = await self.get_access_token()
        if not userinfo_url or not access_token:
            return None

        try:
            response = await self._http_client.get(
                userinfo_url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
            response.raise_for_status()
            user_data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Profile fetch failed: %s", e)
            return None

        if not isinstance(user_data, dict):
            logger.warning(
                "Profile fetch returned %s, expected an object",
                type(user_data).__name__,
            )
            return None

        profile = {
            "email": user_data.get("email"),
            "photo": user_data.get("picture"),
            "timestamp": int(time.time()),
        }
        await self._ctx.user_options.set(self.OPTION_PROFILE, profile)
        return profile

    async def get_proxy_setup_url(
        self,
        access_code: str = "",
        error_code: str = "",
        extra_params: Mapping[str, str] | None = None,
    ) -> str:
        """Build the URL of the proxy's setup flow.

        Args:
            access_code: Access code issued by the proxy
            error_code: Error code of a failed attempt
            extra_params: Additional parameters, e.g. a pending ``site_code``

        Returns:
            Proxy setup URL
        """
        params: dict[str, Any] = {
            "version": __version__,
            "nonce": self._ctx.create_nonce(ACTION_SETUP),
            "scope": " ".join(self.get_required_scopes()),
        }

        client = await self.get_client_credentials()
        if client is not None:
            params["site_id"] = client[0]
        else:
            params.update(self._proxy.get_site_fields(self._ctx))

        if access_code:
            params["code"] = access_code
        if error_code:
            params["error_code"] = error_code
        if extra_params:
            params.update(extra_params)

        return self._proxy.build_url(SETUP_URI, params)

    async def get_proxy_permissions_url(self) -> str:
        """Build the URL of the proxy's permission management page."""
        params: dict[str, str] = {}

        access_token = await self.get_access_token()
        if access_token:
            params["token"] = access_token

        client = await self.get_client_credentials()
        if client is not None:
            params["site_id"] = client[0]

        return self._proxy.build_url(PERMISSIONS_URI, params)
