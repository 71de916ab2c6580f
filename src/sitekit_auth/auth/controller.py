"""Authentication entry points.

The controller validates inbound requests (nonce, capability), hands
the work to the OAuth client or the proxy client, and is the only place
that decides on redirects or terminates a request.

Actions are looked up in an explicit dispatch table keyed by
``(action, method)``. Each entry is a list of ``(priority, handler)``
pairs run in priority order; a handler returns a response to finish the
request or None to let the next handler run.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from operator import itemgetter
from typing import TYPE_CHECKING, Any, assert_never
from urllib.parse import urlsplit

from starlette.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response

from sitekit_auth.auth.client import AUTHENTICATION_SUCCESS, OAuthClient
from sitekit_auth.auth.credentials import CredentialStore
from sitekit_auth.auth.errors import ErrorRecord, get_error_message
from sitekit_auth.auth.proxy import (
    ACTION_SETUP,
    ExchangeFailed,
    MissingVerification,
    ProxyClient,
    SiteCredentials,
)
from sitekit_auth.auth.scopes import needs_reauth
from sitekit_auth.auth.session import CodeRegistry
from sitekit_auth.context import Permissions
from sitekit_auth.exceptions import (
    InvalidNonceError,
    OAuthError,
    PermissionDeniedError,
    RequestRejectedError,
)
from sitekit_auth.logging_config import get_logger
from sitekit_auth.security import add_query_args, is_allowed_redirect, sanitize_redirect_url

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sitekit_auth.context import RequestContext

    Handler = Callable[[], Awaitable[Response | None]]

logger = get_logger(__name__)

ACTION_OAUTH_CALLBACK = "oauth2callback"
ACTION_CONNECT = "connect"
ACTION_DISCONNECT = "disconnect"

GOOGLE_ACCOUNTS_HOST = "accounts.google.com"

_TRUTHY = ("1", "true", "yes", "on")


def _sanitize_key(value: str) -> str:
    return re.sub(r"[^a-z0-9_\-]", "", value.lower())


@dataclass(frozen=True)
class Notice:
    """A message for the admin UI; rendering is up to the host."""

    slug: str
    type: str
    message: str
    action_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Authentication:
    """Authentication controller for one request."""

    OPTION_FIRST_ADMIN = "googlesitekit_first_admin"

    def __init__(
        self,
        ctx: RequestContext,
        code_registry: CodeRegistry | None = None,
    ) -> None:
        """Initialize the controller and its collaborators.

        Args:
            ctx: Current request context
            code_registry: Registry of exchanged one-time codes, shared
                across requests
        """
        self._ctx = ctx
        self._codes = code_registry or CodeRegistry()
        self.credentials = CredentialStore(ctx.options, ctx.user_options)
        self.errors = ErrorRecord(ctx.user_options)
        self.proxy = ProxyClient(ctx.config.proxy_url, ctx.http_client)
        self.oauth_client = OAuthClient(ctx, self.credentials, self.proxy, self.errors)

    def routes(self) -> dict[tuple[str, str], list[tuple[int, Handler]]]:
        """Dispatch table: ``(action, method)`` to prioritized handlers."""
        return {
            (ACTION_OAUTH_CALLBACK, "GET"): [(10, self.handle_oauth_callback)],
            (ACTION_DISCONNECT, "GET"): [(10, self.handle_disconnect)],
            (ACTION_CONNECT, "GET"): [(10, self.handle_connect)],
            (ACTION_SETUP, "GET"): [
                (-1, self.verify_proxy_setup_nonce),
                (10, self.handle_proxy_setup),
            ],
        }

    def resolve_action(self) -> str | None:
        """Determine which action the request asks for."""
        ctx = self._ctx
        if ctx.input("oauth2callback"):
            return ACTION_OAUTH_CALLBACK
        if not ctx.is_admin:
            return None
        if ctx.input("googlesitekit_disconnect"):
            return ACTION_DISCONNECT
        if ctx.input("googlesitekit_connect"):
            return ACTION_CONNECT
        if ctx.input("action") == ACTION_SETUP:
            return ACTION_SETUP
        return None

    async def dispatch(self) -> Response | None:
        """Run the handlers of the requested action.

        Returns:
            Response that finishes the request, or None if no action applies
        """
        action = self.resolve_action()
        if action is None:
            return None

        handlers = self.routes().get((action, self._ctx.method))
        if not handlers:
            return None

        try:
            for _, handler in sorted(handlers, key=itemgetter(0)):
                response = await handler()
                if response is not None:
                    return response
        except RequestRejectedError as e:
            logger.warning(
                "Rejected %s request for user %s: %s",
                action,
                self._ctx.principal.user_id,
                e,
            )
            return PlainTextResponse(e.message, status_code=e.status_code)

        return None

    async def handle_request(self) -> Response | None:
        """Dispatch an action, falling back to the admin landing data."""
        response = await self.dispatch()
        if response is not None or not self._ctx.is_admin:
            return response
        return await self.render_landing()

    # Validation

    def _verify_nonce(self, action: str) -> None:
        if not self._ctx.verify_nonce(self._ctx.input("nonce"), action):
            raise InvalidNonceError()

    def _require_capability(self, capability: str) -> None:
        if not self._ctx.principal.can(capability):
            raise PermissionDeniedError()

    def _require_login(self) -> None:
        if not self._ctx.principal.is_logged_in:
            raise PermissionDeniedError("You must be logged in to perform this action.")

    # Redirects

    def allowed_redirect_hosts(self) -> set[str]:
        """Hosts this site may redirect to."""
        config = self._ctx.config
        return {
            host
            for host in (
                config.site_host,
                GOOGLE_ACCOUNTS_HOST,
                self.proxy.host,
                urlsplit(config.oauth_authorization_url).hostname,
            )
            if host
        }

    def redirect(self, url: str) -> RedirectResponse:
        """Redirect to ``url`` if its host is allowed, else to the dashboard."""
        if not is_allowed_redirect(url, self.allowed_redirect_hosts()):
            logger.warning("Blocked redirect to disallowed host %s", urlsplit(url).hostname)
            url = self._ctx.admin_url()
        return RedirectResponse(url, status_code=302)

    # Handlers

    async def handle_oauth_callback(self) -> Response:
        """Complete the provider's authorization code callback.

        The provider-issued code is the proof; no nonce is involved.
        """
        self._require_login()

        code = self._ctx.input("code")
        if code and not await self._codes.claim(f"oauth:{code}"):
            logger.warning("Ignoring repeated authorization callback")
            return self.redirect(self._ctx.admin_url("splash"))

        try:
            redirect_url = await self.oauth_client.authorize_user()
        except OAuthError as e:
            await self.errors.set(e.code)
            return self.redirect(self._ctx.admin_url("splash"))

        return self.redirect(redirect_url)

    async def handle_disconnect(self) -> Response:
        self._verify_nonce(ACTION_DISCONNECT)
        self._require_capability(Permissions.AUTHENTICATE)

        await self.disconnect()

        return self.redirect(
            self._ctx.admin_url("splash", {"googlesitekit_reset_session": 1})
        )

    async def handle_connect(self) -> Response:
        self._verify_nonce(ACTION_CONNECT)
        self._require_capability(Permissions.AUTHENTICATE)

        redirect_url = sanitize_redirect_url(self._ctx.input("redirect"))

        try:
            auth_url = await self.oauth_client.get_authentication_url(redirect_url)
        except OAuthError as e:
            await self.errors.set(e.code)
            return self.redirect(self._ctx.admin_url("splash"))

        return self.redirect(auth_url)

    async def verify_proxy_setup_nonce(self) -> None:
        """First stage of proxy setup; fails closed before anything else runs."""
        self._verify_nonce(ACTION_SETUP)

    async def handle_proxy_setup(self) -> Response:
        """Second stage of proxy setup: exchange codes, then return to the proxy."""
        self._require_login()

        code = self._ctx.input("googlesitekit_code")
        site_code = self._ctx.input("googlesitekit_site_code")

        if code:
            await self._ctx.user_options.set(OAuthClient.OPTION_PROXY_ACCESS_CODE, code)

        outcome = await self.handle_site_code(code, site_code)
        if isinstance(outcome, Response):
            return outcome

        return self.redirect(
            await self.oauth_client.get_proxy_setup_url(code or "", extra_params=outcome)
        )

    async def handle_site_code(
        self,
        code: str | None,
        site_code: str | None,
    ) -> dict[str, str] | Response:
        """Exchange the proxy's code pair for site credentials.

        Returns:
            Extra parameters for the following proxy redirect, or a
            response that ends the request after a terminal failure
        """
        if not code or not site_code:
            return {}

        claim = f"site:{site_code}:{code}"
        if not await self._codes.claim(claim):
            logger.warning("Site code exchange already in progress or done")
            return {}

        result = await self.proxy.exchange_site_code(site_code, code)

        match result:
            case SiteCredentials(site_id=site_id, site_secret=site_secret):
                await self.credentials.set(
                    {
                        "oauth2_client_id": site_id,
                        "oauth2_client_secret": site_secret,
                    }
                )
                await self._ctx.user_options.delete(OAuthClient.OPTION_PROXY_ACCESS_CODE)
                return {}
            case MissingVerification(site_code=pending_site_code):
                # The proxy finishes verification, then sends the user back here.
                await self._codes.release(claim)
                return {"site_code": pending_site_code}
            case ExchangeFailed(error_code=error_code):
                await self.errors.set(error_code)
                return self.redirect(
                    add_query_args(self._ctx.admin_url("splash"), {"error": error_code})
                )
            case _:
                assert_never(result)

    # State

    async def disconnect(self) -> None:
        """Revoke the token and delete every option of the user.

        A failed remote revocation does not stop the local cleanup.
        """
        await self.oauth_client.revoke_token()
        count = await self._ctx.user_options.delete_all()
        logger.info(
            "Disconnected user %s (%d options removed)",
            self._ctx.principal.user_id,
            count,
        )

    async def is_authenticated(self) -> bool:
        return bool(await self.oauth_client.get_access_token())

    async def need_reauthenticate(self) -> bool:
        """True if the user holds a token lacking a required scope."""
        credentials = await self.credentials.get()
        return needs_reauth(
            credentials.granted_scopes,
            self.oauth_client.get_required_scopes(),
            has_token=bool(credentials.access_token),
        )

    def get_connect_url(self) -> str:
        return self._ctx.admin_url(
            "splash",
            {
                "googlesitekit_connect": 1,
                "nonce": self._ctx.create_nonce(ACTION_CONNECT),
            },
        )

    def get_disconnect_url(self) -> str:
        return self._ctx.admin_url(
            "splash",
            {
                "googlesitekit_disconnect": 1,
                "nonce": self._ctx.create_nonce(ACTION_DISCONNECT),
            },
        )

    # Data for the admin UI

    async def get_admin_data(self) -> dict[str, Any]:
        """User data and action URLs for the admin UI."""
        profile = await self._ctx.user_options.get(OAuthClient.OPTION_PROFILE) or {}
        data: dict[str, Any] = {
            "userData": {
                "email": profile.get("email") or self._ctx.principal.email,
                "picture": profile.get("photo"),
            },
        }

        if self.oauth_client.using_proxy():
            access_code = await self._ctx.user_options.get(
                OAuthClient.OPTION_PROXY_ACCESS_CODE, ""
            )
            data["proxySetupURL"] = await self.oauth_client.get_proxy_setup_url(access_code)
            data["proxyPermissionsURL"] = await self.oauth_client.get_proxy_permissions_url()

        data["connectURL"] = self.get_connect_url()
        data["disconnectURL"] = self.get_disconnect_url()
        return data

    async def get_setup_data(self) -> dict[str, Any]:
        """Authentication state for the setup flow.

        Also records the first administrator who loads it.
        """
        ctx = self._ctx
        credentials = await self.credentials.get()
        is_authenticated = bool(credentials.access_token)

        data: dict[str, Any] = {
            "isSiteKitConnected": await self.oauth_client.get_client_credentials() is not None,
            "isResettable": await ctx.options.has(CredentialStore.OPTION),
            "isAuthenticated": is_authenticated,
            "requiredScopes": self.oauth_client.get_required_scopes(),
            "grantedScopes": (
                await self.oauth_client.get_granted_scopes() if is_authenticated else []
            ),
            "needReauthenticate": is_authenticated and await self.need_reauthenticate(),
        }

        if self.oauth_client.using_proxy():
            error_code = await self.errors.peek()
            if error_code:
                data["errorMessage"] = get_error_message(error_code)

        principal = ctx.principal
        first_admin_id = int(await ctx.options.get(self.OPTION_FIRST_ADMIN, 0))
        if not first_admin_id and principal.is_logged_in and principal.can(
            Permissions.MANAGE_OPTIONS
        ):
            first_admin_id = principal.user_id
            await ctx.options.set(self.OPTION_FIRST_ADMIN, first_admin_id)
            logger.info("Recorded user %s as first admin", first_admin_id)
        data["isFirstAdmin"] = principal.is_logged_in and principal.user_id == first_admin_id

        data["showModuleSetupWizard"] = (ctx.input("reAuth") or "").lower() in _TRUTHY
        data["moduleToSetup"] = _sanitize_key(ctx.input("slug") or "")
        return data

    async def get_notices(self) -> list[Notice]:
        """Authentication notices; the error notice is shown once."""
        notices: list[Notice] = []

        if await self.need_reauthenticate():
            notices.append(
                Notice(
                    slug="needs_reauthentication",
                    type="success",
                    message="You need to reauthenticate your Google account.",
                    action_url=self.get_connect_url(),
                )
            )

        error_notice = await self._get_oauth_error_notice()
        if error_notice is not None:
            notices.append(error_notice)

        return notices

    async def _get_oauth_error_notice(self) -> Notice | None:
        ctx = self._ctx

        error_code = ctx.input("error")
        if ctx.input("notification") != AUTHENTICATION_SUCCESS:
            error_code = None
        stored_error_code = await self.errors.consume()
        error_code = error_code or stored_error_code
        if not error_code:
            return None

        access_code = await ctx.user_options.get(OAuthClient.OPTION_PROXY_ACCESS_CODE)
        if self.oauth_client.using_proxy() and access_code:
            retry_url = await self.oauth_client.get_proxy_setup_url(access_code, error_code)
            await ctx.user_options.delete(OAuthClient.OPTION_PROXY_ACCESS_CODE)
            return Notice(
                slug="oauth_error",
                type="error",
                message=f"Setup Error (code: {error_code}).",
                action_url=retry_url,
            )

        return Notice(slug="oauth_error", type="error", message=get_error_message(error_code))

    async def render_landing(self) -> Response:
        """Landing data for an admin page."""
        try:
            self._require_login()
        except RequestRejectedError as e:
            return PlainTextResponse(e.message, status_code=e.status_code)

        return JSONResponse(
            {
                "page": _sanitize_key(self._ctx.input("page") or ""),
                "setup": await self.get_setup_data(),
                "admin": await self.get_admin_data(),
                "notices": [notice.to_dict() for notice in await self.get_notices()],
            }
        )
