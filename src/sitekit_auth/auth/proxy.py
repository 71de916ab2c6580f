"""Client for the Site Kit registration proxy.

The proxy issues site-scoped OAuth client credentials, so administrators
do not have to create a project in the provider's console. The setup
flow hands the site a code pair which is exchanged here for a site id
and secret.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode, urlsplit

import httpx

from sitekit_auth.logging_config import get_logger
from sitekit_auth.security import redact

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sitekit_auth.context import RequestContext

logger = get_logger(__name__)

ACTION_SETUP = "googlesitekit_proxy_setup"

OAUTH2_SITE_URI = "/o/oauth2/site/"
OAUTH2_AUTH_URI = "/o/oauth2/auth/"
OAUTH2_TOKEN_URI = "/o/oauth2/token/"
OAUTH2_REVOKE_URI = "/o/oauth2/revoke/"
SETUP_URI = "/site-management/setup/"
PERMISSIONS_URI = "/site-management/permissions/"

MISSING_VERIFICATION = "missing_verification"
FAILED_TO_CONNECT = "failed_to_connect"
FAILED_TO_PARSE_RESPONSE = "failed_to_parse_response"


@dataclass(frozen=True)
class SiteCredentials:
    """Successful exchange: the site's OAuth client credentials."""

    site_id: str
    site_secret: str


@dataclass(frozen=True)
class MissingVerification:
    """The proxy could not confirm site ownership yet.

    Recoverable: the site code is handed back to the proxy so it can
    finish verification and send the user here again.
    """

    site_code: str


@dataclass(frozen=True)
class ExchangeFailed:
    """Any other exchange failure; terminal for this attempt."""

    error_code: str


ExchangeResult = SiteCredentials | MissingVerification | ExchangeFailed


class ProxyClient:
    """Talks to the registration proxy."""

    def __init__(self, base_url: str, http_client: httpx.AsyncClient) -> None:
        """Initialize the proxy client.

        Args:
            base_url: Proxy base URL, without trailing slash
            http_client: Shared HTTP client, carries the request timeout
        """
        self.base_url = base_url.rstrip("/")
        self._http_client = http_client

    def url(self, path: str = "") -> str:
        """Absolute URL of a proxy path."""
        return f"{self.base_url}{path}"

    def build_url(self, path: str, params: Mapping[str, Any]) -> str:
        """Absolute URL of a proxy path with query parameters."""
        if not params:
            return self.url(path)
        return f"{self.url(path)}?{urlencode(params)}"

    @property
    def host(self) -> str:
        return urlsplit(self.base_url).hostname or ""

    def get_site_fields(self, ctx: RequestContext) -> dict[str, str]:
        """Fields identifying the site to the proxy before it is registered."""
        return {
            "name": ctx.config.site_name,
            "url": ctx.home_url(),
            "redirect_uri": ctx.admin_url(None, {"oauth2callback": 1}),
            "action_uri": ctx.admin_url(None),
            "return_uri": ctx.admin_url("splash"),
        }

    async def exchange_site_code(self, site_code: str, code: str) -> ExchangeResult:
        """Exchange a site code and access code for site credentials.

        Performs exactly one request; codes are single-use, so failures
        are never retried.

        Args:
            site_code: Site code (``googlesitekit_site_code``) from the proxy
            code: Access code (``googlesitekit_code``) from the proxy

        Returns:
            SiteCredentials, MissingVerification or ExchangeFailed
        """
        logger.debug(
            "Exchanging site code (site_code: %s, code: %s)",
            redact(site_code),
            redact(code),
        )

        try:
            response = await self._http_client.post(
                self.url(OAUTH2_SITE_URI),
                data={"code": code, "site_code": site_code},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error("Site code exchange request failed: %s", e)
            return ExchangeFailed(FAILED_TO_CONNECT)

        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and body.get("error"):
            error_code = str(body["error"])
            if error_code == MISSING_VERIFICATION:
                logger.info("Site code exchange pending site verification")
                return MissingVerification(site_code)
            logger.error("Site code exchange failed: %s", error_code)
            return ExchangeFailed(error_code)

        if response.is_error:
            logger.error(
                "Site code exchange failed: %s %s",
                response.status_code,
                response.reason_phrase,
            )
            return ExchangeFailed(FAILED_TO_CONNECT)

        if (
            not isinstance(body, dict)
            or not body.get("site_id")
            or not body.get("site_secret")
        ):
            logger.error("Site code exchange returned an unexpected response")
            return ExchangeFailed(FAILED_TO_PARSE_RESPONSE)

        logger.info("Site code exchanged for site %s", body["site_id"])
        return SiteCredentials(
            site_id=str(body["site_id"]),
            site_secret=str(body["site_secret"]),
        )
