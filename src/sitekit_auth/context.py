"""Per-request context.

A ``RequestContext`` is built once for every inbound request and passed
to each component, so nothing looks up the current user, the query or
the storage views from module globals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from sitekit_auth.storage import Options, UserOptions

if TYPE_CHECKING:
    from collections.abc import Mapping

    import httpx

    from sitekit_auth.config import Config
    from sitekit_auth.security import NonceManager
    from sitekit_auth.storage import KeyValueStore


class Permissions:
    """Capability names checked against the requesting principal."""

    AUTHENTICATE = "googlesitekit_authenticate"
    SETUP = "googlesitekit_setup"
    MANAGE_OPTIONS = "manage_options"

    ADMIN = frozenset({AUTHENTICATE, SETUP, MANAGE_OPTIONS})


@dataclass(frozen=True)
class Principal:
    """The user a request is made on behalf of.

    Attributes:
        user_id: Host platform user id, 0 for anonymous
        capabilities: Capabilities granted by the host platform
        email: Optional email address
    """

    user_id: int
    capabilities: frozenset[str] = frozenset()
    email: str | None = None

    @property
    def is_logged_in(self) -> bool:
        return self.user_id > 0

    def can(self, capability: str) -> bool:
        return capability in self.capabilities


ANONYMOUS = Principal(user_id=0)


@dataclass
class RequestContext:
    """Everything a component needs to serve one request."""

    config: Config
    store: KeyValueStore
    nonces: NonceManager
    http_client: httpx.AsyncClient
    principal: Principal = ANONYMOUS
    query: Mapping[str, str] = field(default_factory=dict)
    method: str = "GET"
    is_admin: bool = False
    session_token: str = ""
    options: Options = field(init=False)
    user_options: UserOptions = field(init=False)

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.options = Options(self.store)
        self.user_options = UserOptions(self.store, self.principal.user_id)

    def input(self, name: str) -> str | None:
        """Return a stripped query parameter, None when absent or blank."""
        value = self.query.get(name)
        if value is None:
            return None
        value = value.strip()
        return value or None

    def home_url(self, params: Mapping[str, Any] | None = None) -> str:
        """URL of the site front, optionally with query parameters."""
        url = self.config.site_url + "/"
        if params:
            url += "?" + urlencode(params)
        return url

    def admin_url(
        self,
        page: str | None = "dashboard",
        params: Mapping[str, Any] | None = None,
    ) -> str:
        """URL of an admin page, or of the bare admin entry point if ``page`` is None."""
        query: dict[str, Any] = {}
        if page:
            query["page"] = f"googlesitekit-{page}"
        if params:
            query.update(params)
        url = self.config.site_url + self.config.admin_path
        if query:
            url += "?" + urlencode(query)
        return url

    def create_nonce(self, action: str) -> str:
        return self.nonces.create(action, self.principal.user_id, self.session_token)

    def verify_nonce(self, nonce: str | None, action: str) -> bool:
        return self.nonces.verify(
            nonce, action, self.principal.user_id, self.session_token
        )
