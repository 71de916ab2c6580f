"""OAuth credential records and their store.

Client credentials (issued by the proxy or configured for direct mode)
are site-wide; tokens and granted scopes belong to a single user.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sitekit_auth.auth.scopes import parse_scopes
from sitekit_auth.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from sitekit_auth.storage import Options, UserOptions

logger = get_logger(__name__)

# Buffer time before token expiry to trigger refresh
TOKEN_REFRESH_BUFFER = timedelta(minutes=5)

CLIENT_FIELDS = frozenset({"oauth2_client_id", "oauth2_client_secret"})
TOKEN_FIELDS = frozenset(
    {"access_token", "refresh_token", "expires_at", "token_type", "granted_scopes"}
)


@dataclass(frozen=True)
class TokenSet:
    """OAuth 2.0 token set with the scopes the provider granted."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime
    token_type: str = "Bearer"
    scopes: frozenset[str] = frozenset()

    @property
    def is_expired(self) -> bool:
        """Check if the access token is expired."""
        return datetime.now(UTC) >= self.expires_at

    @property
    def needs_refresh(self) -> bool:
        """Check if the token should be refreshed."""
        return datetime.now(UTC) >= (self.expires_at - TOKEN_REFRESH_BUFFER)

    @classmethod
    def from_token_response(
        cls,
        response: Mapping[str, Any],
        default_scopes: Iterable[str] = (),
        default_expires_in: int = 3600,
    ) -> TokenSet:
        """Create TokenSet from an OAuth token endpoint response.

        Args:
            response: Token endpoint response
            default_scopes: Scopes to assume when the response omits ``scope``
            default_expires_in: Default expiry if not in response

        Returns:
            TokenSet instance
        """
        expires_in = int(response.get("expires_in") or default_expires_in)
        scope = response.get("scope")

        return cls(
            access_token=response["access_token"],
            refresh_token=response.get("refresh_token"),
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
            token_type=response.get("token_type", "Bearer"),
            scopes=parse_scopes(scope) if scope else parse_scopes(default_scopes),
        )

    def to_record(self) -> dict[str, Any]:
        """Serialize for storage."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.timestamp(),
            "token_type": self.token_type,
            "granted_scopes": sorted(self.scopes),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any] | None) -> TokenSet | None:
        """Deserialize a stored record, None if it holds no access token."""
        if not record or not record.get("access_token"):
            return None

        expires_at_val = record.get("expires_at")
        expires_at = (
            datetime.fromtimestamp(float(expires_at_val), tz=UTC)
            if expires_at_val is not None
            else datetime.now(UTC)
        )
        refresh_token = record.get("refresh_token")
        return cls(
            access_token=str(record["access_token"]),
            refresh_token=str(refresh_token) if refresh_token else None,
            expires_at=expires_at,
            token_type=str(record.get("token_type") or "Bearer"),
            scopes=parse_scopes(record.get("granted_scopes")),
        )


@dataclass(frozen=True)
class Credentials:
    """Client credentials plus the current user's tokens."""

    client_id: str | None = None
    client_secret: str | None = None
    token: TokenSet | None = None

    @property
    def has_client_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def access_token(self) -> str | None:
        return self.token.access_token if self.token else None

    @property
    def refresh_token(self) -> str | None:
        return self.token.refresh_token if self.token else None

    @property
    def granted_scopes(self) -> frozenset[str]:
        return self.token.scopes if self.token else frozenset()


def _serialize_token_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    record = dict(fields)
    if isinstance(record.get("expires_at"), datetime):
        record["expires_at"] = record["expires_at"].timestamp()
    if "granted_scopes" in record:
        record["granted_scopes"] = sorted(parse_scopes(record["granted_scopes"]))
    return record


class CredentialStore:
    """Persists OAuth credentials as opaque records.

    ``set`` merges the given fields into the stored records, leaving
    unspecified fields untouched. Each record is written in one step.
    """

    OPTION = "googlesitekit_credentials"
    TOKEN_OPTION = "googlesitekit_access_token"

    def __init__(self, options: Options, user_options: UserOptions) -> None:
        self._options = options
        self._user_options = user_options

    async def get(self) -> Credentials:
        """Return stored credentials; empty when nothing is stored."""
        client = await self._options.get(self.OPTION) or {}
        token = await self._user_options.get(self.TOKEN_OPTION)
        return Credentials(
            client_id=client.get("oauth2_client_id") or None,
            client_secret=client.get("oauth2_client_secret") or None,
            token=TokenSet.from_record(token),
        )

    async def set(self, fields: Mapping[str, Any]) -> None:
        """Merge ``fields`` into the stored credentials.

        Raises:
            ValueError: If a field name is unknown; nothing is written
        """
        unknown = set(fields) - CLIENT_FIELDS - TOKEN_FIELDS
        if unknown:
            msg = f"Unknown credential fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        client = {k: v for k, v in fields.items() if k in CLIENT_FIELDS}
        token = {k: v for k, v in fields.items() if k in TOKEN_FIELDS}

        if client:
            await self._options.merge(self.OPTION, client)
            logger.debug("Updated client credentials (%s)", ", ".join(sorted(client)))
        if token:
            await self._user_options.merge(self.TOKEN_OPTION, _serialize_token_fields(token))
            logger.debug("Updated token fields for user %s", self._user_options.user_id)

    async def set_token(self, token: TokenSet) -> None:
        """Replace the current user's token record."""
        await self._user_options.set(self.TOKEN_OPTION, token.to_record())

    async def delete_tokens(self) -> None:
        """Remove the current user's token record."""
        await self._user_options.delete(self.TOKEN_OPTION)

    async def delete(self) -> None:
        """Remove client credentials and the current user's tokens."""
        await self._options.delete(self.OPTION)
        await self.delete_tokens()

    async def has(self) -> bool:
        """True iff both client id and client secret are stored."""
        return (await self.get()).has_client_credentials
