"""Authentication module for Site Kit Auth.

Provides the credential store, scope checks, the registration proxy
client, the OAuth client and the request controller tying them together.
"""

from sitekit_auth.auth.client import OAuthClient
from sitekit_auth.auth.controller import Authentication, Notice
from sitekit_auth.auth.credentials import Credentials, CredentialStore, TokenSet
from sitekit_auth.auth.errors import ErrorRecord, get_error_message
from sitekit_auth.auth.proxy import (
    ExchangeFailed,
    ExchangeResult,
    MissingVerification,
    ProxyClient,
    SiteCredentials,
)
from sitekit_auth.auth.scopes import missing_scopes, needs_reauth, parse_scopes
from sitekit_auth.auth.session import CodeRegistry, Session, SessionManager

__all__ = [
    "Authentication",
    "CodeRegistry",
    "CredentialStore",
    "Credentials",
    "ErrorRecord",
    "ExchangeFailed",
    "ExchangeResult",
    "MissingVerification",
    "Notice",
    "OAuthClient",
    "ProxyClient",
    "Session",
    "SessionManager",
    "SiteCredentials",
    "TokenSet",
    "get_error_message",
    "missing_scopes",
    "needs_reauth",
    "parse_scopes",
]
