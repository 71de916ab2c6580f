"""Security utilities for Site Kit Auth.

Provides secret handling, token redaction, action-scoped nonces and
redirect target sanitization.
"""

from __future__ import annotations

import hashlib
import hmac
import math
import secrets
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sitekit_auth.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

logger = get_logger(__name__)

NONCE_SALT_BYTES = 8
NONCE_HASH_LENGTH = 20


def redact(value: str | None) -> str:
    """Redact a potentially sensitive value for safe logging.

    Args:
        value: The value to redact

    Returns:
        "***" if value is non-empty, "<empty>" if empty/None
    """
    if value is None or value == "":
        return "<empty>"
    return "***"


def constant_time_equals(a: str | None, b: str | None) -> bool:
    """Compare two strings in constant time to prevent timing attacks.

    Args:
        a: First string to compare
        b: Second string to compare

    Returns:
        True if strings are equal, False otherwise
    """
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


def generate_secure_token(nbytes: int = 32) -> str:
    """Generate a cryptographically secure random token.

    Args:
        nbytes: Number of random bytes (default 32 = 256 bits)

    Returns:
        URL-safe base64-encoded token string
    """
    return secrets.token_urlsafe(nbytes)


def sanitize_redirect_url(value: str | None) -> str | None:
    """Validate an externally supplied redirect target.

    Only absolute http(s) URLs without whitespace or control characters
    are accepted; anything else is dropped.

    Args:
        value: Raw value from the request

    Returns:
        The URL if it is well formed, None otherwise
    """
    if not value:
        return None

    value = value.strip()
    if any(ch.isspace() or ord(ch) < 32 or ord(ch) == 127 for ch in value):
        return None

    try:
        parts = urlsplit(value)
        hostname = parts.hostname
    except ValueError:
        return None

    if parts.scheme not in ("http", "https") or not hostname:
        return None

    return value


def add_query_args(url: str, params: Mapping[str, Any]) -> str:
    """Return ``url`` with ``params`` merged into its query string.

    Existing parameters with the same name are replaced.
    """
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query.update({key: str(value) for key, value in params.items()})
    return urlunsplit(parts._replace(query=urlencode(query)))


def is_allowed_redirect(url: str, allowed_hosts: Iterable[str]) -> bool:
    """Check that ``url`` points at one of ``allowed_hosts``."""
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        return False
    if not hostname:
        return False
    return hostname.lower() in {host.lower() for host in allowed_hosts if host}


class NonceManager:
    """Issues and verifies single-use, action-scoped nonces.

    A nonce is ``<salt>.<digest>`` where the digest is an HMAC over the
    time tick, action, user id, session token and salt. A nonce verifies
    during the tick it was created in and the following one, so its
    lifetime is between half and all of ``lifetime``. Each salt is
    accepted once.
    """

    def __init__(
        self,
        secret_key: str,
        lifetime: int = 86400,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the nonce manager.

        Args:
            secret_key: Signing secret
            lifetime: Nonce lifetime in seconds
            clock: Time source, overridable in tests
        """
        self._key = secret_key.encode()
        self._lifetime = lifetime
        self._clock = clock
        self._used: dict[str, float] = {}

    def _tick(self) -> int:
        return math.ceil(self._clock() / (self._lifetime / 2))

    def _digest(
        self,
        tick: int,
        action: str,
        user_id: int,
        session_token: str,
        salt: str,
    ) -> str:
        message = f"{tick}|{action}|{user_id}|{session_token}|{salt}".encode()
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()[:NONCE_HASH_LENGTH]

    def _prune(self) -> None:
        now = self._clock()
        for salt in [salt for salt, expires in self._used.items() if expires < now]:
            del self._used[salt]

    def create(self, action: str, user_id: int, session_token: str = "") -> str:
        """Create a nonce for ``action`` bound to a user and session.

        Args:
            action: Action name the nonce protects
            user_id: Requesting user
            session_token: Host session identifier

        Returns:
            Nonce string
        """
        self._prune()
        salt = secrets.token_hex(NONCE_SALT_BYTES)
        digest = self._digest(self._tick(), action, user_id, session_token, salt)
        return f"{salt}.{digest}"

    def verify(
        self,
        nonce: str | None,
        action: str,
        user_id: int,
        session_token: str = "",
    ) -> bool:
        """Verify and consume a nonce.

        Args:
            nonce: Nonce from the request
            action: Action the request performs
            user_id: Requesting user
            session_token: Host session identifier

        Returns:
            True if the nonce is valid for this action and unused
        """
        if not nonce:
            return False

        salt, _, digest = nonce.partition(".")
        if not salt or not digest:
            return False

        tick = self._tick()
        valid = any(
            constant_time_equals(
                self._digest(t, action, user_id, session_token, salt), digest
            )
            for t in (tick, tick - 1)
        )
        if not valid:
            logger.debug("Nonce for action %s did not verify", action)
            return False

        self._prune()
        if salt in self._used:
            logger.warning("Rejected reused nonce for action %s", action)
            return False

        self._used[salt] = self._clock() + self._lifetime
        return True
