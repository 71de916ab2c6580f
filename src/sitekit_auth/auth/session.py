"""Host session tracking and single-use code bookkeeping.

Logging into the host platform is external; the host creates a session
for a principal and the session cookie identifies the principal on
later requests.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sitekit_auth.context import Principal
from sitekit_auth.logging_config import get_logger
from sitekit_auth.security import generate_secure_token

logger = get_logger(__name__)

DEFAULT_SESSION_TIMEOUT = timedelta(hours=24)
DEFAULT_CODE_TTL = timedelta(minutes=10)


@dataclass
class Session:
    """An authenticated host session.

    Attributes:
        session_id: Unique session identifier
        principal: User the session belongs to
        created_at: Session creation timestamp
        last_accessed: Last activity timestamp
    """

    session_id: str
    principal: Principal
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_accessed: datetime = field(default_factory=lambda: datetime.now(UTC))

    def touch(self) -> None:
        """Update last accessed timestamp."""
        self.last_accessed = datetime.now(UTC)

    def is_expired(self, timeout: timedelta = DEFAULT_SESSION_TIMEOUT) -> bool:
        return datetime.now(UTC) > (self.last_accessed + timeout)


class SessionManager:
    """Maps session ids to principals with an idle timeout."""

    def __init__(self, session_timeout: timedelta = DEFAULT_SESSION_TIMEOUT) -> None:
        self._session_timeout = session_timeout
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, principal: Principal) -> str:
        """Create a session for a logged-in principal.

        Args:
            principal: User the host platform authenticated

        Returns:
            New session ID
        """
        async with self._lock:
            session_id = generate_secure_token(32)
            self._sessions[session_id] = Session(session_id=session_id, principal=principal)
            logger.info("Created session %s for user %s", session_id[:8], principal.user_id)
            return session_id

    async def get_session(self, session_id: str | None) -> Session | None:
        """Retrieve a live session and update its last access time."""
        if not session_id:
            return None

        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None

            if session.is_expired(self._session_timeout):
                logger.debug("Session %s has expired", session_id[:8])
                del self._sessions[session_id]
                return None

            session.touch()
            return session

    async def invalidate_session(self, session_id: str) -> None:
        async with self._lock:
            if self._sessions.pop(session_id, None) is not None:
                logger.info("Invalidated session %s", session_id[:8])

    async def cleanup_expired(self) -> int:
        """Remove all expired sessions.

        Returns:
            Number of sessions removed
        """
        async with self._lock:
            expired = [
                session_id
                for session_id, session in self._sessions.items()
                if session.is_expired(self._session_timeout)
            ]
            for session_id in expired:
                del self._sessions[session_id]

            if expired:
                logger.debug("Cleaned up %d expired sessions", len(expired))
            return len(expired)

    async def get_session_count(self) -> int:
        async with self._lock:
            return len(self._sessions)


class CodeRegistry:
    """Remembers which one-time codes are being or have been exchanged.

    Authorization codes and site codes are single-use; claiming a code
    before exchanging it keeps a double-submitted callback from running
    the exchange twice.
    """

    def __init__(self, ttl: timedelta = DEFAULT_CODE_TTL) -> None:
        self._ttl = ttl
        self._claims: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(code: str) -> str:
        return hashlib.sha256(code.encode()).hexdigest()

    async def claim(self, code: str) -> bool:
        """Claim ``code``.

        Expired claims are dropped on every call.

        Returns:
            True if the code was not claimed yet (or its claim expired)
        """
        key = self._key(code)
        now = datetime.now(UTC)
        async with self._lock:
            self._prune(now)
            claimed_at = self._claims.get(key)
            if claimed_at is not None and now <= claimed_at + self._ttl:
                logger.warning("Code %s was already claimed", key[:8])
                return False
            self._claims[key] = now
            return True

    async def release(self, code: str) -> None:
        """Release a claim so the code may be exchanged again."""
        async with self._lock:
            self._claims.pop(self._key(code), None)

    def _prune(self, now: datetime) -> int:
        expired = [
            key for key, claimed_at in self._claims.items()
            if now > claimed_at + self._ttl
        ]
        for key in expired:
            del self._claims[key]
        return len(expired)

    async def cleanup_expired(self) -> int:
        async with self._lock:
            return self._prune(datetime.now(UTC))

    async def get_claim_count(self) -> int:
        async with self._lock:
            return len(self._claims)
