"""Site Kit authentication exceptions."""

from __future__ import annotations


class SiteKitAuthError(Exception):
    """Base exception for authentication errors."""


class RequestRejectedError(SiteKitAuthError):
    """Raised when an inbound request fails validation.

    The request is terminated with ``status_code`` and no state is mutated.

    Attributes:
        message: Human-readable error message
        status_code: HTTP status code returned to the client
    """

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return f"[{self.status_code}] {self.message}"


class InvalidNonceError(RequestRejectedError):
    """Raised when a nonce is missing or does not verify (400 Bad Request)."""

    def __init__(
        self,
        message: str = "Invalid nonce.",
        status_code: int = 400,
    ) -> None:
        super().__init__(message, status_code)


class PermissionDeniedError(RequestRejectedError):
    """Raised when the principal lacks a capability (403 Forbidden)."""

    def __init__(
        self,
        message: str = "You don't have permissions to perform this action.",
        status_code: int = 403,
    ) -> None:
        super().__init__(message, status_code)


class OAuthError(SiteKitAuthError):
    """Raised when an OAuth operation against the provider fails.

    Attributes:
        code: Machine-readable error code, persisted to the user's error record
        message: Human-readable error message
    """

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code


class StorageError(SiteKitAuthError):
    """Error during key-value storage operations."""
