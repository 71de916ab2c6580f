"""Per-user error record and error code messages."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sitekit_auth.logging_config import get_logger

if TYPE_CHECKING:
    from sitekit_auth.storage import UserOptions

logger = get_logger(__name__)

ERROR_MESSAGES = {
    "oauth_credentials_not_exist": (
        "Unable to authenticate Site Kit, as no client credentials exist."
    ),
    "refresh_token_not_exist": (
        "Unable to refresh access token, as no refresh token exists."
    ),
    "cannot_log_in": "Internal error that the Google login redirect failed.",
    "invalid_client": "Unable to receive access token because of an invalid client.",
    "invalid_code": (
        "Unable to receive access token because of an empty authorization code."
    ),
    "access_token_not_received": (
        "Unable to receive access token because of an unknown error."
    ),
    "cannot_fetch_tokens": "Unable to receive access token because of a server error.",
    "invalid_grant": (
        "Unable to receive access token because of an invalid authorization code "
        "or refresh token."
    ),
    "invalid_request": "Unable to receive access token because of an invalid OAuth request.",
    "missing_delegation_consent": (
        "Looks like your site is not allowed access to Google account data and "
        "can't display stats in the dashboard."
    ),
    "missing_search_console_property": (
        "Looks like there is no Search Console property for your site."
    ),
    "missing_verification": "Looks like the verification token for your site is missing.",
    "unauthorized_client": (
        "Unable to receive access token because of an unauthorized client."
    ),
    "unsupported_grant_type": (
        "Unable to receive access token because of an unsupported grant type."
    ),
    "failed_to_connect": "Unable to connect to the Site Kit service.",
    "failed_to_parse_response": "Unable to parse the response of the Site Kit service.",
}


def get_error_message(error_code: str) -> str:
    """Return a human-readable message for an error code."""
    return ERROR_MESSAGES.get(error_code, f"Unknown Error (code: {error_code}).")


class ErrorRecord:
    """The last authentication error of a user.

    Reading through ``consume`` clears the record so a notice shows once.
    """

    OPTION = "googlesitekit_error_code"

    def __init__(self, user_options: UserOptions) -> None:
        self._user_options = user_options

    async def set(self, error_code: str) -> None:
        await self._user_options.set(self.OPTION, error_code)
        logger.info(
            "Recorded error %s for user %s", error_code, self._user_options.user_id
        )

    async def peek(self) -> str | None:
        """Return the error code without clearing it."""
        return await self._user_options.get(self.OPTION) or None

    async def consume(self) -> str | None:
        """Return the error code and clear it."""
        error_code = await self.peek()
        if error_code is not None:
            await self.clear()
        return error_code

    async def clear(self) -> None:
        await self._user_options.delete(self.OPTION)
