"""Scope reconciliation between granted and required scopes."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable


def parse_scopes(value: str | Iterable[str] | None) -> frozenset[str]:
    """Normalize a scope string or collection into a set.

    Strings are split on whitespace, the format providers use in token
    responses.
    """
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset(value.split())
    return frozenset(scope for scope in value if scope)


def needs_reauth(
    granted: str | Iterable[str] | None,
    required: str | Iterable[str] | None,
    *,
    has_token: bool = True,
) -> bool:
    """Check whether any required scope is missing from the granted ones.

    Granted scopes beyond the required ones never trigger
    reauthentication. Without a token there is nothing to reconcile.

    Args:
        granted: Scopes the provider last reported
        required: Scopes the site needs
        has_token: Whether the user currently holds an access token

    Returns:
        True if the user must reauthenticate
    """
    if not has_token:
        return False

    required_set = parse_scopes(required)
    granted_and_required = parse_scopes(granted) & required_set
    return len(granted_and_required) < len(required_set)


def missing_scopes(
    granted: str | Iterable[str] | None,
    required: str | Iterable[str] | None,
) -> list[str]:
    """Return the required scopes that were not granted, sorted."""
    return sorted(parse_scopes(required) - parse_scopes(granted))
