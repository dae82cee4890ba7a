"""
resolver.py

Table-driven extraction of tokens and session fields from the inconsistent
response shapes returned by the identity provider and the application API.
Every call site goes through these tables instead of guessing field names.
Part of Chatflow — Business Messaging Client.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Optional
from urllib.parse import parse_qs, urlsplit

from bs4 import BeautifulSoup

from auth.models import ExchangeResult, TeamMemberOverlay, TokenCandidate, TokenSource

# Base64 of '{"', the start of every JWT header
JWT_MARKER = "eyJ"

TOKEN_FIELD_PATHS: tuple[str, ...] = ("data.token", "token", "jwt", "data.jwt", "accessToken")
REDIRECT_FIELD_PATHS: tuple[str, ...] = ("redirect", "redirectUrl", "data.redirect", "data.redirectUrl")
TOKEN_QUERY_PARAMS: tuple[str, ...] = ("token",)

EXCHANGE_FIELD_PATHS: dict[str, tuple[str, ...]] = {
    "user": ("data.user", "user"),
    "setting_id": ("data.user.settingId", "user.settingId", "settingId", "data.settingId"),
    "token_expires_at": ("data.tokenExpiresAt", "tokenExpiresAt"),
    "timezone": ("data.timeZone", "timeZone", "data.timezone"),
    "team_member": ("data.teamMemberStatus", "teamMemberStatus"),
}

CSRF_FIELD_NAMES: tuple[str, ...] = ("_token", "csrf_token", "csrf")
_CSRF_SCRIPT_PATTERNS = (
    re.compile(r'"csrfToken"\s*:\s*"([^"]+)"', re.IGNORECASE),
    re.compile(r"_token['\"]\s*:\s*['\"]([^'\"]+)['\"]", re.IGNORECASE),
)

LOGIN_FAILURE_PHRASES: tuple[str, ...] = (
    "invalid credentials",
    "invalid email",
    "invalid password",
    "login failed",
)


def lookup(payload: Any, path: str) -> Any:
    """
    Walk a dotted path through nested dicts.

    Args:
        payload: Any decoded JSON value.
        path: Dotted field path, e.g. "data.token".

    Returns:
        The value at path, or None when any segment is missing.

    Example:
        lookup({"data": {"token": "t"}}, "data.token")  # "t"
    """
    current = payload
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
        if current is None:
            return None
    return current


def first_value(payload: Any, paths: Iterable[str]) -> Any:
    """Return the first non-empty value found along paths."""
    for path in paths:
        value = lookup(payload, path)
        if value not in (None, ""):
            return value
    return None


def is_bare_jwt(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(JWT_MARKER)


def resolve_token(payload: Any) -> Optional[TokenCandidate]:
    """
    Find a token in a decoded JSON response using the ranked field table.

    A bare string (either the whole payload or its "data" member) carrying
    the JWT header marker is accepted as the token itself.

    Args:
        payload: Decoded JSON body.

    Returns:
        A TokenCandidate, or None if no token was found.
    """
    if is_bare_jwt(payload):
        return TokenCandidate(payload, TokenSource.BARE_STRING)

    for path in TOKEN_FIELD_PATHS:
        value = lookup(payload, path)
        if isinstance(value, str) and value:
            return TokenCandidate(value, TokenSource.JSON_FIELD, path)

    data = lookup(payload, "data")
    if is_bare_jwt(data):
        return TokenCandidate(data, TokenSource.BARE_STRING, "data")

    return None


def token_from_url(url: Optional[str]) -> Optional[str]:
    """
    Read a recognized token query parameter from a URL.

    Also looks one level into URL-valued parameters, so an encoded
    "?next=https%3A%2F%2Fapp%2F%3Ftoken%3Dabc" still yields "abc".

    Args:
        url: Absolute or relative URL, including custom app schemes.

    Returns:
        The token string, or None.
    """
    if not url or "token" not in url:
        return None

    parts = urlsplit(url)
    for raw_query in (parts.query, parts.fragment):
        params = parse_qs(raw_query, keep_blank_values=False)
        for name in TOKEN_QUERY_PARAMS:
            values = params.get(name)
            if values and values[0]:
                return values[0]
        for values in params.values():
            for value in values:
                if "token=" in value and value != url:
                    nested = token_from_url(value)
                    if nested:
                        return nested
    return None


def candidate_from_url(url: Optional[str]) -> Optional[TokenCandidate]:
    """Wrap token_from_url's result as a query-parameter TokenCandidate."""
    token = token_from_url(url)
    if not token:
        return None
    return TokenCandidate(token, TokenSource.QUERY_PARAM, "token")


def resolve_grant_token(body: Any, location: Optional[str] = None) -> Optional[TokenCandidate]:
    """
    Extract a token from an access-grant response.

    Order: JSON body fields, then a redirect URL carried in the body,
    then the Location header.

    Args:
        body: Decoded JSON body, or None for non-JSON responses.
        location: Value of the Location header, if any.

    Returns:
        A TokenCandidate, or None.
    """
    if body is not None:
        candidate = resolve_token(body)
        if candidate:
            return candidate

        redirect_url = first_value(body, REDIRECT_FIELD_PATHS)
        token = token_from_url(redirect_url) if isinstance(redirect_url, str) else None
        if token:
            return TokenCandidate(token, TokenSource.REDIRECT_FIELD)

    token = token_from_url(location)
    if token:
        return TokenCandidate(token, TokenSource.REDIRECT_HEADER)

    return None


def extract_csrf_token(html: str) -> Optional[str]:
    """
    Best-effort anti-forgery token extraction from a login page.

    Args:
        html: Raw HTML of the provider login page.

    Returns:
        The token value, or None if the page carries none.
    """
    if not html:
        return None

    soup = BeautifulSoup(html, "html.parser")
    for name in CSRF_FIELD_NAMES:
        field = soup.find("input", attrs={"name": name})
        if field is not None and field.get("value"):
            return str(field["value"])

    meta = soup.find("meta", attrs={"name": "csrf-token"})
    if meta is not None and meta.get("content"):
        return str(meta["content"])

    for pattern in _CSRF_SCRIPT_PATTERNS:
        match = pattern.search(html)
        if match:
            return match.group(1)

    return None


def contains_failure_phrase(html: str) -> bool:
    """Return True if an HTML login response reports bad credentials."""
    lowered = (html or "").lower()
    return any(phrase in lowered for phrase in LOGIN_FAILURE_PHRASES)


def _as_epoch_seconds(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def normalize_exchange(body: Any) -> ExchangeResult:
    """
    Normalize a token-exchange or session-introspection body.

    Args:
        body: Decoded JSON body from the application API.

    Returns:
        ExchangeResult with whatever fields the body carried.
    """
    candidate = resolve_token(body)
    user = first_value(body, EXCHANGE_FIELD_PATHS["user"])
    setting_id = first_value(body, EXCHANGE_FIELD_PATHS["setting_id"])
    timezone = first_value(body, EXCHANGE_FIELD_PATHS["timezone"])
    team_member = first_value(body, EXCHANGE_FIELD_PATHS["team_member"])

    return ExchangeResult(
        token=candidate.token if candidate else None,
        user=user if isinstance(user, dict) else None,
        setting_id=str(setting_id) if setting_id else None,
        token_expires_at=_as_epoch_seconds(first_value(body, EXCHANGE_FIELD_PATHS["token_expires_at"])),
        timezone=str(timezone) if timezone else None,
        team_member=TeamMemberOverlay.from_payload(team_member) if isinstance(team_member, dict) else None,
    )
