"""
errors.py

Error kinds surfaced by session and authentication orchestration.
Every failure that reaches the UI is an AuthError carrying a kind and a
human-readable message; raw transport exceptions are normalized here.
Part of Chatflow — Business Messaging Client.
"""

from __future__ import annotations

from enum import Enum, unique

import requests


@unique
class AuthErrorKind(Enum):
    """
    Every error category the UI layer can receive.
    """

    INVALID_CREDENTIALS = "InvalidCredentials"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    TOKEN_NOT_FOUND = "TokenNotFound"
    FORM_NOT_FOUND = "FormNotFound"
    TIMEOUT = "Timeout"
    SESSION_EXPIRED = "SessionExpired"
    LOGOUT_PARTIAL_FAILURE = "LogoutPartialFailure"
    LOGIN_IN_PROGRESS = "LoginInProgress"
    EXCHANGE_FAILED = "ExchangeFailed"


class AuthError(Exception):
    """
    Normalized authentication failure.

    Attributes:
        kind: The AuthErrorKind category.
        message: Message safe to show to the user.

    Example:
        raise AuthError(AuthErrorKind.TOKEN_NOT_FOUND, "No token returned")
    """

    def __init__(self, kind: AuthErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"AuthError({self.kind.value}, {self.message!r})"


def normalize_error(exc: BaseException) -> AuthError:
    """
    Map any exception to an AuthError.

    Args:
        exc: The exception raised somewhere below the orchestrator.

    Returns:
        An AuthError; AuthError instances are returned unchanged.
    """
    if isinstance(exc, AuthError):
        return exc

    if isinstance(exc, requests.Timeout):
        return AuthError(AuthErrorKind.TIMEOUT, "Request timed out. Please try again.")

    if isinstance(exc, requests.ConnectionError):
        return AuthError(
            AuthErrorKind.PROVIDER_UNAVAILABLE,
            "Network error. Please check your internet connection.",
        )

    if isinstance(exc, requests.RequestException):
        return AuthError(AuthErrorKind.PROVIDER_UNAVAILABLE, "The server could not be reached.")

    return AuthError(AuthErrorKind.PROVIDER_UNAVAILABLE, str(exc) or "Login failed")
