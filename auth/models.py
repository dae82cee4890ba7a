"""
models.py

Data types shared by the session store, the handshake orchestrator and the
browser driver.
Part of Chatflow — Business Messaging Client.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, unique
from typing import Any, Optional


@dataclass
class Session:
    """
    Durable proof of authentication.

    Attributes:
        token: Application session token, or the local cookie-session marker.
        user: User profile as returned by the server.
        setting_id: Active business account id.
        token_expires_at: Token expiry in epoch seconds.
        login_time: Epoch milliseconds of session creation.
        last_active_time: Epoch milliseconds of the last mutation.
        is_valid: False once the server reported the session expired.
    """

    token: Optional[str] = None
    user: Optional[dict[str, Any]] = None
    setting_id: Optional[str] = None
    token_expires_at: Optional[int] = None
    login_time: Optional[int] = None
    last_active_time: Optional[int] = None
    is_valid: bool = True


@dataclass
class TeamMemberOverlay:
    """Delegated-access record layered over the primary session."""

    logged_in: bool = False
    name: str = ""
    email: str = ""
    role: str = ""

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "loggedIn": self.logged_in,
            "name": self.name,
            "email": self.email,
            "role": self.role,
        }

    @classmethod
    def from_payload(cls, payload: Optional[dict[str, Any]]) -> "TeamMemberOverlay":
        payload = payload or {}
        return cls(
            logged_in=bool(payload.get("loggedIn") or payload.get("logged_in")),
            name=str(payload.get("name") or ""),
            email=str(payload.get("email") or ""),
            role=str(payload.get("role") or ""),
        )


@dataclass(frozen=True)
class Credentials:
    """
    Email and password for one handshake. Never persisted.
    """

    email: str
    password: str = field(repr=False)

    @property
    def masked_email(self) -> str:
        name, _, domain = self.email.partition("@")
        if not domain:
            return "***"
        return f"{name[:1]}***@{domain}"


@unique
class AuthPhase(Enum):
    """Progress phases of a login attempt."""

    CONNECTING = "connecting"
    PROVIDER_INTERACTION = "provider_interaction"
    VERIFYING = "verifying"
    COMPLETING = "completing"
    DONE = "done"
    FAILED = "failed"


PHASE_LABELS: dict[AuthPhase, str] = {
    AuthPhase.CONNECTING: "Connecting...",
    AuthPhase.PROVIDER_INTERACTION: "Signing in...",
    AuthPhase.VERIFYING: "Verifying your account...",
    AuthPhase.COMPLETING: "Setting up your session...",
    AuthPhase.DONE: "Success!",
    AuthPhase.FAILED: "Sign in failed",
}


@unique
class TokenSource(Enum):
    """Where a token candidate was found."""

    QUERY_PARAM = "query_param"
    JSON_FIELD = "json_field"
    REDIRECT_FIELD = "redirect_field"
    REDIRECT_HEADER = "redirect_header"
    BARE_STRING = "bare_string"


@dataclass(frozen=True)
class TokenCandidate:
    """A token and where it came from."""

    token: str
    source: TokenSource
    path: str = ""


@dataclass(frozen=True)
class VerificationMarker:
    """Throttle marker gating server re-verification."""

    status: bool
    timestamp: int  # epoch milliseconds

    def to_json_dict(self) -> dict[str, Any]:
        return {"status": self.status, "timestamp": self.timestamp}


@dataclass
class ExchangeResult:
    """Normalized token-exchange or session-introspection response."""

    token: Optional[str] = None
    user: Optional[dict[str, Any]] = None
    setting_id: Optional[str] = None
    token_expires_at: Optional[int] = None
    timezone: Optional[str] = None
    team_member: Optional[TeamMemberOverlay] = None
