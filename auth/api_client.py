"""
api_client.py

Thin requests wrapper for the application API.
Adds the bearer token and active business account header, applies the
per-call timeout, and returns every response in one normalized shape.
Part of Chatflow — Business Messaging Client.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import requests

import config
from auth.session_store import SessionStore

_log = logging.getLogger("chatflow.api")
if not _log.handlers:
    _handler = logging.FileHandler(config.LOGS_DIR / "api.log", encoding="utf-8")
    _handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-8s | %(message)s"))
    _log.addHandler(_handler)
    _log.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))

ENDPOINTS: dict[str, str] = {
    "sign_in": "auth/signin",
    "logout": "auth/logout",
    "session": "auth/verify-session",
    "token_auth": "auth/tauth",
    "team_member_login": "teammember/access/inbox",
    "team_member_logout": "teammember/logout",
    "access_business_account": "settings/access/business-account",
    "push_player_id": "settings/push-player-id",
}

# Auth endpoints are called before an account is selected
_NO_SETTING_ID_ENDPOINTS = {
    ENDPOINTS["sign_in"],
    ENDPOINTS["session"],
    ENDPOINTS["token_auth"],
    ENDPOINTS["access_business_account"],
}

SESSION_INVALID_KEYWORDS = ("session", "token", "unauthorized", "authentication", "login", "expired")


@dataclass
class ApiResponse:
    """
    Normalized API response.

    Attributes:
        status: "success" or "error".
        data: The body's "data" member.
        message: Server message, if any.
        status_code: HTTP status code (0 when no response arrived).
        raw: The full decoded body.
    """

    status: str
    data: Any = None
    message: Optional[str] = None
    status_code: int = 0
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "success"


class ApiClient:
    """
    Application API client bound to a SessionStore.

    Example:
        api = ApiClient(store)
        response = api.call(ENDPOINTS["session"], "GET")
        if response.ok:
            ...
    """

    def __init__(
        self,
        store: SessionStore,
        base_url: str = config.API_URL,
        timeout: float = config.API_TIMEOUT_SECONDS,
        http: Optional[requests.Session] = None,
    ):
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()

    def _headers(self, path: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        bearer = self.store.bearer_token()
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"

        endpoint = path.split("?", 1)[0]
        if not any(endpoint.startswith(excluded) for excluded in _NO_SETTING_ID_ENDPOINTS):
            setting_id = self.store.get_setting_id()
            if setting_id:
                headers["settingId"] = setting_id
        return headers

    def call(
        self,
        path: str,
        method: str = "GET",
        data: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> ApiResponse:
        """
        Perform one API call.

        Transport failures propagate as requests exceptions; HTTP errors
        come back as an ApiResponse with status "error".

        Args:
            path: Endpoint path relative to the API base URL.
            method: HTTP method.
            data: JSON body for non-GET requests.
            params: Query parameters.

        Returns:
            The normalized ApiResponse.
        """
        method = method.upper()
        url = f"{self.base_url}/{path.lstrip('/')}"
        _log.info("API %s | path=%s", method, path.split("?", 1)[0])

        response = self.http.request(
            method,
            url,
            headers=self._headers(path),
            json=data if method != "GET" else None,
            params=params,
            timeout=self.timeout,
        )

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        if response.status_code >= 400:
            message = body.get("message") or f"Request failed ({response.status_code})"
            _log.warning("API %s FAILED | path=%s | status=%s", method, path, response.status_code)
            if response.status_code == 401:
                self._handle_unauthorized(str(message))
            return ApiResponse(
                status="error",
                data=body.get("data", body),
                message=message,
                status_code=response.status_code,
                raw=body,
            )

        return ApiResponse(
            status=body.get("status") or "success",
            data=body.get("data"),
            message=body.get("message"),
            status_code=response.status_code,
            raw=body,
        )

    def _handle_unauthorized(self, message: str) -> None:
        lowered = message.lower()
        if any(keyword in lowered for keyword in SESSION_INVALID_KEYWORDS):
            self.store.handle_session_expired(message)
