"""
push.py

Push-notification device registration as an injected capability.
PushRegistrar does nothing, so code paths never check whether a push SDK
is present; BackendPushRegistrar links the device player id to the account.
Part of Chatflow — Business Messaging Client.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

import config

if TYPE_CHECKING:
    from auth.api_client import ApiClient

_log = logging.getLogger("chatflow.push")
if not _log.handlers:
    _handler = logging.FileHandler(config.LOGS_DIR / "push.log", encoding="utf-8")
    _handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-8s | %(message)s"))
    _log.addHandler(_handler)
    _log.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))


class PushRegistrar:
    """No-op registrar used when push notifications are unavailable."""

    def register(self, user_id: str, setting_id: str) -> None:
        return None

    def unregister(self) -> None:
        return None


class BackendPushRegistrar(PushRegistrar):
    """
    Registers this device's push player id with the application API.

    Example:
        push = BackendPushRegistrar(api, player_id="a1b2")
        push.register(user_id="u1", setting_id="s1")
    """

    def __init__(self, api: "ApiClient", player_id: str):
        self.api = api
        self.player_id = player_id

    def register(self, user_id: str, setting_id: str) -> None:
        from auth.api_client import ENDPOINTS

        response = self.api.call(
            ENDPOINTS["push_player_id"],
            "POST",
            {"playerId": self.player_id, "externalUserId": user_id, "settingId": setting_id},
        )
        if response.ok:
            _log.info("PUSH REGISTERED | setting_id=%s", setting_id)
        else:
            _log.warning("PUSH REGISTER FAILED | status=%s", response.status_code)

    def unregister(self) -> None:
        from auth.api_client import ENDPOINTS

        response = self.api.call(ENDPOINTS["push_player_id"], "DELETE", {"playerId": self.player_id})
        if response.ok:
            _log.info("PUSH UNREGISTERED")
        else:
            _log.warning("PUSH UNREGISTER FAILED | status=%s", response.status_code)


def build_push_registrar(api: "ApiClient", player_id: Optional[str] = None) -> PushRegistrar:
    """Return the backend registrar when push is configured, else the no-op."""
    player_id = player_id or config.PUSH_PLAYER_ID
    if config.PUSH_ENABLED and player_id:
        return BackendPushRegistrar(api, player_id)
    return PushRegistrar()
