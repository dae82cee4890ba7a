"""
session_store.py

Durable session persistence and local validity rules.
The single source of truth for "is the user logged in": only this module
writes the persisted session keys.
Part of Chatflow — Business Messaging Client.

Storage keys:
    @chatflow_token          application token (or the cookie-session marker)
    @chatflow_user           user profile (JSON)
    @chatflow_session        session metadata (JSON)
    settingId                active business account id
    @chatflow_settingId      legacy alias of settingId
    tokenExpiresAt           token expiry, epoch seconds as a string
    timezone                 account timezone
    shouldCheckSession       server verification throttle marker (JSON)
    @chatflow_team_member    team-member overlay (JSON)
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Optional

import config
from auth.models import Session, TeamMemberOverlay, VerificationMarker
from storage.kv import KeyValueStore

_log = logging.getLogger("chatflow.session")
if not _log.handlers:
    _handler = logging.FileHandler(config.LOGS_DIR / "session.log", encoding="utf-8")
    _handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-8s | %(message)s"))
    _log.addHandler(_handler)
    _log.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))

TOKEN_KEY = "@chatflow_token"
USER_KEY = "@chatflow_user"
SESSION_KEY = "@chatflow_session"
SETTING_ID_KEY = "settingId"
SETTING_ID_ALT_KEY = "@chatflow_settingId"
TOKEN_EXPIRES_AT_KEY = "tokenExpiresAt"
TIMEZONE_KEY = "timezone"
VERIFY_MARKER_KEY = "shouldCheckSession"
TEAM_MEMBER_KEY = "@chatflow_team_member"

# Written by other parts of the client against the active account
AUXILIARY_KEYS = ("selectedFolderId", "notifiedThresholds")

ALL_KEYS = (
    TOKEN_KEY,
    USER_KEY,
    SESSION_KEY,
    SETTING_ID_KEY,
    SETTING_ID_ALT_KEY,
    TOKEN_EXPIRES_AT_KEY,
    TIMEZONE_KEY,
    VERIFY_MARKER_KEY,
    TEAM_MEMBER_KEY,
) + AUXILIARY_KEYS

# Local stand-in token for sessions the server tracks by cookie only.
# It records "was authenticated" across restarts and is never sent anywhere.
COOKIE_SESSION_MARKER = "session_cookie_auth"

DEVICE_INFO = "mobile_app"


def _load_json(raw: Optional[str]) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


class SessionStore:
    """
    Persistent session store over a KeyValueStore.

    Writes complete before the call returns, so a read right after
    create_session() always observes the new session.

    Example:
        store = SessionStore(open_store())
        store.create_session(token="eyJ...", user={"name": "Ana"})
        if store.is_valid():
            ...
    """

    def __init__(
        self,
        kv: KeyValueStore,
        clock: Callable[[], float] = time.time,
        verify_interval_seconds: int = config.VERIFY_INTERVAL_SECONDS,
    ):
        self.kv = kv
        self.clock = clock
        self.verify_interval_seconds = verify_interval_seconds
        self.cached_session: Optional[Session] = None
        self._lock = threading.RLock()
        self._on_session_expired: Optional[Callable[[str], None]] = None

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_session(
        self,
        token: Optional[str] = None,
        user: Optional[dict[str, Any]] = None,
        setting_id: Optional[str] = None,
        token_expires_at: Optional[int] = None,
    ) -> Session:
        """
        Persist a new session from whichever fields are provided.

        A user without a token (cookie-based session) and a token without a
        user (awaiting hydration) are both accepted.

        Args:
            token: Application session token.
            user: User profile dict.
            setting_id: Active business account id.
            token_expires_at: Token expiry in epoch seconds.

        Returns:
            The created Session.

        Raises:
            ValueError: If neither token nor user is given.
        """
        if not token and not user:
            raise ValueError("A session needs a token or a user")

        now = self._now_ms()
        with self._lock:
            if token:
                self.kv.set(TOKEN_KEY, token)
            if user:
                self.kv.set(USER_KEY, json.dumps(user))
            if setting_id:
                self._write_setting_id(setting_id)
            if token_expires_at:
                self.kv.set(TOKEN_EXPIRES_AT_KEY, str(int(token_expires_at)))

            meta = {
                "loginTime": now,
                "lastActiveTime": now,
                "deviceInfo": DEVICE_INFO,
                "isValid": True,
            }
            self.kv.set(SESSION_KEY, json.dumps(meta))
            self.kv.set(VERIFY_MARKER_KEY, json.dumps(VerificationMarker(True, now).to_json_dict()))

            session = self._compose()
            self.cached_session = session

        _log.info(
            "SESSION CREATED | token=%s | user=%s | setting_id=%s",
            "yes" if token else "no",
            "yes" if user else "no",
            setting_id or "-",
        )
        return session

    def restore_session(self) -> Optional[Session]:
        """
        Rebuild the session from storage.

        Returns:
            The stored Session, or None when neither token nor user is stored.
        """
        with self._lock:
            session = self._compose()
            self.cached_session = session
        if session is None:
            _log.info("SESSION RESTORE | nothing stored")
        return session

    def update_session(
        self,
        token: Optional[str] = None,
        user: Optional[dict[str, Any]] = None,
        setting_id: Optional[str] = None,
        token_expires_at: Optional[int] = None,
        timezone: Optional[str] = None,
        is_valid: Optional[bool] = None,
    ) -> Optional[Session]:
        """
        Merge the given fields into the stored session.

        Fields passed as None are left untouched. Refreshes lastActiveTime.

        Returns:
            The merged Session, or None if nothing identifies a session yet.
        """
        with self._lock:
            if token:
                self.kv.set(TOKEN_KEY, token)
            if user:
                self.kv.set(USER_KEY, json.dumps(user))
            if setting_id:
                self._write_setting_id(setting_id)
            if token_expires_at:
                self.kv.set(TOKEN_EXPIRES_AT_KEY, str(int(token_expires_at)))
            if timezone:
                self.kv.set(TIMEZONE_KEY, timezone)

            meta = self._read_meta()
            if meta is not None:
                meta["lastActiveTime"] = self._now_ms()
                if is_valid is not None:
                    meta["isValid"] = is_valid
                    if is_valid:
                        meta.pop("expiredReason", None)
                        meta.pop("expiredAt", None)
                self.kv.set(SESSION_KEY, json.dumps(meta))

            session = self._compose()
            self.cached_session = session

        _log.info("SESSION UPDATED")
        return session

    def destroy_session(self) -> None:
        """
        Remove every persisted session key. Safe to call repeatedly.
        """
        with self._lock:
            try:
                self.kv.multi_remove(ALL_KEYS)
            except Exception as exc:
                _log.error("SESSION DESTROY | storage error: %s", exc)
            finally:
                self.cached_session = None
        _log.info("SESSION DESTROYED")

    # ------------------------------------------------------------------
    # Validity & verification throttle
    # ------------------------------------------------------------------

    def is_valid(self) -> bool:
        """
        Local validity check.

        Returns False without a token. A token past its tokenExpiresAt
        destroys the session and returns False. The server stays
        authoritative; this only catches what is already known to be stale.
        """
        with self._lock:
            token = self.kv.get(TOKEN_KEY)
            if not token:
                return False

            expires_at = self._read_expires_at()
            if expires_at is not None and self.clock() > expires_at:
                _log.info("SESSION EXPIRED LOCALLY | expires_at=%s", expires_at)
                self.destroy_session()
                return False

            meta = self._read_meta() or {}
            return meta.get("isValid", True) is not False

    def should_verify_with_server(self) -> bool:
        """Return True if the last server verification is older than the interval."""
        marker = _load_json(self.kv.get(VERIFY_MARKER_KEY))
        if not isinstance(marker, dict):
            return True
        timestamp = marker.get("timestamp")
        if not isinstance(timestamp, (int, float)) or not timestamp:
            return True
        return (self._now_ms() - timestamp) > self.verify_interval_seconds * 1000

    def mark_session_verified(self) -> None:
        """Write a fresh verification throttle marker."""
        marker = VerificationMarker(True, self._now_ms())
        self.kv.set(VERIFY_MARKER_KEY, json.dumps(marker.to_json_dict()))

    def clear_verification_marker(self) -> None:
        self.kv.remove(VERIFY_MARKER_KEY)

    # ------------------------------------------------------------------
    # Server-reported expiry
    # ------------------------------------------------------------------

    def on_session_expired(self, callback: Optional[Callable[[str], None]]) -> None:
        """Register the callback invoked by handle_session_expired()."""
        self._on_session_expired = callback

    def handle_session_expired(self, reason: str = "unknown") -> None:
        """
        Mark the session invalid after the server rejected it.

        Storage is kept so the UI can decide between re-login and logout.

        Args:
            reason: Short description of why the server rejected the session.
        """
        _log.warning("SESSION REJECTED BY SERVER | reason=%s", reason)
        with self._lock:
            meta = self._read_meta()
            if meta is not None:
                meta["isValid"] = False
                meta["expiredReason"] = reason
                meta["expiredAt"] = self._now_ms()
                self.kv.set(SESSION_KEY, json.dumps(meta))
                if self.cached_session is not None:
                    self.cached_session.is_valid = False

        if self._on_session_expired is not None:
            self._on_session_expired(reason)

    # ------------------------------------------------------------------
    # Team-member overlay
    # ------------------------------------------------------------------

    def save_team_member(self, overlay: TeamMemberOverlay) -> None:
        self.kv.set(TEAM_MEMBER_KEY, json.dumps(overlay.to_json_dict()))
        _log.info("TEAM MEMBER SAVED | role=%s", overlay.role or "-")

    def clear_team_member(self) -> None:
        self.kv.remove(TEAM_MEMBER_KEY)
        _log.info("TEAM MEMBER CLEARED")

    def get_team_member(self) -> TeamMemberOverlay:
        payload = _load_json(self.kv.get(TEAM_MEMBER_KEY))
        return TeamMemberOverlay.from_payload(payload if isinstance(payload, dict) else None)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_token(self) -> Optional[str]:
        if self.cached_session is not None and self.cached_session.token:
            return self.cached_session.token
        return self.kv.get(TOKEN_KEY)

    def bearer_token(self) -> Optional[str]:
        """
        Token to send in an Authorization header.

        The cookie-session marker is local state only and yields None.
        """
        token = self.get_token()
        if not token or token == COOKIE_SESSION_MARKER:
            return None
        return token

    def get_user(self) -> Optional[dict[str, Any]]:
        if self.cached_session is not None and self.cached_session.user:
            return self.cached_session.user
        user = _load_json(self.kv.get(USER_KEY))
        return user if isinstance(user, dict) else None

    def get_setting_id(self) -> Optional[str]:
        if self.cached_session is not None and self.cached_session.setting_id:
            return self.cached_session.setting_id
        return self.kv.get(SETTING_ID_KEY)

    def get_timezone(self) -> Optional[str]:
        return self.kv.get(TIMEZONE_KEY)

    def clear_setting_id(self) -> None:
        """Forget the active business account and its token expiry."""
        with self._lock:
            self.kv.multi_remove((SETTING_ID_KEY, SETTING_ID_ALT_KEY, TOKEN_EXPIRES_AT_KEY))
            if self.cached_session is not None:
                self.cached_session.setting_id = None
                self.cached_session.token_expires_at = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _write_setting_id(self, setting_id: str) -> None:
        self.kv.set(SETTING_ID_KEY, setting_id)
        self.kv.set(SETTING_ID_ALT_KEY, setting_id)

    def _read_meta(self) -> Optional[dict[str, Any]]:
        meta = _load_json(self.kv.get(SESSION_KEY))
        return meta if isinstance(meta, dict) else None

    def _read_expires_at(self) -> Optional[int]:
        raw = self.kv.get(TOKEN_EXPIRES_AT_KEY)
        if not raw:
            return None
        try:
            return int(float(raw))
        except ValueError:
            return None

    def _compose(self) -> Optional[Session]:
        token = self.kv.get(TOKEN_KEY)
        user = _load_json(self.kv.get(USER_KEY))
        if not isinstance(user, dict):
            user = None

        if not token and not user:
            return None

        meta = self._read_meta() or {}
        return Session(
            token=token,
            user=user,
            setting_id=self.kv.get(SETTING_ID_KEY),
            token_expires_at=self._read_expires_at(),
            login_time=meta.get("loginTime"),
            last_active_time=meta.get("lastActiveTime"),
            is_valid=meta.get("isValid", True) is not False,
        )
