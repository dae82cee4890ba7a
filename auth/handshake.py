"""
handshake.py

Auth handshake orchestration: turns any supported credential form into a
persisted Session, verifies sessions with the server, and logs out.
Part of Chatflow — Business Messaging Client.

Credential forms:
    sign_in_direct        first-party email + password
    sign_in_provider      identity-provider email + password (fallback chain)
    sign_in_oauth         native OAuth identity token
    token_auth            provider token obtained out-of-band
    login_team_member     delegated team-member grant

Only AuthError leaves this module. Every session write goes through the
SessionStore.
"""

from __future__ import annotations

import functools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

import requests

import config
from auth.api_client import ENDPOINTS, ApiClient, ApiResponse
from auth.errors import AuthError, AuthErrorKind, normalize_error
from auth.models import Credentials, ExchangeResult, Session
from auth.resolver import (
    contains_failure_phrase,
    extract_csrf_token,
    normalize_exchange,
    resolve_grant_token,
    resolve_token,
)
from auth.session_store import COOKIE_SESSION_MARKER, SessionStore
from services.cache import ContentCache
from services.push import PushRegistrar

_log = logging.getLogger("chatflow.auth")
if not _log.handlers:
    _handler = logging.FileHandler(config.LOGS_DIR / "auth.log", encoding="utf-8")
    _handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-8s | %(message)s"))
    _log.addHandler(_handler)
    _log.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))

PROVIDER_LOGIN_PAGE = "/login"
PROVIDER_LOGIN = "/login"
PROVIDER_ACCESS = "/access"
PROVIDER_VERIFY_SESSION = "/verify/session"
PROVIDER_OAUTH_VERIFY = "/google/verify"

SESSION_EXPIRED_MESSAGE = "Your session has expired. Please sign in again."


@dataclass
class AttemptCallbacks:
    """
    UI callbacks for one login attempt.

    Exactly one of on_success / on_error fires per attempt. on_close is
    reserved for user cancellation and is fired by the caller that owns
    the dismissable surface.
    """

    on_success: Callable[[], None]
    on_error: Callable[[AuthErrorKind, str], None]
    on_close: Optional[Callable[[], None]] = None


def _normalized(method: Callable) -> Callable:
    """Convert anything escaping an orchestrator method into an AuthError."""

    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except AuthError:
            raise
        except Exception as exc:
            error = normalize_error(exc)
            _log.error("%s FAILED | %s: %s", method.__name__.upper(), type(exc).__name__, exc)
            raise error from exc

    return wrapper


def _decode_body(response: requests.Response) -> tuple[bool, Any]:
    """
    Decode a provider response.

    Returns:
        (True, decoded JSON) for JSON bodies, else (False, response text).
    """
    content_type = response.headers.get("Content-Type", "")
    text = response.text or ""
    if "json" in content_type or text.lstrip().startswith(("{", "[")):
        try:
            return True, response.json()
        except ValueError:
            pass
    return False, text


class AuthOrchestrator:
    """
    Produces sessions from credentials and keeps them verified.

    Example:
        store = SessionStore(open_store())
        api = ApiClient(store)
        auth = AuthOrchestrator(store, api)
        session = auth.sign_in_provider(Credentials("ana@example.com", "secret"))
    """

    def __init__(
        self,
        store: SessionStore,
        api: Optional[ApiClient] = None,
        push: Optional[PushRegistrar] = None,
        cache: Optional[ContentCache] = None,
        http_factory: Callable[[], requests.Session] = requests.Session,
        accounts_url: str = config.ACCOUNTS_URL,
        accounts_backend_url: str = config.ACCOUNTS_BACKEND_URL,
        project: str = config.PROVIDER_PROJECT,
        timeout: float = config.API_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.api = api or ApiClient(store)
        self.push = push or PushRegistrar()
        self.cache = cache or ContentCache()
        self.http_factory = http_factory
        self.accounts_url = accounts_url.rstrip("/")
        self.accounts_backend_url = accounts_backend_url.rstrip("/")
        self.project = project
        self.timeout = timeout
        self._attempt_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Single-flight
    # ------------------------------------------------------------------

    @contextmanager
    def attempt(self) -> Iterator[None]:
        """
        Hold the login slot for the duration of one attempt.

        Raises:
            AuthError: LOGIN_IN_PROGRESS if another attempt holds the slot.
        """
        if not self._attempt_lock.acquire(blocking=False):
            _log.warning("LOGIN REJECTED | another attempt is in progress")
            raise AuthError(AuthErrorKind.LOGIN_IN_PROGRESS, "A sign in is already in progress.")
        try:
            yield
        finally:
            self._attempt_lock.release()

    @property
    def attempt_in_progress(self) -> bool:
        return self._attempt_lock.locked()

    def run_attempt(self, fn: Callable[..., Any], callbacks: AttemptCallbacks, *args, **kwargs) -> Any:
        """
        Run one attempt and report its outcome through the callbacks.

        Args:
            fn: Orchestrator operation, e.g. self.sign_in_provider.
            callbacks: Receives exactly one of on_success / on_error.

        Returns:
            fn's result, or None when the attempt failed.
        """
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            error = normalize_error(exc)
            callbacks.on_error(error.kind, error.message)
            return None
        callbacks.on_success()
        return result

    # ------------------------------------------------------------------
    # Credential forms
    # ------------------------------------------------------------------

    @_normalized
    def sign_in_direct(self, credentials: Credentials) -> Session:
        """
        First-party email + password sign in.

        The sign-in response carries the application token itself. The user
        profile is hydrated afterwards through check_session(); a failure
        there does not fail the sign in.

        Raises:
            AuthError: INVALID_CREDENTIALS, TOKEN_NOT_FOUND, or a transport kind.
        """
        with self.attempt():
            _log.info("SIGN IN DIRECT | email=%s", credentials.masked_email)
            response = self.api.call(
                ENDPOINTS["sign_in"],
                "POST",
                {"email": credentials.email, "password": credentials.password},
            )
            if not response.ok:
                raise AuthError(
                    AuthErrorKind.INVALID_CREDENTIALS,
                    response.message or "Invalid email or password.",
                )

            result = normalize_exchange(response.raw)
            if not result.token:
                raise AuthError(AuthErrorKind.TOKEN_NOT_FOUND, "Access token not found in response.")

            session = self._persist_exchange(result)
            if not result.user:
                session = self._hydrate() or session
            _log.info("SIGN IN DIRECT | success")
            return session

    @_normalized
    def sign_in_provider(self, credentials: Credentials) -> Session:
        """
        Identity-provider email + password sign in.

        Walks the fallback chain until a provider token appears: login page,
        login POST, access-grant POST, access-grant GET, provider session
        verification. Failures inside a step are logged and the chain moves
        on; only exhausting the chain is an error. The token is then
        exchanged for an application session.

        Args:
            credentials: Provider email and password.

        Returns:
            The created Session.

        Raises:
            AuthError: INVALID_CREDENTIALS when the provider rejects the
            credentials, TOKEN_NOT_FOUND when the chain is exhausted,
            PROVIDER_UNAVAILABLE when the provider never answered.
        """
        with self.attempt():
            _log.info("SIGN IN PROVIDER | email=%s", credentials.masked_email)
            http = self._provider_session()
            try:
                token, reached = self._acquire_provider_token(http, credentials)
            finally:
                http.close()

            if not token:
                if not reached:
                    raise AuthError(
                        AuthErrorKind.PROVIDER_UNAVAILABLE,
                        "Unable to reach the sign in server. Please check your internet connection.",
                    )
                raise AuthError(
                    AuthErrorKind.TOKEN_NOT_FOUND,
                    "Login succeeded but no access token was returned. Please try again.",
                )

            session = self._exchange(token)
            _log.info("SIGN IN PROVIDER | success")
            return session

    @_normalized
    def sign_in_oauth(self, id_token: str, access_token: Optional[str] = None) -> Session:
        """
        Native OAuth sign in: verify the identity token with the provider,
        then exchange the provider token for an application session.

        Raises:
            AuthError: INVALID_CREDENTIALS if the provider rejects the
            identity token, TOKEN_NOT_FOUND if it returns no token.
        """
        with self.attempt():
            _log.info("SIGN IN OAUTH")
            http = self._provider_session()
            try:
                response = http.post(
                    self.accounts_backend_url + PROVIDER_OAUTH_VERIFY,
                    json={
                        "token": id_token,
                        "idToken": id_token,
                        "accessToken": access_token,
                        "project": self.project,
                    },
                    timeout=self.timeout,
                )
            finally:
                http.close()

            is_json, body = _decode_body(response)
            rejected = (
                not is_json
                or response.status_code >= 400
                or (isinstance(body, dict) and body.get("status") == "error")
            )
            if rejected:
                message = body.get("message") if isinstance(body, dict) else None
                raise AuthError(
                    AuthErrorKind.INVALID_CREDENTIALS,
                    message or "Google sign in failed. Please try again.",
                )

            candidate = resolve_token(body)
            if candidate is None:
                raise AuthError(AuthErrorKind.TOKEN_NOT_FOUND, "Access token not found in response.")

            return self._exchange(candidate.token)

    @_normalized
    def token_auth(self, token: str, fields: Optional[dict[str, Any]] = None) -> Session:
        """
        Exchange a provider token obtained out-of-band.

        Args:
            token: Provider token.
            fields: Extra query fields that accompanied the token.
        """
        with self.attempt():
            return self._exchange(token, fields)

    @_normalized
    def exchange_captured_token(self, token: str, fields: Optional[dict[str, Any]] = None) -> Session:
        """
        Exchange a token captured by the browser driver.

        Called from inside an attempt() block held by the browser login
        runner, so it does not take the login slot itself.
        """
        return self._exchange(token, fields)

    @_normalized
    def login_team_member(self, grant: dict[str, Any]) -> Session:
        """
        Enter a business account as a delegated team member.

        Args:
            grant: Grant payload from the team-member invitation, e.g.
                {"settingId": "...", "teamMemberId": "..."}.

        Raises:
            AuthError: EXCHANGE_FAILED if the grant is rejected.
        """
        with self.attempt():
            _log.info("TEAM MEMBER LOGIN | setting_id=%s", grant.get("settingId") or "-")
            response = self.api.call(ENDPOINTS["team_member_login"], "POST", grant)
            if not response.ok:
                raise AuthError(
                    AuthErrorKind.EXCHANGE_FAILED,
                    response.message or "Team member login failed.",
                )

            self.cache.clear_all()
            setting_id = grant.get("settingId") or normalize_exchange(response.raw).setting_id
            if setting_id:
                self.store.update_session(setting_id=str(setting_id))

            self.check_session()
            session = self.store.restore_session()
            if session is None:
                raise AuthError(AuthErrorKind.TOKEN_NOT_FOUND, "Team member session could not be established.")
            return session

    # ------------------------------------------------------------------
    # Session verification & teardown
    # ------------------------------------------------------------------

    @_normalized
    def check_session(self) -> ExchangeResult:
        """
        Verify the session with the server and persist what it reports.

        A cookie-tracked session with no local token is recorded with the
        local cookie-session marker so a restart still sees a session.

        Returns:
            The normalized server response.

        Raises:
            AuthError: SESSION_EXPIRED if the server rejects the session or
            reports an expiry already in the past.
        """
        response = self.api.call(ENDPOINTS["session"], "GET")
        if not response.ok:
            self.store.clear_setting_id()
            self.store.clear_verification_marker()
            if response.status_code >= 500:
                raise AuthError(
                    AuthErrorKind.PROVIDER_UNAVAILABLE,
                    response.message or "The server is unavailable. Please try again later.",
                )
            raise AuthError(AuthErrorKind.SESSION_EXPIRED, response.message or SESSION_EXPIRED_MESSAGE)

        result = normalize_exchange(response.raw)
        if result.user:
            if self.store.get_token():
                self.store.update_session(
                    user=result.user,
                    setting_id=result.setting_id,
                    token_expires_at=result.token_expires_at,
                    timezone=result.timezone,
                    is_valid=True,
                )
            else:
                _log.info("CHECK SESSION | cookie session, storing local marker")
                self.store.create_session(
                    token=COOKIE_SESSION_MARKER,
                    user=result.user,
                    setting_id=result.setting_id,
                    token_expires_at=result.token_expires_at,
                )
                if result.timezone:
                    self.store.update_session(timezone=result.timezone)

        if not result.setting_id:
            self.store.clear_setting_id()

        # The overlay is only touched when the server reports it
        if result.team_member is not None:
            if result.team_member.logged_in:
                self.store.save_team_member(result.team_member)
            else:
                self.store.clear_team_member()

        self.store.mark_session_verified()
        self._register_push(result)

        if result.token_expires_at and self.store.get_token() and not self.store.is_valid():
            raise AuthError(AuthErrorKind.SESSION_EXPIRED, SESSION_EXPIRED_MESSAGE)

        _log.info("CHECK SESSION | ok | setting_id=%s", result.setting_id or "-")
        return result

    @_normalized
    def restore(self) -> Optional[Session]:
        """
        App-start restore.

        Re-verifies with the server when the throttle interval has passed.
        A server that cannot be reached keeps the local session; a server
        that rejects it does not.

        Returns:
            The restored Session, or None if the user must sign in.
        """
        session = self.store.restore_session()
        if session is None:
            return None

        if self.store.should_verify_with_server():
            try:
                self.check_session()
            except AuthError as exc:
                if exc.kind is AuthErrorKind.SESSION_EXPIRED:
                    _log.info("RESTORE | server rejected session")
                    return None
                _log.warning("RESTORE | verification skipped: %s", exc.message)

        if self.store.get_token() and not self.store.is_valid():
            return None
        return self.store.restore_session()

    def logout(self) -> None:
        """
        Log out.

        Push unregistration and remote logout are best-effort. Local session
        keys and the content cache are cleared whatever the remote outcome.

        Raises:
            AuthError: LOGOUT_PARTIAL_FAILURE if the remote logout failed;
            local state is already cleared when it is raised.
        """
        remote_error: Optional[str] = None
        try:
            try:
                self.push.unregister()
            except Exception as exc:
                _log.warning("LOGOUT | push unregister failed: %s", exc)

            try:
                response = self.api.call(ENDPOINTS["logout"], "GET")
                if not response.ok:
                    remote_error = response.message or f"Logout failed ({response.status_code})"
            except Exception as exc:
                remote_error = normalize_error(exc).message
        finally:
            self.store.destroy_session()
            try:
                self.cache.clear_all()
            except OSError as exc:
                _log.error("LOGOUT | cache clear failed: %s", exc)

        if remote_error:
            _log.warning("LOGOUT | remote failed, local state cleared: %s", remote_error)
            raise AuthError(AuthErrorKind.LOGOUT_PARTIAL_FAILURE, remote_error)
        _log.info("LOGOUT | ok")

    @_normalized
    def logout_team_member(self) -> None:
        """
        Leave delegated team-member access and return to the owner account.

        Raises:
            AuthError: PROVIDER_UNAVAILABLE if the server refuses.
        """
        response = self.api.call(ENDPOINTS["team_member_logout"], "GET")
        if not response.ok:
            raise AuthError(
                AuthErrorKind.PROVIDER_UNAVAILABLE,
                response.message or "Team member logout failed.",
            )
        self.cache.clear_all()
        self.store.clear_team_member()
        _log.info("TEAM MEMBER LOGOUT | ok")

    @_normalized
    def access_business_account(self, setting_id: str) -> ApiResponse:
        """
        Switch the active business account.

        Args:
            setting_id: Id of the business account to activate.

        Returns:
            The server response.
        """
        response = self.api.call(f"{ENDPOINTS['access_business_account']}/{setting_id}", "GET")
        if not response.ok:
            raise AuthError(
                AuthErrorKind.PROVIDER_UNAVAILABLE,
                response.message or "Unable to access this business account.",
            )
        self.cache.clear_all()
        self.store.update_session(setting_id=setting_id)
        _log.info("ACCOUNT SWITCHED | setting_id=%s", setting_id)
        return response

    # ------------------------------------------------------------------
    # Provider fallback chain
    # ------------------------------------------------------------------

    def _provider_session(self) -> requests.Session:
        http = self.http_factory()
        http.headers.update({"User-Agent": config.USER_AGENT})
        return http

    def _acquire_provider_token(
        self, http: requests.Session, credentials: Credentials
    ) -> tuple[Optional[str], bool]:
        """
        Run the provider steps in order, stopping at the first token.

        Returns:
            (token or None, whether any step got an HTTP response).
        """
        reached = False

        csrf, answered = self._fetch_login_page(http)
        reached = reached or answered

        steps = (
            ("login", lambda: self._post_login(http, credentials, csrf)),
            ("access_post", lambda: self._request_access(http, "POST")),
            ("access_get", lambda: self._request_access(http, "GET")),
            ("verify_session", lambda: self._verify_provider_session(http)),
        )
        for name, step in steps:
            try:
                token = step()
            except requests.RequestException as exc:
                _log.warning("PROVIDER STEP %s | %s: %s", name, type(exc).__name__, exc)
                continue
            reached = True
            if token:
                _log.info("PROVIDER TOKEN FOUND | step=%s", name)
                return token, reached
            _log.info("PROVIDER STEP %s | no token", name)

        return None, reached

    def _fetch_login_page(self, http: requests.Session) -> tuple[Optional[str], bool]:
        try:
            response = http.get(self.accounts_url + PROVIDER_LOGIN_PAGE, timeout=self.timeout)
        except requests.RequestException as exc:
            _log.warning("PROVIDER LOGIN PAGE | %s: %s", type(exc).__name__, exc)
            return None, False
        csrf = extract_csrf_token(response.text or "")
        _log.info("PROVIDER LOGIN PAGE | status=%s | csrf=%s", response.status_code, "yes" if csrf else "no")
        return csrf, True

    def _post_login(
        self, http: requests.Session, credentials: Credentials, csrf: Optional[str]
    ) -> Optional[str]:
        form = {
            "email": credentials.email,
            "password": credentials.password,
            "project": self.project,
        }
        if csrf:
            form["_token"] = csrf

        response = http.post(
            self.accounts_backend_url + PROVIDER_LOGIN,
            data=form,
            headers={
                "Accept": "application/json, text/html, */*",
                "Origin": self.accounts_url,
                "Referer": self.accounts_url + PROVIDER_LOGIN_PAGE,
            },
            allow_redirects=False,
            timeout=self.timeout,
        )

        if response.is_redirect:
            return None

        is_json, body = _decode_body(response)
        if is_json:
            message = body.get("message") if isinstance(body, dict) else None
            if isinstance(body, dict) and (
                body.get("status") == "error"
                or (response.status_code in (401, 422) and contains_failure_phrase(str(message)))
            ):
                raise AuthError(
                    AuthErrorKind.INVALID_CREDENTIALS,
                    message or "Invalid email or password.",
                )
            candidate = resolve_token(body)
            return candidate.token if candidate else None

        if contains_failure_phrase(body):
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, "Invalid email or password.")
        return None

    def _request_access(self, http: requests.Session, method: str) -> Optional[str]:
        url = self.accounts_backend_url + PROVIDER_ACCESS
        if method == "POST":
            response = http.post(
                url, json={"project": self.project}, allow_redirects=False, timeout=self.timeout
            )
        else:
            response = http.get(
                url, params={"project": self.project}, allow_redirects=False, timeout=self.timeout
            )

        is_json, body = _decode_body(response)
        candidate = resolve_grant_token(body if is_json else None, response.headers.get("Location"))
        return candidate.token if candidate else None

    def _verify_provider_session(self, http: requests.Session) -> Optional[str]:
        response = http.get(self.accounts_backend_url + PROVIDER_VERIFY_SESSION, timeout=self.timeout)
        is_json, body = _decode_body(response)
        if not is_json:
            return None
        candidate = resolve_token(body)
        return candidate.token if candidate else None

    # ------------------------------------------------------------------
    # Exchange & persistence
    # ------------------------------------------------------------------

    def _exchange(self, token: str, fields: Optional[dict[str, Any]] = None) -> Session:
        params = {key: value for key, value in (fields or {}).items() if key != "token" and value}
        params.update({"token": token, "s": self.project})

        response = self.api.call(ENDPOINTS["token_auth"], "GET", params=params)
        if not response.ok:
            raise AuthError(
                AuthErrorKind.EXCHANGE_FAILED,
                response.message or "Authentication failed. Please try again.",
            )

        result = normalize_exchange(response.raw)
        if result.token or result.user:
            session = self._persist_exchange(result)
            if result.user:
                return session
            return self._hydrate() or session

        # Cookie-only exchange: the server set its session cookie and
        # returned no body fields worth persisting
        session = self._hydrate()
        if session is None:
            raise AuthError(AuthErrorKind.TOKEN_NOT_FOUND, "Authentication failed. Please try again.")
        return session

    def _persist_exchange(self, result: ExchangeResult) -> Session:
        session = self.store.create_session(
            token=result.token,
            user=result.user,
            setting_id=result.setting_id,
            token_expires_at=result.token_expires_at,
        )
        if result.timezone:
            session = self.store.update_session(timezone=result.timezone) or session
        return session

    def _hydrate(self) -> Optional[Session]:
        try:
            self.check_session()
        except AuthError as exc:
            _log.warning("HYDRATE | check_session failed: %s", exc.message)
        return self.store.restore_session()

    def _register_push(self, result: ExchangeResult) -> None:
        user_id = None
        if result.user:
            user_id = result.user.get("_id") or result.user.get("id")
        if not user_id or not result.setting_id:
            return
        try:
            self.push.register(str(user_id), result.setting_id)
        except Exception as exc:
            _log.warning("PUSH REGISTER FAILED | %s", exc)
