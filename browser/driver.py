"""
driver.py

Embedded-browser login state machine.
Completes a provider login that needs a real browser context and hands the
captured token to the orchestrator. Platform-independent: the page is
reached only through the BrowserView port and time only through the
Scheduler port.
Part of Chatflow — Business Messaging Client.

Phases:
    Connecting -> ProviderInteraction -> Verifying -> Completing -> Done | Failed

Event entry points (called by the platform view, all on one thread):
    should_start_load(url)   before any navigation; False cancels it
    on_navigation(url)       navigation started, or URL changed in-page
    on_load_end(url)         page finished loading
    on_message(payload)      message posted by an injected script
    on_transport_error(msg)  main-frame network failure
    dismiss()                user closed the view
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlsplit

import config
from auth.errors import AuthErrorKind, normalize_error
from auth.handshake import AttemptCallbacks
from auth.models import PHASE_LABELS, AuthPhase, Credentials, TokenCandidate
from auth.resolver import TOKEN_QUERY_PARAMS, candidate_from_url
from browser import scripts

_log = logging.getLogger("chatflow.browser")
if not _log.handlers:
    _handler = logging.FileHandler(config.LOGS_DIR / "browser.log", encoding="utf-8")
    _handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-8s | %(message)s"))
    _log.addHandler(_handler)
    _log.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))

MESSAGE_CONNECTION_SLOW = "Connection too slow. Please try again."
MESSAGE_UNABLE_TO_CONNECT = "Unable to connect. Please check your internet connection."
MESSAGE_FORM_NOT_FOUND = "Login form not found. Please try again later."
MESSAGE_LOGIN_REJECTED = "Invalid email or password."


class BrowserView(ABC):
    """Platform port for an embedded browser surface."""

    @abstractmethod
    def load(self, url: str) -> None:
        """Start navigating to url."""

    @abstractmethod
    def inject(self, script: str) -> None:
        """Evaluate script in the current page."""

    @abstractmethod
    def set_visible(self, visible: bool) -> None:
        """Show the live page (True) or the progress overlay (False)."""

    @abstractmethod
    def close(self) -> None:
        """Tear the surface down."""


class Scheduler(ABC):
    """Platform port for deferred callbacks on the view's thread."""

    @abstractmethod
    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> Any:
        """Run callback after delay_seconds; returns a handle for cancel()."""

    @abstractmethod
    def cancel(self, handle: Any) -> None:
        """Cancel a pending callback. Unknown or fired handles are ignored."""

    def run_blocking(
        self,
        work: Callable[[], Any],
        done: Callable[[Any, Optional[BaseException]], None],
    ) -> None:
        """
        Run blocking work and report (result, error) to done on the view's
        thread. This base version runs work inline; event-loop schedulers
        override it to keep the loop free.
        """
        try:
            result = work()
        except Exception as exc:
            done(None, exc)
            return
        done(result, None)


def _host(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


def _host_matches(url: str, domain: str) -> bool:
    host = _host(url)
    domain = domain.lower()
    return bool(domain) and (host == domain or host.endswith("." + domain))


def _token_fields(url: str) -> dict[str, str]:
    """Query fields that accompany a captured token."""
    parts = urlsplit(url)
    fields: dict[str, str] = {}
    for raw_query in (parts.query, parts.fragment):
        for name, values in parse_qs(raw_query).items():
            if name not in TOKEN_QUERY_PARAMS and values:
                fields.setdefault(name, values[0])
    return fields


class LoginDriver:
    """
    Shared state machine for both login variants.

    The exchange callable receives (token, fields) once a token is captured
    and must return normally on success or raise on failure. Exactly one of
    callbacks.on_success / callbacks.on_error fires per attempt; a dismissal
    before Completing fires callbacks.on_close instead.

    Args:
        view: The BrowserView to drive.
        scheduler: Scheduler for timers and for running the exchange.
        exchange: Token exchange, e.g. AuthOrchestrator.exchange_captured_token.
        callbacks: UI callbacks.
        on_phase: Optional progress listener called with (phase, label).
    """

    initially_visible = False

    def __init__(
        self,
        view: BrowserView,
        scheduler: Scheduler,
        exchange: Callable[[str, dict[str, str]], Any],
        callbacks: AttemptCallbacks,
        on_phase: Optional[Callable[[AuthPhase, str], None]] = None,
        login_url: str = f"{config.ACCOUNTS_URL}/login",
        access_url: str = f"{config.ACCOUNTS_BACKEND_URL}/access?project={config.PROVIDER_PROJECT}",
        provider_domain: str = config.PROVIDER_DOMAIN,
        app_host: str = config.APP_HOST,
        app_scheme: str = config.APP_SCHEME,
        page_load_timeout: float = config.PAGE_LOAD_TIMEOUT_SECONDS,
        settle_delay: float = config.INJECTION_SETTLE_DELAY_MS / 1000.0,
    ):
        self.view = view
        self.scheduler = scheduler
        self.exchange = exchange
        self.callbacks = callbacks
        self.on_phase = on_phase
        self.login_url = login_url
        self.access_url = access_url
        self.provider_domain = provider_domain
        self.app_host = app_host
        self.app_scheme = app_scheme.lower().rstrip(":/")
        self.page_load_timeout = page_load_timeout
        self.settle_delay = settle_delay

        self.phase = AuthPhase.CONNECTING
        self.captured_token: Optional[str] = None
        self.current_url = ""
        self._finished = False
        self._access_requested = False
        self._watchdog: Any = None
        self._pending: list[Any] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def finished(self) -> bool:
        return self._finished

    def start(self) -> None:
        """Open the login page and arm the page-load watchdog."""
        _log.info("DRIVER START | variant=%s | url=%s", type(self).__name__, self.login_url)
        self._set_phase(AuthPhase.CONNECTING)
        self.view.set_visible(self.initially_visible)
        self._arm_watchdog()
        self.view.load(self.login_url)

    def dismiss(self) -> None:
        """
        User closed the view. Aborts the attempt unless it already reached
        Completing, in which case the attempt runs to its own end.
        """
        if self._finished or self.captured_token is not None or self.phase is AuthPhase.COMPLETING:
            _log.info("DRIVER DISMISS | ignored in phase=%s", self.phase.value)
            return
        _log.info("DRIVER DISMISS | aborted in phase=%s", self.phase.value)
        self._teardown()
        if self.callbacks.on_close is not None:
            self.callbacks.on_close()

    def cancel(self) -> None:
        """Stop silently, e.g. when an outer timeout gave up on the attempt."""
        if self._finished:
            return
        _log.info("DRIVER CANCELLED | phase=%s", self.phase.value)
        self._teardown()

    # ------------------------------------------------------------------
    # View events
    # ------------------------------------------------------------------

    def should_start_load(self, url: str) -> bool:
        """
        Inspect an outgoing navigation.

        Custom app-scheme URLs are never loaded; a token they carry is
        captured.
        """
        if not self._is_app_scheme(url):
            return True
        _log.info("DRIVER INTERCEPT | scheme=%s", self.app_scheme)
        if not self._finished:
            candidate = candidate_from_url(url)
            if candidate is not None:
                self._capture(candidate, _token_fields(url))
        return False

    def on_navigation(self, url: str, loading: bool = True) -> None:
        """
        Args:
            url: The new URL.
            loading: False for in-page URL changes that will not be
                followed by a load event; those do not arm the watchdog.
        """
        if self._finished:
            return
        self.current_url = url
        if loading:
            self._arm_watchdog()

        candidate = candidate_from_url(url)
        if candidate is not None:
            self._capture(candidate, _token_fields(url))
            return

        if self._is_post_login_surface(url):
            self._begin_verification()
        elif self._is_interactive_host(url):
            if self.phase is AuthPhase.CONNECTING:
                self._set_phase(AuthPhase.PROVIDER_INTERACTION)
        self._after_navigation(url)

    def on_load_end(self, url: str) -> None:
        if self._finished:
            return
        self.current_url = url or self.current_url
        self._disarm_watchdog()

        candidate = candidate_from_url(url)
        if candidate is not None:
            self._capture(candidate, _token_fields(url))
            return

        if self._is_post_login_surface(url):
            self._begin_verification()
            return
        self._after_load(url)

    def on_message(self, payload: Any) -> None:
        if self._finished:
            return
        status = self._message_status(payload)
        if status:
            self._handle_message(status)

    def on_transport_error(self, description: str = "") -> None:
        if self._finished or self.captured_token is not None:
            return
        _log.warning("DRIVER TRANSPORT ERROR | %s", description)
        self._fail(AuthErrorKind.PROVIDER_UNAVAILABLE, MESSAGE_UNABLE_TO_CONNECT)

    # ------------------------------------------------------------------
    # Variant hooks
    # ------------------------------------------------------------------

    def _after_navigation(self, url: str) -> None:
        return None

    def _after_load(self, url: str) -> None:
        return None

    def _handle_message(self, status: str) -> None:
        _log.debug("DRIVER MESSAGE | status=%s", status)

    def _is_interactive_host(self, url: str) -> bool:
        return _host_matches(url, self.provider_domain)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_app_scheme(self, url: str) -> bool:
        return url.lower().startswith(self.app_scheme + ":")

    def _is_post_login_surface(self, url: str) -> bool:
        if _host_matches(url, self.app_host):
            return True
        path = urlsplit(url).path
        return ("/dashboard" in path or "/apps" in path) and "/login" not in path

    def _begin_verification(self) -> None:
        if self._access_requested:
            return
        self._access_requested = True
        self._set_phase(AuthPhase.VERIFYING)
        self._schedule(self.settle_delay, self._navigate_to_access)

    def _navigate_to_access(self) -> None:
        if self._finished or self.captured_token is not None:
            return
        _log.info("DRIVER ACCESS | navigating to access grant")
        self.view.inject(scripts.access_navigation_script(self.access_url))
        self._set_phase(AuthPhase.COMPLETING)

    def _capture(self, candidate: TokenCandidate, fields: dict[str, str]) -> None:
        if self.captured_token is not None or self._finished:
            _log.info("DRIVER CAPTURE | ignored, token already captured")
            return
        self.captured_token = candidate.token
        self._cancel_timers()
        self._set_phase(AuthPhase.COMPLETING)
        _log.info(
            "DRIVER CAPTURE | source=%s | fields=%s",
            candidate.source.value,
            ",".join(sorted(fields)) or "-",
        )
        self.scheduler.run_blocking(
            lambda: self.exchange(candidate.token, fields),
            self._on_exchange_done,
        )

    def _on_exchange_done(self, result: Any, error: Optional[BaseException]) -> None:
        if self._finished:
            # Cancelled while the exchange was in flight
            _log.info("DRIVER EXCHANGE | finished after cancel, outcome dropped")
            return
        if error is not None:
            normalized = normalize_error(error)
            self._fail(normalized.kind, normalized.message)
            return
        self._succeed()

    def _succeed(self) -> None:
        if self._finished:
            return
        self._set_phase(AuthPhase.DONE)
        self._teardown()
        _log.info("DRIVER DONE")
        self.callbacks.on_success()

    def _fail(self, kind: AuthErrorKind, message: str) -> None:
        if self._finished:
            return
        self._set_phase(AuthPhase.FAILED)
        self._teardown()
        _log.warning("DRIVER FAILED | kind=%s | %s", kind.value, message)
        self.callbacks.on_error(kind, message)

    def _teardown(self) -> None:
        self._finished = True
        self._cancel_timers()
        self.view.close()

    def _set_phase(self, phase: AuthPhase) -> None:
        if phase is self.phase and phase is not AuthPhase.CONNECTING:
            return
        self.phase = phase
        _log.info("DRIVER PHASE | %s", phase.value)
        if self.on_phase is not None:
            self.on_phase(phase, PHASE_LABELS[phase])

    def _schedule(self, delay: float, callback: Callable[[], None]) -> None:
        handle = self.scheduler.call_later(delay, callback)
        self._pending.append(handle)

    def _arm_watchdog(self) -> None:
        self._disarm_watchdog()
        if self.captured_token is None:
            self._watchdog = self.scheduler.call_later(self.page_load_timeout, self._on_watchdog)

    def _disarm_watchdog(self) -> None:
        if self._watchdog is not None:
            self.scheduler.cancel(self._watchdog)
            self._watchdog = None

    def _on_watchdog(self) -> None:
        self._watchdog = None
        if self._finished or self.captured_token is not None:
            return
        self._fail(AuthErrorKind.TIMEOUT, MESSAGE_CONNECTION_SLOW)

    def _cancel_timers(self) -> None:
        self._disarm_watchdog()
        for handle in self._pending:
            self.scheduler.cancel(handle)
        self._pending.clear()

    @staticmethod
    def _message_status(payload: Any) -> Optional[str]:
        if isinstance(payload, str):
            try:
                decoded = json.loads(payload)
            except ValueError:
                return payload.strip().lower() or None
            payload = decoded
        if isinstance(payload, dict):
            status = payload.get("status") or payload.get("type")
            return str(status).lower() if status else None
        return None


class CredentialInjectionDriver(LoginDriver):
    """
    Hidden-view variant: fills the provider login form with the user's
    credentials and submits it.

    Example:
        driver = CredentialInjectionDriver(view, scheduler, exchange, callbacks,
                                           credentials=Credentials(email, password))
        driver.start()
    """

    initially_visible = False

    def __init__(
        self,
        *args,
        credentials: Credentials,
        max_retries: int = config.INJECTION_MAX_RETRIES,
        retry_delay: float = config.INJECTION_RETRY_DELAY_SECONDS,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.credentials = credentials
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.injection_attempts = 0
        self._submitted = False

    def _after_load(self, url: str) -> None:
        if not self._is_login_page(url):
            return
        if self._submitted:
            # Back on the login page after a submit: the provider refused
            self._fail(AuthErrorKind.INVALID_CREDENTIALS, MESSAGE_LOGIN_REJECTED)
            return
        if self.injection_attempts == 0:
            self._set_phase(AuthPhase.PROVIDER_INTERACTION)
            self._inject()

    def _handle_message(self, status: str) -> None:
        if status == scripts.MESSAGE_SUBMITTED:
            self._submitted = True
            _log.info("DRIVER INJECTION | submitted | attempt=%d", self.injection_attempts)
            return

        if status == scripts.MESSAGE_FIELDS_NOT_FOUND:
            if self.injection_attempts >= self.max_retries:
                _log.warning("DRIVER INJECTION | fields not found after %d attempts", self.injection_attempts)
                self._fail(AuthErrorKind.FORM_NOT_FOUND, MESSAGE_FORM_NOT_FOUND)
                return
            _log.info("DRIVER INJECTION | fields not found | retry in %.1fs", self.retry_delay)
            self._schedule(self.retry_delay, self._inject)

    def _inject(self) -> None:
        if self._finished:
            return
        self.injection_attempts += 1
        _log.info(
            "DRIVER INJECTION | attempt=%d/%d | email=%s",
            self.injection_attempts,
            self.max_retries,
            self.credentials.masked_email,
        )
        self.view.inject(
            scripts.credential_injection_script(
                self.credentials.email,
                self.credentials.password,
                int(self.settle_delay * 1000),
            )
        )

    def _is_login_page(self, url: str) -> bool:
        return _host_matches(url, self.provider_domain) and "/login" in urlsplit(url).path


class ProviderRedirectDriver(LoginDriver):
    """
    Visible-view variant for OAuth: clicks the provider control once and
    lets the user finish the interactive steps. The live page is shown
    only while the URL is on the OAuth provider's domain.
    """

    initially_visible = False

    def __init__(
        self,
        *args,
        oauth_domain: str = config.OAUTH_PROVIDER_DOMAIN,
        control_label: str = "google",
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.oauth_domain = oauth_domain
        self.control_label = control_label
        self.auto_clicked = False
        self.visible = self.initially_visible

    def _is_interactive_host(self, url: str) -> bool:
        return _host_matches(url, self.oauth_domain) or _host_matches(url, self.provider_domain)

    def _after_navigation(self, url: str) -> None:
        on_oauth_page = _host_matches(url, self.oauth_domain)
        if on_oauth_page != self.visible:
            self.visible = on_oauth_page
            self.view.set_visible(on_oauth_page)

    def _after_load(self, url: str) -> None:
        if self.auto_clicked:
            return
        if _host_matches(url, self.provider_domain) and "/login" in urlsplit(url).path:
            self.auto_clicked = True
            _log.info("DRIVER AUTO CLICK | label=%s", self.control_label)
            self.view.inject(scripts.provider_auto_click_script(self.control_label))

    def _handle_message(self, status: str) -> None:
        if status == scripts.MESSAGE_CONTROL_NOT_FOUND:
            # Leave the page to the user
            _log.info("DRIVER AUTO CLICK | control not found, showing page")
            self.visible = True
            self.view.set_visible(True)
