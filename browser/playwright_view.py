"""
playwright_view.py

Playwright (Chromium) implementation of the BrowserView port, and the
runner that drives a browser login end to end.
Navigation requests pass through a route handler so custom-scheme URLs are
cancelled before they load; redirect Location headers are inspected for
the same reason. Injected scripts talk back through an exposed binding.
Part of Chatflow — Business Messaging Client.
"""

import asyncio
import logging
from typing import Any, Callable, Optional
from urllib.parse import urljoin

import config
from auth.errors import AuthError, AuthErrorKind
from auth.handshake import AttemptCallbacks, AuthOrchestrator
from auth.models import AuthPhase, Credentials, Session
from browser import scripts
from browser.driver import (
    BrowserView,
    CredentialInjectionDriver,
    LoginDriver,
    ProviderRedirectDriver,
    Scheduler,
)

_log = logging.getLogger("chatflow.browser")
if not _log.handlers:
    _handler = logging.FileHandler(config.LOGS_DIR / "browser.log", encoding="utf-8")
    _handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-8s | %(message)s"))
    _log.addHandler(_handler)
    _log.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))

MESSAGE_FLOW_TIMEOUT = "Login timed out. Please try again."

# Chromium reports cancelled navigations with these
_ABORTED_MARKERS = ("ERR_ABORTED", "ERR_UNKNOWN_URL_SCHEME", "interrupted by another navigation")


def _is_abort(text: str) -> bool:
    return any(marker in (text or "") for marker in _ABORTED_MARKERS)


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.loop = loop or asyncio.get_running_loop()

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(delay_seconds, callback)

    def cancel(self, handle: Any) -> None:
        if handle is not None:
            handle.cancel()

    def run_blocking(
        self,
        work: Callable[[], Any],
        done: Callable[[Any, Optional[BaseException]], None],
    ) -> None:
        """Run work on the default executor; done is called back on the loop."""
        future = self.loop.run_in_executor(None, work)

        def _deliver(finished: asyncio.Future) -> None:
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                done(None, error)
            else:
                done(finished.result(), None)

        future.add_done_callback(_deliver)


class PlaywrightView(BrowserView):
    """
    Chromium page behind the BrowserView port.

    Provides async context manager support for resource management.

    Example:
        async with PlaywrightView(headless=True) as view:
            await view.attach(driver)
            driver.start()
    """

    def __init__(self, headless: bool = True, user_agent: str = config.USER_AGENT):
        """
        Initialize the view.

        Args:
            headless: Run the browser without a window. Interactive OAuth
                needs a window.
            user_agent: User agent for the browser context.
        """
        self.headless = headless
        self.user_agent = user_agent
        self.visible = False
        self.closed = False
        self._driver: Optional[LoginDriver] = None
        self._tasks: set[asyncio.Task] = set()
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    async def __aenter__(self) -> "PlaywrightView":
        """Start browser on context entry."""
        await self._start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close browser on context exit."""
        await self._close()

    async def _start(self) -> None:
        """Initialize Playwright and start browser."""
        try:
            from playwright.async_api import async_playwright

            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.headless)
            self._context = await self._browser.new_context(user_agent=self.user_agent)
            self._page = await self._context.new_page()
            _log.info("PLAYWRIGHT | Browser started (headless=%s)", self.headless)

        except ImportError:
            _log.error(
                "PLAYWRIGHT | playwright not installed. Run: pip install playwright && playwright install"
            )
            raise
        except Exception as exc:
            _log.error("PLAYWRIGHT | Failed to start browser: %s", exc)
            raise

    async def _close(self) -> None:
        """Close browser and Playwright."""
        for task in list(self._tasks):
            task.cancel()
        try:
            if self._page:
                await self._page.close()
            if self._context:
                await self._context.close()
            if self._browser:
                await self._browser.close()
            if self._playwright:
                await self._playwright.stop()
            _log.info("PLAYWRIGHT | Browser closed")
        except Exception as exc:
            _log.warning("PLAYWRIGHT | Error while closing browser: %s", exc)

    async def attach(self, driver: LoginDriver) -> None:
        """
        Wire page events to the driver. Must run before driver.start().

        Args:
            driver: The state machine receiving this page's events.
        """
        self._driver = driver
        await self._context.expose_binding(scripts.CHANNEL_NAME, self._on_binding)
        await self._page.route("**/*", self._on_route)
        self._page.on("framenavigated", self._on_frame_navigated)
        self._page.on("load", self._on_load)
        self._page.on("response", self._on_response)
        self._page.on("requestfailed", self._on_request_failed)
        self._page.on("close", self._on_page_close)

    # ------------------------------------------------------------------
    # BrowserView port
    # ------------------------------------------------------------------

    def load(self, url: str) -> None:
        _log.info("PLAYWRIGHT LOAD | url=%s", url)
        self._spawn(self._page.goto(url, wait_until="commit", timeout=0), "load")

    def inject(self, script: str) -> None:
        _log.info("PLAYWRIGHT INJECT | script_len=%d", len(script))
        self._spawn(self._page.evaluate(script), "inject")

    def set_visible(self, visible: bool) -> None:
        self.visible = visible
        _log.info("PLAYWRIGHT VIEW | %s", "live page" if visible else "progress overlay")
        if visible and not self.headless and self._page is not None:
            self._spawn(self._page.bring_to_front(), "bring_to_front")

    def close(self) -> None:
        self.closed = True

    # ------------------------------------------------------------------
    # Page events
    # ------------------------------------------------------------------

    def _is_main_frame_navigation(self, request) -> bool:
        try:
            return request.is_navigation_request() and request.frame == self._page.main_frame
        except Exception:
            # Service worker requests have no frame
            return False

    async def _on_route(self, route) -> None:
        request = route.request
        if self._driver is not None and self._is_main_frame_navigation(request):
            if not self._driver.should_start_load(request.url):
                await route.abort()
                return
            self._driver.on_navigation(request.url, loading=True)
        await route.continue_()

    def _on_frame_navigated(self, frame) -> None:
        if self._driver is not None and frame == self._page.main_frame:
            self._driver.on_navigation(frame.url, loading=False)

    def _on_load(self, page) -> None:
        if self._driver is not None:
            self._driver.on_load_end(page.url)

    def _on_response(self, response) -> None:
        if self._driver is None or not 300 <= response.status < 400:
            return
        location = response.headers.get("location")
        if location and self._is_main_frame_navigation(response.request):
            self._driver.should_start_load(urljoin(response.url, location))

    def _on_request_failed(self, request) -> None:
        if self._driver is None or not self._is_main_frame_navigation(request):
            return
        # Script-driven custom-scheme navigations bypass route() and end here
        if not self._driver.should_start_load(request.url):
            return
        failure = request.failure or ""
        if _is_abort(failure):
            return
        self._driver.on_transport_error(failure)

    def _on_binding(self, source, message) -> None:
        if self._driver is not None:
            self._driver.on_message(message)

    def _on_page_close(self, page) -> None:
        if self._driver is not None and not self._driver.finished:
            self._driver.dismiss()

    # ------------------------------------------------------------------
    # Task plumbing
    # ------------------------------------------------------------------

    def _spawn(self, coro, label: str) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda done: self._on_task_done(done, label))

    def _on_task_done(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        driver_done = self._driver is None or self._driver.finished
        if driver_done or _is_abort(str(exc)):
            _log.debug("PLAYWRIGHT %s | ignored: %s", label.upper(), exc)
            return
        if label == "load":
            _log.error("PLAYWRIGHT LOAD | error: %s", exc)
            self._driver.on_transport_error(str(exc))
        else:
            # Navigation while a script runs destroys its context
            _log.warning("PLAYWRIGHT %s | error: %s", label.upper(), exc)


def build_driver(
    mode: str,
    view: BrowserView,
    scheduler: Scheduler,
    orchestrator: AuthOrchestrator,
    callbacks: AttemptCallbacks,
    credentials: Optional[Credentials] = None,
    on_phase: Optional[Callable[[AuthPhase, str], None]] = None,
) -> LoginDriver:
    """
    Create the driver variant for a login mode.

    Args:
        mode: "credentials" (hidden form fill) or "google" (interactive OAuth).
        credentials: Required for the "credentials" mode.
    """
    exchange = orchestrator.exchange_captured_token
    if mode == "credentials":
        if credentials is None:
            raise ValueError("credentials mode needs Credentials")
        return CredentialInjectionDriver(
            view, scheduler, exchange, callbacks, on_phase=on_phase, credentials=credentials
        )
    if mode == "google":
        return ProviderRedirectDriver(view, scheduler, exchange, callbacks, on_phase=on_phase)
    raise ValueError(f"Unknown browser login mode: {mode}")


async def run_browser_login(
    orchestrator: AuthOrchestrator,
    mode: str = "credentials",
    credentials: Optional[Credentials] = None,
    headless: Optional[bool] = None,
    flow_timeout: float = config.LOGIN_FLOW_TIMEOUT_SECONDS,
    on_phase: Optional[Callable[[AuthPhase, str], None]] = None,
    view_factory: Callable[..., Any] = PlaywrightView,
) -> Optional[Session]:
    """
    Run one browser login and wait for its outcome.

    Args:
        orchestrator: Holds the login slot and exchanges the captured token.
        mode: "credentials" or "google".
        credentials: Email and password for the "credentials" mode.
        headless: Defaults to BROWSER_HEADLESS; the "google" mode always
            opens a window.
        flow_timeout: Overall limit for the whole flow.
        on_phase: Optional progress listener.
        view_factory: Builds the async-context view; called with headless=.

    Returns:
        The new Session, or None if the user closed the browser.

    Raises:
        AuthError: The driver's failure, or TIMEOUT if the whole flow
        exceeded flow_timeout.

    Example:
        session = await run_browser_login(auth, credentials=Credentials(email, password))
    """
    if headless is None:
        headless = config.BROWSER_HEADLESS
    if mode == "google":
        headless = False

    loop = asyncio.get_running_loop()
    outcome: asyncio.Future = loop.create_future()

    def _resolve(value: Any = None, error: Optional[BaseException] = None) -> None:
        if outcome.done():
            return
        if error is not None:
            outcome.set_exception(error)
        else:
            outcome.set_result(value)

    callbacks = AttemptCallbacks(
        on_success=lambda: _resolve(True),
        on_error=lambda kind, message: _resolve(error=AuthError(kind, message)),
        on_close=lambda: _resolve(False),
    )

    with orchestrator.attempt():
        async with view_factory(headless=headless) as view:
            driver = build_driver(
                mode,
                view,
                AsyncioScheduler(loop),
                orchestrator,
                callbacks,
                credentials=credentials,
                on_phase=on_phase,
            )
            await view.attach(driver)
            driver.start()
            try:
                completed = await asyncio.wait_for(outcome, timeout=flow_timeout)
            except asyncio.TimeoutError:
                driver.cancel()
                _log.warning("BROWSER LOGIN | flow timed out after %.0fs", flow_timeout)
                raise AuthError(AuthErrorKind.TIMEOUT, MESSAGE_FLOW_TIMEOUT)

    if not completed:
        _log.info("BROWSER LOGIN | closed by user")
        return None
    return orchestrator.store.restore_session()


def browser_login_sync(orchestrator: AuthOrchestrator, **kwargs) -> Optional[Session]:
    """
    Synchronous wrapper for run_browser_login.

    Example:
        session = browser_login_sync(auth, credentials=Credentials(email, password))
    """

    async def _login():
        return await run_browser_login(orchestrator, **kwargs)

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(_login())

    import concurrent.futures

    with concurrent.futures.ThreadPoolExecutor() as pool:
        future = pool.submit(asyncio.run, _login())
        return future.result()
