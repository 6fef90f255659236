"""Playwright-backed browser sessions for leaderboard crawls.

Every Playwright call made by a crawl goes through :class:`PlaywrightSession`
so failures reach the crawler already classified: a closed or crashed target
becomes :class:`SessionClosedError`, a timeout or other browser error becomes
:class:`CrawlError`. :class:`SessionPool` caps how many sessions run at once.
"""
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, ContextManager, Iterator, Optional, Protocol

from playwright.sync_api import (
    Error as PWError,
    Page,
    TimeoutError as PWTimeout,
    sync_playwright,
)

from . import config
from .error_codes import CrawlError, ErrorCode, SessionClosedError, error_for_http_status
from .logging_utils import _ranking_event
from .utils import log_line

UA = config.COMMON_HEADERS["User-Agent"]


class BrowserSession(Protocol):
    def open(self, url: str) -> None: ...

    def content(self) -> str: ...

    def row_count(self) -> int: ...

    def has_reveal_control(self) -> bool: ...

    def reveal_more(self) -> None: ...

    def wait_for_growth(self, previous_count: int) -> int: ...

    def settle(self, seconds: float) -> None: ...

    def screenshot(self, path: Path) -> None: ...


SessionFactory = Callable[[], ContextManager[BrowserSession]]


def _is_target_closed_error(exc: BaseException) -> bool:
    """Return ``True`` if *exc* indicates the Playwright target is gone."""

    message = str(exc)
    return any(
        marker in message
        for marker in (
            "Target closed",
            "Target crashed",
            "has been closed",
            "Execution context was destroyed",
            "Browser has been disconnected",
        )
    )


def _translate(exc: BaseException, step: str) -> Exception:
    if _is_target_closed_error(exc):
        return SessionClosedError(f"Browser session closed during {step}: {exc}")
    if isinstance(exc, PWTimeout):
        return CrawlError(f"Timed out during {step}: {exc}", error_code=ErrorCode.TIMEOUT)
    return CrawlError(f"Browser error during {step}: {exc}")


def wait_seconds(page: Optional[Page], seconds: float) -> None:
    """Wait safely for ``seconds`` only if *page* remains open."""

    if page is None or seconds is None or seconds <= 0:
        return
    if not page.is_closed():
        page.wait_for_timeout(int(seconds * 1000))


def _accept_cookies(page: Page) -> None:
    """Best-effort click-through for cookie banners."""

    selectors = [
        config.COOKIE_ACCEPT_SELECTOR,
        "button:has-text('Accept')",
        "button[aria-label*='Accept' i]",
    ]
    for sel in selectors:
        try:
            loc = page.locator(sel).first
            if loc.count():
                loc.click(timeout=1500)
                wait_seconds(page, 0.4)
                return
        except PWError:
            continue


class PlaywrightSession:
    def __init__(
        self,
        page: Page,
        *,
        row_selector: str | None = None,
        load_more_selector: str | None = None,
    ) -> None:
        self.page = page
        self.row_selector = row_selector or config.ROW_SELECTOR
        self.load_more_selector = load_more_selector or config.LOAD_MORE_SELECTOR

    def open(self, url: str) -> None:
        try:
            response = self.page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=config.NAV_TIMEOUT_SECONDS * 1000,
            )
        except PWError as exc:
            raise _translate(exc, "navigation") from exc

        if response is not None:
            error = error_for_http_status(response.status, url)
            if error is not None:
                raise error

        _accept_cookies(self.page)
        try:
            self.page.wait_for_selector(
                self.row_selector, timeout=config.NAV_TIMEOUT_SECONDS * 1000
            )
        except PWError as exc:
            raise _translate(exc, "first page render") from exc

    def content(self) -> str:
        try:
            return self.page.content()
        except PWError as exc:
            raise _translate(exc, "content read") from exc

    def row_count(self) -> int:
        try:
            return self.page.locator(self.row_selector).count()
        except PWError as exc:
            raise _translate(exc, "row count") from exc

    def has_reveal_control(self) -> bool:
        try:
            self.page.wait_for_selector(
                self.load_more_selector,
                state="visible",
                timeout=config.SELECTOR_TIMEOUT_SECONDS * 1000,
            )
            return True
        except PWTimeout:
            return False
        except PWError as exc:
            raise _translate(exc, "reveal control lookup") from exc

    def reveal_more(self) -> None:
        try:
            self.page.locator(self.load_more_selector).first.click(
                timeout=config.SELECTOR_TIMEOUT_SECONDS * 1000
            )
        except PWError as exc:
            raise _translate(exc, "reveal click") from exc

    def wait_for_growth(self, previous_count: int) -> int:
        try:
            self.page.wait_for_function(
                "([selector, previous]) => document.querySelectorAll(selector).length > previous",
                arg=[self.row_selector, previous_count],
                timeout=config.STEP_TIMEOUT_SECONDS * 1000,
            )
        except PWError as exc:
            raise _translate(exc, "row growth wait") from exc
        return self.row_count()

    def settle(self, seconds: float) -> None:
        try:
            wait_seconds(self.page, seconds)
        except PWError as exc:
            raise _translate(exc, "settle") from exc

    def screenshot(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.page.screenshot(path=str(path), full_page=True)
            log_line(f"Saved debug screenshot -> {path}")
        except PWError as exc:
            log_line(f"Failed to save debug screenshot: {exc}")


@contextmanager
def playwright_session() -> Iterator[PlaywrightSession]:
    """Launch a headless Chromium page and close everything on exit."""

    with sync_playwright() as pw:
        browser = pw.chromium.launch(
            headless=True,
            args=[
                "--disable-blink-features=AutomationControlled",
                "--no-sandbox",
                "--disable-dev-shm-usage",
            ],
        )
        try:
            context = browser.new_context(
                user_agent=UA,
                locale="en-US",
                viewport={"width": 1368, "height": 900},
                extra_http_headers={
                    k: v for k, v in config.COMMON_HEADERS.items() if k != "User-Agent"
                },
            )
            context.add_init_script(
                "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"
            )
            page = context.new_page()
            yield PlaywrightSession(page)
        finally:
            try:
                browser.close()
            except PWError as exc:
                log_line(f"[BROWSER] Failed to close browser cleanly: {exc}")


class SessionPool:
    """Hand out browser sessions, never more than ``max_sessions`` at once."""

    def __init__(self, factory: SessionFactory | None = None, max_sessions: int | None = None) -> None:
        self._factory: SessionFactory = factory or playwright_session
        self.max_sessions = max(1, config.MAX_CONCURRENT_SESSIONS if max_sessions is None else max_sessions)
        self._slots = threading.BoundedSemaphore(self.max_sessions)
        self._lock = threading.Lock()
        self._active = 0
        self._peak_active = 0

    @contextmanager
    def session(self, label: str = "") -> Iterator[BrowserSession]:
        wait_started = time.monotonic()
        with self._slots:
            with self._lock:
                self._active += 1
                self._peak_active = max(self._peak_active, self._active)
            try:
                _ranking_event(
                    "state",
                    phase="session",
                    kind="acquired",
                    scope=label,
                    waited=round(time.monotonic() - wait_started, 3),
                )
                with self._factory() as session:
                    yield session
            finally:
                with self._lock:
                    self._active -= 1
                _ranking_event("state", phase="session", kind="released", scope=label)

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    @property
    def peak_active(self) -> int:
        with self._lock:
            return self._peak_active


__all__ = [
    "BrowserSession",
    "SessionFactory",
    "PlaywrightSession",
    "SessionPool",
    "playwright_session",
    "wait_seconds",
    "_is_target_closed_error",
]
