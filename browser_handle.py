#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - Browser Control Handle                          ║
║                  One Playwright browser per session                          ║
╚══════════════════════════════════════════════════════════════════════════════╝

Purpose:
  - Own exactly ONE Chromium instance, ONE context and ONE main page
  - Expose the small capability set the engine needs (navigate, evaluate,
    bounded waits, screenshots, PDF rendering, backward navigation)
  - Publish "new page" events onto a channel instead of callbacks
  - Fail fast with SessionLost once the browser disconnects

Threading:
  Playwright's sync API is bound to the thread that started it. A handle is
  created, used and closed on its session worker thread only.

Author: POWER-IGR Team
Version: 1.0.0
"""

import logging
import threading
from collections import deque
from contextlib import contextmanager
from typing import Optional, Any

from playwright.sync_api import sync_playwright, Browser, BrowserContext, Page, Playwright
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeout

from igr_config import Config
from igr_errors import SessionLost

logger = logging.getLogger('BrowserHandle')


class NewPageChannel:
    """
    Ordered channel of pages the browser opened by itself (popups, tabs).

    Every event gets a sequence number. A consumer takes mark() right before
    the action that may open a page and then only accepts events published
    after that mark, so a late tab from an earlier action is never mistaken
    for the current one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._events = deque()
        self._sequence = 0

    def publish(self, page: Any) -> int:
        with self._lock:
            self._sequence += 1
            self._events.append((self._sequence, page))
            return self._sequence

    def mark(self) -> int:
        with self._lock:
            return self._sequence

    def take_after(self, mark: int) -> Optional[Any]:
        """Pop the oldest page published after mark, or None"""
        with self._lock:
            for position, (sequence, page) in enumerate(self._events):
                if sequence > mark:
                    del self._events[position]
                    return page
            return None

    def take_all_after(self, mark: int) -> list:
        """Pop every page published after mark"""
        with self._lock:
            pages = [page for sequence, page in self._events if sequence > mark]
            self._events = deque((s, p) for s, p in self._events if s <= mark)
            return pages

    def drain(self) -> list:
        """Remove and return every pending page"""
        with self._lock:
            pages = [page for _, page in self._events]
            self._events.clear()
            return pages


class BrowserHandle:
    """
    Playwright-backed Browser Control Handle.

    Lifecycle:
    1. launch()  → playwright, browser, context, main page
    2. engine calls navigate / evaluate / wait_for_selector / ...
    3. close()   → idempotent teardown, safe after a disconnect
    """

    def __init__(
        self,
        headless: bool = None,
        slow_mo_ms: int = None,
        default_timeout_ms: int = None
    ):
        self.headless = Config.HEADLESS if headless is None else headless
        self.slow_mo_ms = Config.SLOW_MO_MS if slow_mo_ms is None else slow_mo_ms
        self.default_timeout_ms = default_timeout_ms or Config.DEFAULT_TIMEOUT_MS

        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

        self.new_pages = NewPageChannel()
        self._connected = False
        self._closed = False
        self._own_page_opening = 0

    # ═══════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════

    def launch(self):
        """Start Playwright and open the main page. Called once per session."""
        if self.browser is not None:
            return
        logger.info("Launching Chromium...")
        try:
            self.playwright = sync_playwright().start()
            self.browser = self.playwright.chromium.launch(
                headless=self.headless,
                slow_mo=self.slow_mo_ms,
                args=[
                    '--start-maximized',
                    '--disable-blink-features=AutomationControlled',
                    '--disable-dev-shm-usage',
                ]
            )
            self.browser.on('disconnected', self._on_disconnected)
            self.context = self.browser.new_context(
                ignore_https_errors=True,
                no_viewport=True,
            )
            self.context.set_default_timeout(self.default_timeout_ms)
            self.page = self.context.new_page()
            # Subscribe after the main page exists so it is never published
            self.context.on('page', self._on_new_page)
            self._connected = True
            logger.info("✅ Browser ready")
        except Exception as e:
            logger.error(f"Failed to launch browser: {e}")
            self.close()
            raise

    def close(self):
        """Tear everything down. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._connected = False
        for page in self.new_pages.drain():
            self._quiet_close(page)
        try:
            if self.context:
                self.context.close()
            if self.browser:
                self.browser.close()
        except Exception as e:
            logger.warning(f"Browser cleanup error: {e}")
        try:
            if self.playwright:
                self.playwright.stop()
        except Exception as e:
            logger.warning(f"Playwright stop error: {e}")
        self.page = None
        self.context = None
        self.browser = None
        self.playwright = None
        logger.info("Browser closed")

    def is_connected(self) -> bool:
        return self._connected and self.browser is not None and self.browser.is_connected()

    def ensure_connected(self):
        if not self.is_connected():
            raise SessionLost()

    def _on_disconnected(self, _browser):
        logger.warning("⚠️  Browser disconnected")
        self._connected = False

    def _on_new_page(self, page: Page):
        if self._own_page_opening:
            return
        logger.info("New page opened by portal")
        self.new_pages.publish(page)

    @contextmanager
    def _operation(self):
        self.ensure_connected()
        try:
            yield
        except PlaywrightError:
            if not self.is_connected():
                raise SessionLost()
            raise

    @contextmanager
    def _opening_own_page(self):
        self._own_page_opening += 1
        try:
            yield
        finally:
            self._own_page_opening -= 1

    @staticmethod
    def _quiet_close(page):
        try:
            page.close()
        except Exception as e:
            logger.debug(f"Page close error: {e}")

    # ═══════════════════════════════════════════════════════════════════════
    # MAIN PAGE
    # ═══════════════════════════════════════════════════════════════════════

    def navigate(self, url: str, wait_until: str = 'networkidle', timeout: float = None):
        timeout = timeout or Config.PAGE_LOAD_TIMEOUT
        with self._operation():
            self.page.goto(url, wait_until=wait_until, timeout=timeout * 1000)

    def wait_for_selector(self, selector: str, timeout: float, state: str = 'visible') -> bool:
        """True once the element reaches state, False on timeout"""
        with self._operation():
            try:
                self.page.wait_for_selector(selector, state=state, timeout=timeout * 1000)
                return True
            except PlaywrightTimeout:
                return False

    def click(self, selector: str, timeout: float = None):
        timeout = timeout or self.default_timeout_ms / 1000
        with self._operation():
            self.page.click(selector, timeout=timeout * 1000)

    def evaluate(self, script: str, arg: Any = None) -> Any:
        with self._operation():
            return self.page.evaluate(script, arg)

    def current_url(self) -> str:
        with self._operation():
            return self.page.url

    def content(self) -> str:
        with self._operation():
            return self.page.content()

    def go_back(self, timeout: float = None) -> bool:
        """Browser back. False when there was no history entry or it timed out."""
        timeout = timeout or self.default_timeout_ms / 1000
        with self._operation():
            try:
                response = self.page.go_back(wait_until='domcontentloaded', timeout=timeout * 1000)
            except PlaywrightTimeout:
                return False
            return response is not None

    def pump(self, seconds: float):
        """Let Playwright dispatch pending events (new pages, navigations)"""
        with self._operation():
            self.page.wait_for_timeout(max(seconds, 0) * 1000)

    def screenshot(self, path: str = None, full_page: bool = True) -> bytes:
        with self._operation():
            return self.page.screenshot(path=path, full_page=full_page)

    def element_screenshot(self, selector: str) -> bytes:
        """Pixel-region screenshot of the element's bounding box"""
        with self._operation():
            box = self.page.locator(selector).first.bounding_box()
            if not box:
                raise ValueError(f"Element {selector} has no bounding box")
            clip = {'x': box['x'], 'y': box['y'], 'width': box['width'], 'height': box['height']}
            return self.page.screenshot(clip=clip)

    # ═══════════════════════════════════════════════════════════════════════
    # SECONDARY PAGES
    # ═══════════════════════════════════════════════════════════════════════

    def fetch_in_new_page(self, url: str, timeout: float) -> bytes:
        """Load url in a short-lived page of this context and return the body"""
        with self._operation():
            with self._opening_own_page():
                temp_page = self.context.new_page()
            try:
                response = temp_page.goto(url, wait_until='networkidle', timeout=timeout * 1000)
                if response is None:
                    raise ValueError(f"No response for {url}")
                if not response.ok:
                    raise ValueError(f"HTTP {response.status} for {url}")
                return response.body()
            finally:
                self._quiet_close(temp_page)

    def page_url(self, page: Page = None) -> str:
        with self._operation():
            return (page or self.page).url

    def wait_for_page_load(self, page: Page, timeout: float) -> bool:
        with self._operation():
            try:
                page.wait_for_load_state('load', timeout=timeout * 1000)
                return True
            except PlaywrightTimeout:
                return False

    def render_pdf(self, path: str, page: Page = None):
        """Render page (default: main page) to a paginated PDF file"""
        with self._operation():
            (page or self.page).pdf(path=path, **Config.PDF_OPTIONS)

    def close_page(self, page: Page):
        if page is None or page is self.page:
            return
        self._quiet_close(page)
