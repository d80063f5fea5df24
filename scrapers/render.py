"""Headless rendering of PNCP notice pages with Playwright.

The notice view is a client-side app: values only exist in the DOM after
scripts run, and the items, files and history lists only appear after their
tab is clicked. The renderer captures the page HTML once after load and once
after each tab click; parsing happens elsewhere.

Playwright's sync API is bound to the thread that started it, so a
BrowserSession must only be used from a single thread.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable

from playwright.sync_api import (
    Browser,
    BrowserContext,
    Error as PWError,
    Page,
    Playwright,
    TimeoutError as PWTimeout,
    sync_playwright,
)

import config
from errors import RenderEngineUnavailable, RenderTimeout

logger = logging.getLogger(__name__)

# sub-collection -> tab label as shown on the page
TABS: dict[str, str] = {
    "items": "Itens",
    "attachments": "Arquivos",
    "history": "Histórico",
}
TAB_CONTROL_SELECTOR = "a, button, [role=tab], [class*=tab]"


@dataclass
class RenderedDetail:
    """HTML snapshots of one notice page.

    ``tab_html[name]`` is None when the page had no tab with that label,
    or when opening it failed.
    """

    url: str
    main_html: str
    tab_html: dict[str, str | None] = field(default_factory=dict)


class BrowserSession:
    """A lazily started Chromium shared by every render, closed when idle."""

    def __init__(
        self,
        headless: bool = config.BROWSER_HEADLESS,
        idle_timeout: float = config.BROWSER_IDLE_TIMEOUT,
        user_agent: str = config.BROWSER_USER_AGENT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.headless = headless
        self.idle_timeout = idle_timeout
        self.user_agent = user_agent
        self.clock = clock
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._last_used: float | None = None

    @property
    def is_open(self) -> bool:
        return self._context is not None

    def acquire(self) -> BrowserContext:
        self.close_if_idle()
        if self._context is None:
            self._start()
        self._last_used = self.clock()
        return self._context

    def touch(self):
        self._last_used = self.clock()

    def _start(self):
        logger.info("[Render] Starting headless browser (headless=%s)", self.headless)
        try:
            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(headless=self.headless)
            self._context = self._browser.new_context(
                user_agent=self.user_agent,
                locale="pt-BR",
                viewport={"width": 1366, "height": 900},
            )
        except PWError as e:
            self.close()
            raise RenderEngineUnavailable(f"Could not start browser: {e}") from e

    def close_if_idle(self) -> bool:
        if self._context is None or self._last_used is None:
            return False
        if self.clock() - self._last_used < self.idle_timeout:
            return False
        logger.info("[Render] Browser idle for %.0fs, closing", self.clock() - self._last_used)
        self.close()
        return True

    def close(self):
        for resource in (self._context, self._browser):
            if resource is None:
                continue
            try:
                resource.close()
            except PWError as e:
                logger.debug("[Render] Ignoring error on close: %s", e)
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except PWError as e:
                logger.debug("[Render] Ignoring error on stop: %s", e)
        self._playwright = self._browser = self._context = None
        self._last_used = None


class PlaywrightRenderer:
    """Loads a notice page, waits for it to settle and snapshots every tab."""

    def __init__(
        self,
        session: BrowserSession | None = None,
        timeout: float = config.RENDER_TIMEOUT,
        settle_seconds: float = config.RENDER_SETTLE_SECONDS,
        tab_settle_seconds: float = config.RENDER_TAB_SETTLE_SECONDS,
        tabs: dict[str, str] | None = None,
    ):
        self.session = session or BrowserSession()
        self.timeout_ms = int(timeout * 1000)
        self.settle_ms = int(settle_seconds * 1000)
        self.tab_settle_ms = int(tab_settle_seconds * 1000)
        self.tabs = tabs if tabs is not None else TABS

    def render(self, url: str) -> RenderedDetail:
        context = self.session.acquire()
        page = None
        try:
            page = context.new_page()
            page.set_default_timeout(self.timeout_ms)
            page.goto(url, wait_until="networkidle", timeout=self.timeout_ms)
            page.wait_for_timeout(self.settle_ms)
            detail = RenderedDetail(url=url, main_html=page.content())
            for name, label in self.tabs.items():
                detail.tab_html[name] = self._open_tab(page, label)
            return detail
        except PWTimeout as e:
            raise RenderTimeout(f"Timed out rendering {url}: {e}") from e
        except PWError as e:
            # A dead browser is useless for the next record too
            self.session.close()
            raise RenderEngineUnavailable(f"Browser error rendering {url}: {e}") from e
        finally:
            if page is not None:
                try:
                    page.close()
                except PWError as e:
                    logger.debug("[Render] Ignoring error closing page: %s", e)
            self.session.touch()

    def _open_tab(self, page: Page, label: str) -> str | None:
        pattern = re.compile(rf"^\s*{re.escape(label)}\s*$", re.IGNORECASE)
        control = page.locator(TAB_CONTROL_SELECTOR).filter(has_text=pattern)
        if control.count() == 0:
            logger.debug("[Render] No '%s' tab on %s", label, page.url)
            return None
        # A broken tab only costs its own sub-collection
        try:
            control.first.click()
            page.wait_for_timeout(self.tab_settle_ms)
            return page.content()
        except PWError as e:
            logger.warning("[Render] Could not open '%s' tab on %s: %s", label, page.url, e)
            return None

    def close_if_idle(self) -> bool:
        return self.session.close_if_idle()

    def close(self):
        self.session.close()
