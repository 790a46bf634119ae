"""
Playwright-backed resource host.

Each pooled resource is a page in one shared Chromium context. The
browser is either launched locally or attached to over CDP so pages can
outlive the agent process.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional
from uuid import uuid4

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from ...schema.messages import CollectPageDataRequest
from ..config.settings import AgentSettings
from ..core.exceptions import ResourceDefunct
from ..core.types import ReadyState
from .host import BLANK_URL, BLANK_URLS, ResourceHost

logger = logging.getLogger(__name__)

# Runs inside the page; returns the generic page snapshot the server expects
COLLECT_PAGE_DATA_JS = """
() => {
  const startedAt = Date.now();
  const html = document.documentElement.outerHTML;
  return {
    pageInfo: {
      url: window.location.href,
      title: document.title,
      domain: window.location.hostname,
      pathname: window.location.pathname,
      search: window.location.search,
      timestamp: new Date().toISOString(),
      userAgent: navigator.userAgent,
      language: navigator.language,
      viewport: { width: window.innerWidth, height: window.innerHeight },
    },
    html: html,
    metadata: {
      htmlSize: html.length,
      elementCount: document.getElementsByTagName('*').length,
      imageCount: document.images.length,
      linkCount: document.links.length,
      loadTime: Date.now() - startedAt,
      contentLanguage: document.documentElement.lang || 'unknown',
    },
  };
}
"""


class PlaywrightHost(ResourceHost):
    """
    Resource host that drives Chromium pages through Playwright.
    """

    def __init__(self, settings: AgentSettings):
        self.settings = settings
        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._lock = asyncio.Lock()

        self.pages: Dict[str, Page] = {}
        self._navigations: Dict[str, "asyncio.Task[Any]"] = {}

    async def _ensure_context(self) -> BrowserContext:
        async with self._lock:
            if self._pw is None:
                try:
                    self._pw = await async_playwright().start()
                    logger.info("Playwright started")
                except Exception as e:
                    raise RuntimeError(f"Failed to start Playwright: {e}") from e

            if self._browser is None or not self._browser.is_connected():
                try:
                    if self.settings.browser_cdp_url:
                        self._browser = await self._pw.chromium.connect_over_cdp(self.settings.browser_cdp_url)
                        logger.info(f"Attached to browser at {self.settings.browser_cdp_url}")
                    else:
                        self._browser = await self._pw.chromium.launch(
                            headless=self.settings.browser_headless,
                            args=["--no-sandbox", "--disable-dev-shm-usage"],
                        )
                        logger.info(f"Browser launched (headless: {self.settings.browser_headless})")
                except PlaywrightError as e:
                    raise RuntimeError(f"Failed to start browser: {e}") from e
                self._context = None

            if self._context is None:
                if self._browser.contexts:
                    self._context = self._browser.contexts[0]
                else:
                    self._context = await self._browser.new_context(viewport={"width": 1280, "height": 1024})

            return self._context

    def _page(self, resource_id: str) -> Page:
        page = self.pages.get(resource_id)
        if page is None or page.is_closed():
            raise ResourceDefunct(resource_id)
        return page

    async def create(self) -> str:
        context = await self._ensure_context()
        page = await context.new_page()
        resource_id = uuid4().hex[:12]
        self.pages[resource_id] = page
        page.on("close", lambda _: self._forget(resource_id))
        logger.debug(f"Created page {resource_id}")
        return resource_id

    def _forget(self, resource_id: str) -> None:
        self.pages.pop(resource_id, None)
        task = self._navigations.pop(resource_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def exists(self, resource_id: str) -> bool:
        page = self.pages.get(resource_id)
        return page is not None and not page.is_closed()

    async def is_blank(self, resource_id: str) -> bool:
        return self._page(resource_id).url in BLANK_URLS

    async def navigate(self, resource_id: str, url: str) -> None:
        page = self._page(resource_id)

        previous = self._navigations.pop(resource_id, None)
        if previous is not None and not previous.done():
            previous.cancel()

        if url == BLANK_URL:
            await page.goto(BLANK_URL)
            return

        task = asyncio.create_task(
            page.goto(url, wait_until="load", timeout=self.settings.browser_navigation_timeout_ms)
        )
        task.add_done_callback(lambda t: self._navigation_done(resource_id, url, t))
        self._navigations[resource_id] = task

    def _navigation_done(self, resource_id: str, url: str, task: "asyncio.Task[Any]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Navigation of {resource_id} to {url} failed: {error}")

    async def ready_state(self, resource_id: str) -> ReadyState:
        page = self._page(resource_id)
        task = self._navigations.get(resource_id)
        if task is not None and not task.done():
            return ReadyState.LOADING
        try:
            state = await page.evaluate("() => document.readyState")
        except PlaywrightError:
            # Execution context is replaced while a navigation commits
            return ReadyState.LOADING
        return ReadyState.COMPLETE if state == "complete" else ReadyState.LOADING

    async def send_message(self, resource_id: str, message: CollectPageDataRequest) -> Optional[Dict[str, Any]]:
        page = self._page(resource_id)
        try:
            data = await page.evaluate(COLLECT_PAGE_DATA_JS)
        except PlaywrightError as e:
            return {"success": False, "error": str(e)}
        if not isinstance(data, dict):
            return None
        data["jobId"] = message.job_id
        data["collectedAt"] = int(time.time() * 1000)
        return {"success": True, "data": data}

    async def close(self) -> None:
        """Close the browser connection. Pages of an attached browser are left open."""
        for task in list(self._navigations.values()):
            if not task.done():
                task.cancel()
        self._navigations.clear()

        try:
            if self._browser is not None:
                await self._browser.close()
        except PlaywrightError as e:
            logger.warning(f"Error closing browser: {e}")
        finally:
            self._browser = None
            self._context = None

        if self._pw is not None:
            await self._pw.stop()
            self._pw = None

        self.pages.clear()
        logger.info("Playwright host closed")
