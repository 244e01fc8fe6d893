import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from playwright.async_api import Browser, Playwright, async_playwright

from fulfillment_service.automation.page import PlaywrightPage
from fulfillment_service.core.config import settings

logger = logging.getLogger(__name__)


class BrowserPool:
    """Owns the one Chromium process shared by every worker.

    The browser is launched lazily behind a lock so concurrent first jobs
    cannot launch two of them. Each job gets its own browser context,
    which is closed on every exit path, and the number of open contexts is
    bounded.
    """

    def __init__(self, max_contexts: int, headless: bool = True,
                 step_timeout_ms: int = 15000, navigation_timeout_ms: int = 30000) -> None:
        self.headless = headless
        self.step_timeout_ms = step_timeout_ms
        self.navigation_timeout_ms = navigation_timeout_ms
        self._slots = asyncio.Semaphore(max_contexts)
        self._init_lock = asyncio.Lock()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self.open_contexts = 0

    async def _launch(self) -> Browser:
        self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=self.headless,
            args=["--no-sandbox", "--disable-setuid-sandbox"]
        )

    async def get_browser(self) -> Browser:
        if self._browser is not None and self._browser.is_connected():
            return self._browser

        async with self._init_lock:
            if self._browser is None or not self._browser.is_connected():
                if self._playwright is not None:
                    logger.warning("Shared browser disconnected, relaunching")
                    await self._shutdown()
                self._browser = await self._launch()
                logger.info("Launched shared browser")
        return self._browser

    @asynccontextmanager
    async def page(self) -> AsyncIterator[PlaywrightPage]:
        async with self._slots:
            browser = await self.get_browser()
            context = await browser.new_context()
            context.set_default_timeout(self.step_timeout_ms)
            context.set_default_navigation_timeout(self.navigation_timeout_ms)
            self.open_contexts += 1
            try:
                page = await context.new_page()
                yield PlaywrightPage(page)
            finally:
                self.open_contexts -= 1
                try:
                    await context.close()
                except Exception as e:
                    logger.warning(f"Failed to close browser context: {e}")

    async def _shutdown(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:
                logger.warning(f"Failed to close browser: {e}")
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def close(self) -> None:
        async with self._init_lock:
            await self._shutdown()
        logger.info("Closed shared browser")


browser_pool = BrowserPool(
    max_contexts=settings.browser_max_contexts,
    headless=settings.browser_headless,
    step_timeout_ms=settings.step_timeout_ms,
    navigation_timeout_ms=settings.navigation_timeout_ms
)
