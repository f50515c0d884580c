"""
Shared headless browser for search fallback and rendered scraping
"""
import asyncio
import random
import logging
from contextlib import asynccontextmanager
from typing import Optional

from playwright.async_api import async_playwright

from config import config

logger = logging.getLogger(__name__)

STEALTH_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', {
        get: () => undefined,
    });
    Object.defineProperty(navigator, 'plugins', {
        get: () => [1, 2, 3, 4, 5],
    });
    window.chrome = {
        runtime: {},
    };
"""

LAUNCH_ARGS = [
    '--no-sandbox',
    '--disable-blink-features=AutomationControlled',
    '--disable-extensions',
    '--disable-dev-shm-usage',
    '--disable-background-networking',
    '--disable-default-apps',
    '--disable-sync',
    '--mute-audio',
    '--no-first-run',
]


class BrowserManager:
    """Owns one Chromium process shared by every caller in the process.

    The browser is launched lazily on first use. Contexts are bounded by a
    semaphore and each one is closed when the ``page()`` block exits, whether
    it returned, raised or was cancelled. Call ``close()`` at shutdown.
    """

    def __init__(self, analyzer_config=None, max_contexts: Optional[int] = None):
        self.config = analyzer_config or config
        self.max_contexts = max_contexts or self.config.max_browser_contexts
        self.semaphore = asyncio.Semaphore(self.max_contexts)
        self.playwright = None
        self.browser = None
        self._launch_lock = asyncio.Lock()
        self.open_contexts = 0

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def is_running(self) -> bool:
        return self.browser is not None

    async def start(self):
        """Launch the browser if it is not running yet"""
        async with self._launch_lock:
            if self.browser is not None:
                return
            try:
                self.playwright = await async_playwright().start()
                self.browser = await self.playwright.chromium.launch(
                    headless=self.config.headless,
                    args=LAUNCH_ARGS
                )
                logger.info(f"Browser started with up to {self.max_contexts} contexts")
            except Exception as e:
                logger.error(f"Failed to start browser: {e}")
                if self.playwright is not None:
                    await self.playwright.stop()
                    self.playwright = None
                raise

    @asynccontextmanager
    async def page(self, locale: str = "en-US"):
        """Yield a fresh page in its own context; the context is always closed"""
        await self.start()
        async with self.semaphore:
            context = await self.browser.new_context(
                user_agent=random.choice(self.config.user_agents),
                viewport={'width': 1920, 'height': 1080},
                locale=locale,
            )
            self.open_contexts += 1
            try:
                if self.config.stealth_mode:
                    await context.add_init_script(STEALTH_SCRIPT)
                page = await context.new_page()
                yield page
            finally:
                self.open_contexts -= 1
                await context.close()

    async def close(self):
        """Close the browser and stop playwright"""
        try:
            if self.browser is not None:
                await self.browser.close()
            if self.playwright is not None:
                await self.playwright.stop()
            logger.info("Browser closed")
        finally:
            self.browser = None
            self.playwright = None
