"""
Browser Session - one shared Chromium process and a bounded pool of job pages.

The browser is launched lazily and reused while it stays connected. Each job
gets its own context and page; ScrapeSlots caps how many run at once.
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, List, Optional, Tuple

from playwright.async_api import Browser, BrowserContext, Page, Playwright, Route, async_playwright
from playwright_stealth.stealth import Stealth

from contact_scraper.errors import BrowserLaunchError
from contact_scraper.page_profile import PageProfile

logger = logging.getLogger(__name__)


# Chromium flags that keep headless runs stable inside containers
LAUNCH_ARGS: List[str] = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-accelerated-2d-canvas",
    "--disable-blink-features=AutomationControlled",
    "--no-first-run",
    "--no-default-browser-check",
    "--no-zygote",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-renderer-backgrounding",
    "--mute-audio",
    "--window-size=1920,1080",
]

EXTRA_HTTP_HEADERS = {
    "Accept-Language": "de-DE,de;q=0.9,en-US;q=0.8,en;q=0.7",
    "sec-ch-ua": '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"',
    "sec-ch-ua-mobile": "?0",
    "sec-ch-ua-platform": '"macOS"',
}

VIEWPORT = {"width": 1920, "height": 1080}

# Injected into every context when browser.use_stealth is on
STEALTH_INIT_SCRIPT: str = """
Object.defineProperty(navigator, 'webdriver', {
    get: () => undefined,
});

window.chrome = {
    runtime: {},
    loadTimes: function() {},
    csi: function() {},
    app: {},
};

Object.defineProperty(navigator, 'languages', {
    get: () => ['de-DE', 'de', 'en-US', 'en'],
});

Object.defineProperty(navigator, 'platform', {
    get: () => 'MacIntel',
});

Object.defineProperty(navigator, 'hardwareConcurrency', {
    get: () => 8,
});

const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) => (
    parameters.name === 'notifications' ?
        Promise.resolve({ state: Notification.permission }) :
        originalQuery(parameters)
);
"""


class ScrapeSlots:
    """
    Fixed-capacity counting semaphore for page scrapes.

    Waiters are woken in arrival order. `active` and `waiting` expose the
    current occupancy for logging and tests.
    """

    def __init__(self, capacity: int = 6):
        if capacity < 1:
            raise ValueError("ScrapeSlots capacity must be >= 1")
        self.capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self._active = 0
        self._waiting = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return self._waiting

    async def acquire(self) -> None:
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1
        self._active += 1
        logger.debug("Slot acquired (%s/%s active, %s waiting)", self._active, self.capacity, self._waiting)

    def release(self) -> None:
        if self._active <= 0:
            raise RuntimeError("ScrapeSlots released more times than acquired")
        self._active -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()


class BrowserSession:
    """Owns the Playwright driver, the shared browser and the slot pool"""

    def __init__(
        self,
        config,
        *,
        profile: Optional[PageProfile] = None,
        slots: Optional[ScrapeSlots] = None,
        playwright_factory: Callable[[], Any] = async_playwright,
    ):
        self.config = config
        self.profile = profile or config.get_page_profile()
        self.slots = slots or ScrapeSlots(config.get_max_concurrent_pages())
        self._playwright_factory = playwright_factory
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._launch_lock = asyncio.Lock()
        self._captcha_url = re.compile(self.profile.captcha_url_pattern, re.IGNORECASE)
        self._blocked_host = re.compile(self.profile.blocked_host_pattern, re.IGNORECASE)
        self.launch_count = 0

    async def get_browser(self) -> Browser:
        """Return a live browser, launching (or relaunching) it when needed."""
        async with self._launch_lock:
            if self._browser is not None and await self._is_alive(self._browser):
                return self._browser

            if self._browser is not None:
                logger.warning("Browser is no longer connected; relaunching")
                await self._close_browser()

            attempts = 1 + max(self.config.get_launch_retries(), 0)
            last_error: Optional[Exception] = None
            for attempt in range(1, attempts + 1):
                try:
                    self._browser = await self._launch()
                    self.launch_count += 1
                    return self._browser
                except Exception as exc:
                    last_error = exc
                    logger.warning("Browser launch failed (attempt %s/%s): %s", attempt, attempts, exc)
                    await self._close_browser()

            raise BrowserLaunchError(f"Could not launch browser after {attempts} attempts: {last_error}")

    async def _is_alive(self, browser: Browser) -> bool:
        try:
            return browser.is_connected() and bool(browser.version)
        except Exception:
            logger.debug("Browser liveness probe failed", exc_info=True)
            return False

    async def _launch(self) -> Browser:
        logger.info("Starting browser...")
        if self._playwright is None:
            self._playwright = await self._playwright_factory().start()

        channel = self.config.get_browser_channel() or None
        executable_path = self.config.get_browser_executable_path() or None
        if executable_path and not Path(executable_path).exists():
            logger.warning("Browser executable not found: %s", executable_path)
            executable_path = None

        browser = await self._playwright.chromium.launch(
            headless=self.config.is_headless(),
            args=list(LAUNCH_ARGS),
            channel=channel,
            executable_path=executable_path,
            timeout=self.config.get_launch_timeout(),
        )
        logger.info("Browser started successfully")
        return browser

    async def new_page(self, job_id: str) -> Tuple[BrowserContext, Page]:
        """Open a fresh context and page for one job."""
        browser = await self.get_browser()
        context = await browser.new_context(
            user_agent=self.config.get_user_agent(),
            viewport=dict(VIEWPORT),
            locale="de-DE",
            timezone_id="Europe/Berlin",
            extra_http_headers=dict(EXTRA_HTTP_HEADERS),
        )
        try:
            if self.config.use_stealth():
                await context.add_init_script(STEALTH_INIT_SCRIPT)
            page = await context.new_page()
            page.set_default_timeout(self.config.get_page_timeout())
            page.set_default_navigation_timeout(self.config.get_navigation_timeout())
            await page.route("**/*", self._route_request)
            if self.config.use_stealth():
                try:
                    await Stealth().apply_stealth_async(page)
                except Exception as exc:
                    logger.warning("Failed to enable stealth mode: %s", exc)
        except Exception:
            await context.close()
            raise

        logger.debug("Opened page for job %s", job_id)
        return context, page

    async def _route_request(self, route: Route) -> None:
        request = route.request
        url = request.url
        if self._captcha_url.search(url):
            await route.continue_()
            return
        if self._blocked_host.search(url):
            await route.abort()
            return
        if request.resource_type in self.profile.allowed_resource_types:
            await route.continue_()
        else:
            await route.abort()

    @asynccontextmanager
    async def job_page(self, job_id: str) -> AsyncIterator[Page]:
        """Hold a slot and a dedicated page for one job; both released on exit."""
        await self.slots.acquire()
        context: Optional[BrowserContext] = None
        try:
            context, page = await self.new_page(job_id)
            yield page
        finally:
            if context is not None:
                try:
                    await context.close()
                except Exception:
                    logger.debug("Browser context close failed", exc_info=True)
            self.slots.release()

    async def _close_browser(self) -> None:
        browser, self._browser = self._browser, None
        if browser is None:
            return
        try:
            await browser.close()
        except Exception:
            logger.debug("Browser close failed", exc_info=True)

    async def close(self) -> None:
        """Clean up browser resources"""
        async with self._launch_lock:
            await self._close_browser()
            try:
                if self._playwright:
                    await self._playwright.stop()
            except Exception:
                logger.debug("Playwright stop failed", exc_info=True)
            self._playwright = None
        logger.info("Browser closed")

    async def __aenter__(self) -> "BrowserSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
