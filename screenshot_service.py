"""
Headless-browser screenshots.

A single Chromium instance is launched lazily and shared; concurrent page
contexts are bounded by a semaphore. Every capture has a hard timeout and
reports failure as None. Every request the browser makes, including
redirects and subresources, is screened with the same SSRF guard as the
crawler and aborted if it targets a non-public host.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional
from urllib.parse import urlsplit

from playwright.async_api import Browser, Playwright, Route, async_playwright

import config
from errors import UnsafeUrlError
from url_validator import ensure_public_host

logger = logging.getLogger(__name__)

DESKTOP_VIEWPORT = {"width": 1920, "height": 1080}
MOBILE_VIEWPORT = {"width": 375, "height": 812}

# Extra time on top of the navigation timeout for the screenshot itself
CAPTURE_GRACE = 5

# Requests with these schemes never leave the browser
LOCAL_SCHEMES = {"data", "blob", "about"}

HostGuard = Callable[[str], Awaitable[None]]


class ScreenshotService:
    """Captures viewport screenshots through a shared Playwright browser."""

    def __init__(
        self,
        pool_size: Optional[int] = None,
        timeout: Optional[float] = None,
        executable_path: Optional[str] = None,
        host_guard: Optional[HostGuard] = None,
    ):
        self.timeout = timeout or config.SEO_SCREENSHOT_TIMEOUT
        self.executable_path = executable_path or config.PLAYWRIGHT_CHROMIUM_EXECUTABLE_PATH
        self.host_guard = host_guard or ensure_public_host
        self._semaphore = asyncio.Semaphore(pool_size or config.SEO_BROWSER_POOL_SIZE)
        self._lock = asyncio.Lock()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def _get_browser(self) -> Browser:
        async with self._lock:
            if self._browser is None or not self._browser.is_connected():
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=True,
                    executable_path=self.executable_path or None,
                    args=["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"],
                )
                logger.info("Headless browser launched")
            return self._browser

    async def _guard_request(self, route: Route) -> None:
        """Abort any browser request (navigation, redirect or subresource) to a non-public host."""
        request_url = route.request.url
        if urlsplit(request_url).scheme.lower() not in LOCAL_SCHEMES:
            try:
                await self.host_guard(request_url)
            except UnsafeUrlError as e:
                logger.warning(f"Screenshot request blocked: {str(e)}")
                await route.abort("blockedbyclient")
                return
        await route.continue_()

    async def _capture(self, url: str, viewport: Dict[str, int]) -> bytes:
        await self.host_guard(url)
        browser = await self._get_browser()
        is_mobile = viewport["width"] < 768
        context = await browser.new_context(
            viewport=viewport,
            user_agent=config.MOBILE_USER_AGENT if is_mobile else config.USER_AGENT,
            is_mobile=is_mobile,
        )
        try:
            await context.route("**/*", self._guard_request)
            page = await context.new_page()
            try:
                await page.goto(url, wait_until="networkidle", timeout=self.timeout * 1000)
            except Exception as e:
                # Slow pages still get a screenshot of whatever rendered
                logger.debug(f"Navigation incomplete for {url}: {str(e)}")
            return await page.screenshot(full_page=False, type="png")
        finally:
            await context.close()

    async def capture(self, url: str, viewport: Dict[str, int]) -> Optional[bytes]:
        """
        Screenshot `url` at the given viewport.

        Returns:
            PNG bytes, or None if the capture failed or timed out
        """
        async with self._semaphore:
            try:
                return await asyncio.wait_for(
                    self._capture(url, viewport), timeout=self.timeout + CAPTURE_GRACE
                )
            except Exception as e:
                logger.warning(f"Screenshot failed for {url} ({viewport['width']}px): {str(e)}")
                return None

    async def close(self) -> None:
        async with self._lock:
            try:
                if self._browser:
                    await self._browser.close()
                if self._playwright:
                    await self._playwright.stop()
            except Exception as e:
                logger.warning(f"Error closing browser: {str(e)}")
            finally:
                self._browser = None
                self._playwright = None
