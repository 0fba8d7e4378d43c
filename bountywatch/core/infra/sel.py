"""
sel.py - Async Playwright helpers for rendering client-side pages.

* `stealth` flag: random UA (or user-supplied), removes navigator.webdriver
* `render()` - navigate, optionally wait for a selector, return the rendered
  HTML together with the page's ``__NEXT_DATA__`` JSON block (if any)
* `scroll_to_bottom()` - infinite-scroll support for long bounty lists
* Async context-manager support:
    async with PlaywrightClient() as pw:
        page = await pw.render("https://algora.io/acme/bounties")
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from types import TracebackType
from typing import Any, Dict, Optional, Type

try:
    from playwright.async_api import (
        async_playwright,
        Browser,
        BrowserContext,
        BrowserType,
        Error as PlaywrightError,
        Page,
        TimeoutError as PlaywrightTimeout,
    )
except ImportError as e:  # pragma: no cover
    raise ImportError(
        "Package 'playwright' is required.  Install with:  pip install playwright"
    ) from e

logger = logging.getLogger(__name__)
DEFAULT_STEALTH_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.%d.%d Safari/537.36"
    % (random.randint(0, 9999), random.randint(0, 199))
)

NEXT_DATA_SCRIPT = """
() => {
    const el = document.getElementById('__NEXT_DATA__');
    return el ? el.textContent : null;
}
"""


@dataclass
class RenderedPage:
    html: str
    status: Optional[int]
    next_data: Optional[Any] = None


class PlaywrightClient:
    """
    Thin wrapper around Playwright making the *90 % use-case* trivial.

    The browser is launched lazily on first use and shared by every page;
    each ``render`` call opens and closes its own page.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        browser_type: str = "chromium",
        timeout: float = 30_000,
        stealth: bool = False,
        user_agent: Optional[str] = None,
        extra_launch_kwargs: Optional[Dict[str, Any]] = None,
        extra_context_kwargs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.headless = headless
        self.browser_type = browser_type.lower()
        self.timeout = timeout
        self.stealth = stealth
        self.user_agent = user_agent
        self._launch_kwargs = extra_launch_kwargs or {}
        self._context_kwargs = extra_context_kwargs or {}

        # Internal Playwright handles
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._start_lock = asyncio.Lock()

    # --------------------------------------------------------------------- #
    # Async context-manager sugar
    async def __aenter__(self) -> "PlaywrightClient":  # noqa: D401
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.stop()

    # --------------------------------------------------------------------- #
    # Lifecycle helpers
    async def start(self) -> None:
        """Launch browser & default context if not already started."""
        async with self._start_lock:
            if self._browser:
                return

            self._playwright = await async_playwright().start()
            browser_launcher: BrowserType

            if self.browser_type == "chromium":
                browser_launcher = self._playwright.chromium
            elif self.browser_type == "firefox":
                browser_launcher = self._playwright.firefox
            elif self.browser_type == "webkit":
                browser_launcher = self._playwright.webkit
            else:  # pragma: no cover
                raise ValueError(f"Unsupported browser type: {self.browser_type}")

            self._browser = await browser_launcher.launch(
                headless=self.headless, **self._launch_kwargs
            )

            context_kwargs: Dict[str, Any] = {
                "ignore_https_errors": True,
                **self._context_kwargs,
            }
            if self.stealth:
                context_kwargs.setdefault("user_agent", self.user_agent or DEFAULT_STEALTH_UA)

            self._context = await self._browser.new_context(**context_kwargs)

            if self.stealth:
                await self._context.add_init_script(
                    """
                    Object.defineProperty(navigator, 'webdriver', {
                      get: () => undefined
                    });
                    Object.defineProperty(navigator, 'languages', {
                      get: () => ['en-US', 'en'],
                    });
                    """
                )

            logger.info(
                "Playwright started: %s (headless=%s, stealth=%s)",
                self.browser_type,
                self.headless,
                self.stealth,
            )

    async def stop(self) -> None:
        """Gracefully close context, browser & Playwright."""
        if self._context:
            await self._context.close()
            self._context = None
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
            logger.info("Playwright stopped")

    # --------------------------------------------------------------------- #
    # High-level page helpers
    async def new_page(self, timeout: Optional[float] = None) -> Page:
        """Return a fresh Page with sane defaults."""
        if not self._context:
            await self.start()
        page = await self._context.new_page()
        page.set_default_timeout(timeout if timeout is not None else self.timeout)
        return page

    async def render(
        self,
        url: str,
        *,
        wait_for_selector: Optional[str] = None,
        timeout: Optional[float] = None,
        scroll: bool = True,
    ) -> RenderedPage:
        """
        Navigate, optionally wait for a selector, return the rendered HTML and
        the ``__NEXT_DATA__`` payload.

        ``timeout`` is in milliseconds, like every Playwright timeout.
        """
        page = await self.new_page(timeout)
        try:
            response = await page.goto(url, wait_until="networkidle")
            if wait_for_selector:
                try:
                    await page.wait_for_selector(wait_for_selector)
                except PlaywrightTimeout:
                    logger.debug("Selector %s never appeared on %s", wait_for_selector, url)
            if scroll:
                await self.scroll_to_bottom(page, max_scrolls=20)
            html = await page.content()
            raw_next = await page.evaluate(NEXT_DATA_SCRIPT)
            next_data = None
            if raw_next:
                try:
                    next_data = json.loads(raw_next)
                except ValueError:
                    logger.debug("Unparseable __NEXT_DATA__ on %s", url)
            return RenderedPage(
                html=html,
                status=response.status if response else None,
                next_data=next_data,
            )
        finally:
            await page.close()

    @staticmethod
    async def scroll_to_bottom(
        page: Page,
        *,
        step_px: int = 2048,
        delay: float = 0.25,
        max_scrolls: int = 200,
    ) -> None:
        """
        Scroll down chunk-by-chunk until no movement (or max_scrolls).

        Good for lazy-load / infinite scroll pages without explicit “show more”.
        """
        last_height = -1
        for _ in range(max_scrolls):
            height = await page.evaluate("() => document.body.scrollHeight")
            if height == last_height:
                break
            last_height = height
            await page.evaluate(f"window.scrollTo(0, {height - step_px});")
            await asyncio.sleep(delay)
            await page.evaluate("window.scrollTo(0, document.body.scrollHeight);")
            await asyncio.sleep(delay)


__all__ = ["PlaywrightClient", "PlaywrightError", "PlaywrightTimeout", "RenderedPage"]
