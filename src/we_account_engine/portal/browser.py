from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from ..errors import BrowserNotInstalled, is_missing_browser_error


logger = logging.getLogger(__name__)

LINUX_LAUNCH_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
)

ContextHook = Callable[[BrowserContext], Awaitable[None]]


@dataclass
class _UserTab:
    context: BrowserContext
    page: Page


class BrowserManager:
    """
    One shared Chromium per engine, plus one cached context + tab per user.

    The browser is launched lazily and relaunched after a crash/disconnect.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        viewport: tuple[int, int] = (1280, 720),
        page_timeout_ms: int = 90_000,
        slow_mo_ms: int = 0,
        on_new_context: Optional[ContextHook] = None,
    ) -> None:
        self.headless = bool(headless)
        self.viewport = {"width": int(viewport[0]), "height": int(viewport[1])}
        self.page_timeout_ms = int(page_timeout_ms)
        self.slow_mo_ms = int(slow_mo_ms or 0)
        self.on_new_context = on_new_context

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._launch_lock = asyncio.Lock()
        self._tabs: dict[str, _UserTab] = {}

    async def get_browser(self) -> Browser:
        async with self._launch_lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser

            if self._playwright is None:
                self._playwright = await async_playwright().start()

            browser = await self._launch(self._playwright)
            browser.on("disconnected", self._on_disconnected)
            self._browser = browser
            logger.info("Launched Chromium (headless=%s)", self.headless)
            return browser

    async def _launch(self, p: Playwright) -> Browser:
        kwargs: dict = {"headless": self.headless, "slow_mo": self.slow_mo_ms}
        if sys.platform.startswith("linux"):
            kwargs["args"] = list(LINUX_LAUNCH_ARGS)

        # Prefer Playwright's bundled Chromium, but fall back to a system-installed Chrome if the
        # Playwright browser cache is empty on this host.
        try:
            return await p.chromium.launch(**kwargs)
        except Exception as e:
            if not is_missing_browser_error(e):
                raise
            logger.warning("Playwright Chromium executable missing; falling back to system Chrome. (%s)", e)

        try:
            return await p.chromium.launch(channel="chrome", **kwargs)
        except Exception as e:
            if is_missing_browser_error(e) or "is not found" in str(e):
                raise BrowserNotInstalled() from e
            raise

    def _on_disconnected(self, browser: Browser) -> None:
        if self._browser is browser:
            logger.warning("Browser disconnected; dropping %d cached user context(s).", len(self._tabs))
            self._browser = None
            self._tabs.clear()

    async def new_context(self, *, storage_state_path: Optional[Path] = None) -> BrowserContext:
        browser = await self.get_browser()
        kwargs: dict = {"viewport": self.viewport, "color_scheme": "light"}
        if storage_state_path is not None:
            kwargs["storage_state"] = str(storage_state_path)
        ctx = await browser.new_context(**kwargs)
        ctx.set_default_timeout(self.page_timeout_ms)
        ctx.set_default_navigation_timeout(self.page_timeout_ms)
        if self.on_new_context is not None:
            await self.on_new_context(ctx)
        return ctx

    async def user_page(self, user_id: str, *, storage_state_path: Path, fresh: bool = False) -> Page:
        """
        Return the user's cached tab, creating context + tab from `storage_state_path` when
        there is none, it was closed, or `fresh` is requested.
        """
        tab = self._tabs.get(user_id)
        if tab is not None and not fresh and not tab.page.is_closed():
            return tab.page

        await self.discard_user(user_id)
        ctx = await self.new_context(storage_state_path=storage_state_path)
        page = await ctx.new_page()
        self._tabs[user_id] = _UserTab(context=ctx, page=page)
        logger.debug("Created browser context for user=%s", user_id)
        return page

    def current_url(self, user_id: str) -> Optional[str]:
        tab = self._tabs.get(user_id)
        if tab is None:
            return None
        try:
            return None if tab.page.is_closed() else tab.page.url
        except Exception:
            return None

    async def discard_user(self, user_id: str) -> None:
        tab = self._tabs.pop(user_id, None)
        if tab is None:
            return
        try:
            await tab.context.close()
        except Exception:
            logger.debug("Failed to close context for user=%s", user_id, exc_info=True)

    async def shutdown(self) -> None:
        for user_id in list(self._tabs):
            await self.discard_user(user_id)

        browser, self._browser = self._browser, None
        if browser is not None:
            try:
                await browser.close()
            except Exception:
                logger.debug("Failed to close browser.", exc_info=True)

        pw, self._playwright = self._playwright, None
        if pw is not None:
            try:
                await pw.stop()
            except Exception:
                logger.debug("Failed to stop Playwright.", exc_info=True)
