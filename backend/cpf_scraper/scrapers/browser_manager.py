"""Playwright browser lifecycle manager with anti-detection.

Owns one Chromium instance per run and hands out sessions: an isolated
context with a random user agent and viewport, and a page preconfigured
with French headers, the navigation timeout and a resource-type block rule.
"""

import asyncio
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog
from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    Route,
    async_playwright,
)

from cpf_scraper.config import Settings, settings
from cpf_scraper.core.exceptions import BrowserLaunchError, NavigationError
from cpf_scraper.scrapers.utils.user_agents import default_headers, get_random_user_agent

logger = structlog.get_logger(__name__)

# Images, fonts and media are aborted; documents, scripts, XHR/fetch (JSON) pass
BLOCKED_RESOURCE_TYPES = frozenset({"image", "media", "font"})

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
]


def should_block(resource_type: str) -> bool:
    return resource_type in BLOCKED_RESOURCE_TYPES


def random_viewport() -> dict:
    return {
        "width": 1280 + random.randint(0, 199),
        "height": 720 + random.randint(0, 199),
    }


@dataclass
class BrowserSession:
    """A browser context and its single working page."""

    context: BrowserContext
    page: Page


class BrowserManager:
    """Manages Playwright browser lifecycle with anti-detection features.

    Sessions come with:
    - User-agent rotation and a randomized viewport per context
    - Stealth JS injection to mask automation signals
    - Resource blocking (images/fonts/media) to save bandwidth
    """

    def __init__(self, config: Settings = settings):
        self._config = config
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Launch the browser. A launch failure is fatal and never retried."""
        async with self._lock:
            if self._browser:
                return
            try:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self._config.HEADLESS,
                    slow_mo=self._config.SLOW_MO_MS,
                    args=LAUNCH_ARGS,
                )
            except Exception as e:
                logger.error("browser_launch_failed", error=str(e))
                if self._playwright:
                    await self._playwright.stop()
                    self._playwright = None
                raise BrowserLaunchError(str(e)) from e
            logger.info(
                "browser_started",
                headless=self._config.HEADLESS,
                slow_mo=self._config.SLOW_MO_MS,
            )

    async def stop(self) -> None:
        """Close the browser and the Playwright driver."""
        async with self._lock:
            if self._browser:
                try:
                    await self._browser.close()
                except PlaywrightError as e:
                    logger.warning("browser_close_failed", error=str(e))
                self._browser = None
            if self._playwright:
                await self._playwright.stop()
                self._playwright = None
            logger.info("browser_stopped")

    async def __aenter__(self) -> "BrowserManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def create_session(self) -> BrowserSession:
        """Open a fresh context and page ready for scraping."""
        if not self._browser:
            await self.start()

        user_agent = get_random_user_agent()
        context = await self._browser.new_context(
            user_agent=user_agent,
            viewport=random_viewport(),
            locale="fr-FR",
            timezone_id="Europe/Paris",
            extra_http_headers=default_headers(),
            java_script_enabled=True,
        )
        try:
            await context.add_init_script(STEALTH_JS)
            page = await context.new_page()
            page.set_default_navigation_timeout(self._config.NAVIGATION_TIMEOUT_MS)
            page.set_default_timeout(self._config.NAVIGATION_TIMEOUT_MS)
            await page.route("**/*", _block_heavy_resources)
        except Exception:
            await context.close()
            raise

        logger.debug("browser_session_created", user_agent=user_agent)
        return BrowserSession(context=context, page=page)

    async def close_session(self, session: BrowserSession) -> None:
        """Release the page and its context."""
        try:
            if not session.page.is_closed():
                await session.page.unroute("**/*")
                await session.page.close()
        except PlaywrightError as e:
            logger.debug("page_close_failed", error=str(e))
        finally:
            try:
                await session.context.close()
            except PlaywrightError as e:
                logger.debug("context_close_failed", error=str(e))

    @asynccontextmanager
    async def session(self) -> AsyncIterator[BrowserSession]:
        """Session released on both success and error paths."""
        browser_session = await self.create_session()
        try:
            yield browser_session
        finally:
            await self.close_session(browser_session)


async def navigate(page: Page, url: str, wait_until: str = "networkidle") -> None:
    """Go to url and wait for the load state.

    Raises:
        NavigationError: the navigation failed or timed out
    """
    try:
        await page.goto(url, wait_until=wait_until)
    except PlaywrightError as e:
        raise NavigationError(url, str(e)) from e


async def _block_heavy_resources(route: Route) -> None:
    try:
        if should_block(route.request.resource_type):
            await route.abort()
        else:
            await route.continue_()
    except PlaywrightError:
        # page closed while the request was in flight
        pass


# Minimal stealth JS to mask automation signals
STEALTH_JS = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'languages', { get: () => ['fr-FR', 'fr', 'en-US', 'en'] });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
window.chrome = { runtime: {} };
const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) =>
  parameters.name === 'notifications'
    ? Promise.resolve({ state: Notification.permission })
    : originalQuery(parameters);
"""
